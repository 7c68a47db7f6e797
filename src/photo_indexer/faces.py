"""Face crops from stored face records, and registration of known faces with DeepStack."""

import re
from collections.abc import Iterable
from pathlib import Path

from loguru import logger
from PIL import Image

from photo_indexer.deepstack import DeepStackClient
from photo_indexer.detection import DetectorError
from photo_indexer.kinds import FACES
from photo_indexer.records import FacesRecord
from photo_indexer.store import SidecarStore
from photo_indexer.walker import iter_media_files


_UNSAFE_NAME_CHARS = re.compile(r"[^\w.-]+")


def _safe_name(text: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", text).strip("_") or "unknown"


def crop_faces(
    image_path: Path,
    record: FacesRecord,
    output_dir: Path,
    *,
    jpeg_quality: int = 90,
) -> list[Path]:
    """
    Save every predicted face of ``image_path`` as a JPEG in ``output_dir``.

    Boxes are clamped to the image first, so stale or out-of-range
    coordinates still produce a valid (possibly small) crop.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    with Image.open(image_path) as img:
        width, height = img.size
        for idx, detection in enumerate(record.predictions, start=1):
            box = detection.clamped(width, height)
            crop = img.crop((box.x_min, box.y_min, box.x_max, box.y_max)).convert("RGB")
            target = output_dir / f"{image_path.stem}_{_safe_name(detection.identity)}_{idx}.jpg"
            crop.save(target, format="JPEG", quality=jpeg_quality)
            written.append(target)
    logger.debug("faces_cropped", file=image_path.name, count=len(written))
    return written


def crop_all_faces(
    roots: Iterable[Path],
    store: SidecarStore,
    output_dir: Path,
    *,
    recursive: bool = False,
) -> int:
    """Crop faces for every image that has a successful face record; returns the crop count."""
    total = 0
    for image_path in iter_media_files(roots, FACES.extensions, recursive=recursive):
        record = store.read(image_path, FACES)
        if not isinstance(record, FacesRecord) or not record.is_valid() or not record.predictions:
            continue
        try:
            total += len(crop_faces(image_path, record, output_dir))
        except OSError as exc:
            logger.warning("face_crop_failed", file=image_path.name, error=str(exc))
    logger.info("face_crops_written", count=total, output=str(output_dir))
    return total


def register_known_faces(
    faces_root: Path,
    client: DeepStackClient,
    *,
    extensions: Iterable[str] = FACES.extensions,
) -> dict[str, int]:
    """
    Register each ``<faces_root>/<person>/`` image with DeepStack as ``<person>_<n>``.

    The numeric suffix is what the faces summary strips again, so every image
    of a person collapses to the same name. Returns registered counts per person.
    """
    if not faces_root.is_dir():
        logger.warning("known_faces_root_not_found", path=str(faces_root))
        return {}

    allowed = {ext.lower() for ext in extensions}
    registered: dict[str, int] = {}
    for person_dir in sorted(p for p in faces_root.iterdir() if p.is_dir()):
        person = person_dir.name
        images = sorted(p for p in person_dir.iterdir() if p.is_file() and p.suffix.lower() in allowed)
        if not images:
            logger.debug("no_images_for_person", person=person)
            continue
        count = 0
        for n, image_path in enumerate(images, start=1):
            try:
                client.register_face(f"{person}_{n}", [image_path])
            except (DetectorError, OSError) as exc:
                logger.warning("face_registration_failed", person=person, file=image_path.name, error=str(exc))
                continue
            count += 1
        registered[person] = count
    logger.info("known_faces_registered", persons=len(registered), images=sum(registered.values()))
    return registered
