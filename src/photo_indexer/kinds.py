"""
Per-kind pipeline configuration.

A ``MetadataKind`` bundles what differs between the metadata kinds: the
record schema, the sidecar stream name, the image extensions it accepts and
how a detector result is normalized before it is stored.
"""

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import cast

from loguru import logger
from PIL import Image

from photo_indexer.records import (
    MAX_SHORT_DESCRIPTION,
    DescriptionRecord,
    Detection,
    ExifRecord,
    FacesRecord,
    ObjectsRecord,
    ScenesRecord,
    SidecarRecord,
)


IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".tiff", ".tif"})
DEEPSTACK_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp"})

Normalizer = Callable[[SidecarRecord, Path], SidecarRecord]


@dataclass(frozen=True)
class MetadataKind:
    name: str
    stream: str
    record_type: type[SidecarRecord]
    extensions: frozenset[str]
    normalize: Normalizer

    def failure(self, error: str) -> SidecarRecord:
        return self.record_type.failure(error)


def image_size(image_path: Path) -> tuple[int, int]:
    with Image.open(image_path) as img:
        return img.size


def parse_hierarchical_keyword(keyword: str) -> list[str]:
    """
    Split a keyword chain like 'Duck<Bird<Animal' into root-to-leaf parts.

    Examples:
        >>> parse_hierarchical_keyword("Duck<Bird<Animal")
        ['Animal', 'Bird', 'Duck']
        >>> parse_hierarchical_keyword(" Landscape> ")
        ['Landscape']

    """
    # Remove stray '>' characters that occasionally appear in model output.
    sanitized = keyword.strip().replace(">", "")
    parts = [p.strip() for p in sanitized.split("<") if p.strip()]
    return list(reversed(parts))


def normalize_keywords(keywords: list[str]) -> list[str]:
    """
    Flatten keyword chains and drop blanks and case-insensitive duplicates.

    Examples:
        >>> normalize_keywords(["Duck<Bird<Animal", "bird", " ", "Sky"])
        ['Animal', 'Bird', 'Duck', 'Sky']

    """
    seen: set[str] = set()
    result: list[str] = []
    for keyword in keywords:
        for part in parse_hierarchical_keyword(keyword):
            key = part.casefold()
            if key not in seen:
                seen.add(key)
                result.append(part)
    return result


def _normalize_description(result: SidecarRecord, _image_path: Path) -> SidecarRecord:
    record = cast("DescriptionRecord", result)
    short = record.short_description.strip()
    if len(short) > MAX_SHORT_DESCRIPTION:
        short = short[: MAX_SHORT_DESCRIPTION - 3].rstrip() + "..."
    return record.model_copy(
        update={
            "success": True,
            "error": None,
            "short_description": short,
            "long_description": record.long_description.strip(),
            "keywords": normalize_keywords(record.keywords),
        },
    )


def _clamp_all(predictions: list[Detection], image_path: Path) -> list[Detection]:
    if not predictions:
        return []
    width, height = image_size(image_path)
    clamped = [p.clamped(width, height) for p in predictions]
    changed = sum(1 for before, after in zip(predictions, clamped, strict=True) if before != after)
    if changed:
        logger.debug("bounding_boxes_clamped", count=changed, width=width, height=height)
    return clamped


def _normalize_faces(result: SidecarRecord, image_path: Path) -> SidecarRecord:
    record = cast("FacesRecord", result)
    return FacesRecord.from_predictions(_clamp_all(record.predictions, image_path))


def _normalize_objects(result: SidecarRecord, image_path: Path) -> SidecarRecord:
    record = cast("ObjectsRecord", result)
    return ObjectsRecord.from_predictions(_clamp_all(record.predictions, image_path))


def _normalize_scenes(result: SidecarRecord, _image_path: Path) -> SidecarRecord:
    record = cast("ScenesRecord", result)
    return record.model_copy(
        update={
            "success": True,
            "error": None,
            "confidence_percentage": round(record.confidence * 100, 2),
        },
    )


def _normalize_exif(result: SidecarRecord, _image_path: Path) -> SidecarRecord:
    record = cast("ExifRecord", result)
    tags = {key: value for key, value in record.tags.items() if key != "SourceFile"}
    return record.model_copy(update={"success": True, "error": None, "tags": tags})


DESCRIPTION = MetadataKind(
    name="description",
    stream="description.json",
    record_type=DescriptionRecord,
    extensions=IMAGE_EXTENSIONS,
    normalize=_normalize_description,
)
FACES = MetadataKind(
    name="faces",
    stream="people.json",
    record_type=FacesRecord,
    extensions=DEEPSTACK_EXTENSIONS,
    normalize=_normalize_faces,
)
OBJECTS = MetadataKind(
    name="objects",
    stream="objects.json",
    record_type=ObjectsRecord,
    extensions=DEEPSTACK_EXTENSIONS,
    normalize=_normalize_objects,
)
SCENES = MetadataKind(
    name="scenes",
    stream="scenes.json",
    record_type=ScenesRecord,
    extensions=DEEPSTACK_EXTENSIONS,
    normalize=_normalize_scenes,
)
EXIF = MetadataKind(
    name="exif",
    stream="EXIF.json",
    record_type=ExifRecord,
    extensions=IMAGE_EXTENSIONS,
    normalize=_normalize_exif,
)

KINDS: dict[str, MetadataKind] = {kind.name: kind for kind in (DESCRIPTION, FACES, OBJECTS, SCENES, EXIF)}


def get_kind(name: str) -> MetadataKind:
    try:
        return KINDS[name]
    except KeyError:
        msg = f"Unknown metadata kind {name!r}; expected one of {sorted(KINDS)}"
        raise ValueError(msg) from None
