"""Directory enumeration of candidate image files."""

import contextlib
import os
from collections.abc import Iterable, Iterator
from pathlib import Path

from loguru import logger


def parse_extensions(image_extensions: str) -> set[str]:
    """
    Normalize comma-separated extensions into a set like {".cr3", ".jpg"}.

    Examples:
        >>> sorted(parse_extensions("jpg, .PNG ,,webp"))
        ['.jpg', '.png', '.webp']

    """
    return {
        f".{ext.strip().lstrip('.').lower()}"
        for ext in image_extensions.split(",")
        if ext.strip().lstrip(".")
    }


def _resolve(path: Path) -> Path:
    resolved = path.expanduser()
    with contextlib.suppress(OSError):
        resolved = resolved.resolve()
    return resolved


def existing_roots(roots: Iterable[Path]) -> list[Path]:
    """Return the roots that are directories, warning about the others."""
    found: list[Path] = []
    for root in roots:
        resolved = _resolve(root)
        if resolved.is_dir():
            found.append(resolved)
        else:
            logger.warning("root_directory_not_found", path=str(root))
    return found


def _walk(root: Path, *, recursive: bool) -> Iterator[Path]:
    if not recursive:
        try:
            entries = sorted(root.iterdir())
        except OSError as exc:
            logger.warning("directory_unreadable", path=str(root), error=str(exc))
            return
        yield from (entry for entry in entries if entry.is_file())
        return

    def _on_error(exc: OSError) -> None:
        logger.warning("directory_unreadable", path=exc.filename, error=exc.strerror)

    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
        dirnames.sort()
        for name in sorted(filenames):
            yield Path(dirpath) / name


def iter_media_files(
    roots: Iterable[Path],
    extensions: Iterable[str],
    *,
    recursive: bool = False,
) -> Iterator[Path]:
    """
    Lazily yield image files under ``roots`` whose extension is allowed.

    - Extension matching is case insensitive.
    - Missing roots are reported and skipped.
    - A file reachable from several roots is yielded once.
    - Each call starts a fresh walk.
    """
    allowed = {ext.lower() for ext in extensions}
    seen: set[Path] = set()
    for root in existing_roots(roots):
        logger.debug("scanning_directory", path=str(root), recursive=recursive)
        for path in _walk(root, recursive=recursive):
            if path.suffix.lower() not in allowed or path in seen:
                continue
            seen.add(path)
            yield path


def validate_image_file(image_path: Path, extensions: Iterable[str]) -> None:
    """Raise if ``image_path`` is missing or not one of the supported image formats."""
    if not image_path.is_file():
        msg = f"Image file not found: {image_path}"
        raise FileNotFoundError(msg)
    allowed = sorted(ext.lower() for ext in extensions)
    if image_path.suffix.lower() not in allowed:
        supported = ", ".join(ext.lstrip(".") for ext in allowed)
        msg = f"Invalid image format. Supported formats: {supported}"
        raise ValueError(msg)
    logger.debug("image_file_validated", file=str(image_path))
