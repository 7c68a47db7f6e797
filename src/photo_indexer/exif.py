"""EXIF metadata detector using ExifTool."""

from pathlib import Path
from typing import Any

from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from exiftool.exceptions import ExifToolExecuteError
from loguru import logger

from photo_indexer.detection import DetectorError
from photo_indexer.records import ExifRecord


def _format_metadata_value(value: Any) -> Any:  # noqa: ANN401
    """
    Keep JSON-friendly values; stringify anything else ExifTool hands back.

    Examples:
        >>> _format_metadata_value([1, "a", Path("x.jpg")])
        [1, 'a', 'x.jpg']

    """
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_format_metadata_value(item) for item in value]
    return str(value)


class ExifDetector:
    kind = "exif"

    def __init__(self, tags: list[str] | None = None) -> None:
        self.tags = tags

    def detect(self, image_path: Path) -> ExifRecord:
        try:
            with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
                if self.tags:
                    blocks = et.get_tags(files=[str(image_path)], tags=self.tags)
                else:
                    blocks = et.get_metadata(files=[str(image_path)])
        except (ValueError, TypeError, ExifToolExecuteError) as exc:
            msg = f"ExifTool failed: {exc}"
            raise DetectorError(msg) from exc

        tags: dict[str, Any] = {}
        for block in blocks:
            tags.update({key: _format_metadata_value(value) for key, value in block.items()})
        logger.debug("exif_tags_read", count=len(tags))
        return ExifRecord(success=True, tags=tags)
