"""Boundary between the pipeline and the external inference services."""

from pathlib import Path
from typing import Protocol

from photo_indexer.records import SidecarRecord


class DetectorError(RuntimeError):
    """Raised when a detection service reports failure or returns an unusable response."""


class Detector(Protocol):
    """Produces one kind of metadata for an image file."""

    kind: str

    def detect(self, image_path: Path) -> SidecarRecord: ...
