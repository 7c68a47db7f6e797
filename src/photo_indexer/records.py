"""
Typed sidecar records, one schema per metadata kind.

Each kind has a fixed pydantic model. Records are validated when read from
the sidecar store; content that does not parse becomes an ``InvalidRecord``
so re-scan decisions never depend on string comparisons against raw JSON.
"""

from collections import Counter
from collections.abc import Iterable
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field


UNKNOWN_IDENTITY = "unknown"
UNKNOWN_SCENE = "unknown"
MAX_SHORT_DESCRIPTION = 80


class Detection(BaseModel):
    """A single face or object prediction with its bounding box."""

    model_config = ConfigDict(extra="ignore")

    x_min: int
    y_min: int
    x_max: int
    y_max: int
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    label: str | None = None
    userid: str | None = None

    @property
    def identity(self) -> str:
        return self.userid or self.label or UNKNOWN_IDENTITY

    def clamped(self, width: int, height: int) -> "Detection":
        """
        Return a copy whose box lies inside a ``width`` x ``height`` image.

        The clamped box always keeps at least one pixel on each axis.

        Examples:
            >>> box = Detection(x_min=90, y_min=-5, x_max=140, y_max=40)
            >>> c = box.clamped(100, 50)
            >>> (c.x_min, c.y_min, c.x_max, c.y_max)
            (90, 0, 100, 40)

        """
        x_min, x_max = _clamp_span(self.x_min, self.x_max, width)
        y_min, y_max = _clamp_span(self.y_min, self.y_max, height)
        return self.model_copy(update={"x_min": x_min, "y_min": y_min, "x_max": x_max, "y_max": y_max})


def _clamp_span(low: int, high: int, size: int) -> tuple[int, int]:
    size = max(size, 1)
    low = min(max(low, 0), size - 1)
    high = min(max(high, low + 1), size)
    return low, high


def collapse_identities(identities: Iterable[str]) -> list[str]:
    """
    Deduplicate identities by dropping the text after the last underscore.

    Registered faces carry a disambiguation suffix (``alice_20240101``); the
    summary lists each person once and leaves out unrecognized faces.

    Examples:
        >>> collapse_identities(["alice_20240101", "alice_20240215", "unknown", "bob"])
        ['alice', 'bob']

    """
    collapsed: list[str] = []
    for identity in identities:
        name = identity.strip()
        if "_" in name:
            name = name.rsplit("_", 1)[0]
        if not name or name.casefold() == UNKNOWN_IDENTITY:
            continue
        if name not in collapsed:
            collapsed.append(name)
    return collapsed


class SidecarRecord(BaseModel):
    """Base for all sidecar records: an optional success flag and error message."""

    model_config = ConfigDict(extra="ignore")

    success: bool | None = None
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> Self:
        return cls(success=False, error=error)

    def is_failure(self) -> bool:
        return self.success is False

    def is_empty(self) -> bool:
        return False

    def is_valid(self) -> bool:
        """Whether the record is a completed result that a re-scan may skip."""
        return self.success is True

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True, indent=2)


class InvalidRecord(SidecarRecord):
    """Stands in for sidecar content that could not be parsed or validated."""

    reason: str = ""

    def is_empty(self) -> bool:
        return True

    def is_valid(self) -> bool:
        return False


class DescriptionRecord(SidecarRecord):
    short_description: str = ""
    long_description: str = ""
    has_nudity: bool = False
    keywords: list[str] = Field(default_factory=list)
    has_explicit_content: bool = False
    overall_mood_of_image: str = ""
    picture_type: str = ""
    style_type: str = ""

    def is_empty(self) -> bool:
        return not (self.keywords or self.short_description.strip() or self.long_description.strip())

    def is_valid(self) -> bool:
        return not self.is_failure() and not self.is_empty()


class FacesRecord(SidecarRecord):
    count: int = 0
    faces: list[str] = Field(default_factory=list)
    predictions: list[Detection] = Field(default_factory=list)

    @classmethod
    def from_predictions(cls, predictions: list[Detection]) -> Self:
        return cls(
            success=True,
            count=len(predictions),
            faces=collapse_identities(p.identity for p in predictions),
            predictions=predictions,
        )

    def is_empty(self) -> bool:
        # zero faces only counts as a result when the service said so
        return self.success is None and not self.predictions


class ObjectsRecord(SidecarRecord):
    count: int = 0
    objects: list[str] = Field(default_factory=list)
    predictions: list[Detection] = Field(default_factory=list)
    object_counts: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_predictions(cls, predictions: list[Detection]) -> Self:
        counts = Counter(p.identity for p in predictions)
        return cls(
            success=True,
            count=len(predictions),
            objects=list(counts),
            predictions=predictions,
            object_counts=dict(counts),
        )

    def is_empty(self) -> bool:
        return self.success is None and not self.predictions


class ScenesRecord(SidecarRecord):
    scene: str | None = None
    label: str | None = None
    confidence: float = 0.0
    confidence_percentage: float = 0.0

    @classmethod
    def failure(cls, error: str) -> Self:
        return cls(
            success=False,
            scene=UNKNOWN_SCENE,
            label=UNKNOWN_SCENE,
            confidence=0.0,
            confidence_percentage=0.0,
            error=error,
        )

    @classmethod
    def from_prediction(cls, label: str, confidence: float, threshold: float = 0.0) -> Self:
        """Build a success record; predictions under ``threshold`` become ``unknown``."""
        scene = label if confidence >= threshold else UNKNOWN_SCENE
        return cls(
            success=True,
            scene=scene,
            label=label,
            confidence=confidence,
            confidence_percentage=round(confidence * 100, 2),
        )

    def is_empty(self) -> bool:
        return self.success is None and self.scene is None

    def is_valid(self) -> bool:
        # an "unknown" scene without an explicit flag is a completed result too
        if self.success is True:
            return True
        return self.success is None and self.scene == UNKNOWN_SCENE


class ExifRecord(SidecarRecord):
    tags: dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.tags

    def is_valid(self) -> bool:
        return self.success is True and not self.is_empty()
