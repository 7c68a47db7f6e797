"""
Sidecar metadata storage.

One JSON record is kept per (image, kind). On NTFS the record lives in an
alternate data stream of the image (``photo.jpg:people.json``) so the visible
file is untouched; elsewhere it is a companion file next to the image
(``photo.jpg.faces.json``). Both backends share the same contract: reads never
raise for bad content and writes replace the whole record. Companion files
are swapped in atomically; streams are written in place and verified.
"""

import contextlib
import os
import stat
import tempfile
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import ValidationError

from photo_indexer.kinds import MetadataKind
from photo_indexer.records import InvalidRecord, SidecarRecord


StorageMode = Literal["auto", "companion", "stream"]
PLACEHOLDER = "{}"


def clear_readonly(path: Path) -> None:
    """Make ``path`` writable for its owner if it is marked read-only."""
    try:
        mode = path.stat().st_mode
    except FileNotFoundError:
        return
    if not mode & stat.S_IWUSR:
        path.chmod(mode | stat.S_IWUSR)
        logger.debug("readonly_attribute_cleared", file=str(path))


class SidecarStore:
    """Base store; subclasses decide where the JSON text of a record lives."""

    mode: str = ""

    def location(self, image_path: Path, kind: MetadataKind) -> str:
        raise NotImplementedError

    def _read_text(self, image_path: Path, kind: MetadataKind) -> str:
        with open(self.location(image_path, kind), encoding="utf-8") as fh:  # noqa: PTH123
            return fh.read()

    def _write_text(self, image_path: Path, kind: MetadataKind, text: str) -> None:
        raise NotImplementedError

    def exists(self, image_path: Path, kind: MetadataKind) -> bool:
        return os.path.exists(self.location(image_path, kind))  # noqa: PTH110

    def read(self, image_path: Path, kind: MetadataKind) -> SidecarRecord | None:
        """
        Return the stored record, ``None`` when there is none.

        Unreadable, malformed or schema-invalid content comes back as an
        ``InvalidRecord`` instead of raising.
        """
        try:
            text = self._read_text(image_path, kind)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("sidecar_unreadable", kind=kind.name, error=str(exc))
            return InvalidRecord(reason=str(exc))

        try:
            return kind.record_type.model_validate_json(text)
        except ValidationError as exc:
            logger.debug("sidecar_invalid", kind=kind.name, errors=exc.error_count())
            return InvalidRecord(reason=str(exc))

    def write(self, image_path: Path, kind: MetadataKind, record: SidecarRecord) -> None:
        clear_readonly(image_path)
        self._write_text(image_path, kind, record.to_json())
        logger.debug(
            "sidecar_written",
            kind=kind.name,
            success=record.success,
            target=self.location(image_path, kind),
        )

    def write_placeholder(self, image_path: Path, kind: MetadataKind) -> None:
        """Mark a file as in progress so an interrupted run shows up on re-scan."""
        clear_readonly(image_path)
        self._write_text(image_path, kind, PLACEHOLDER)


class CompanionFileStore(SidecarStore):
    mode = "companion"

    def location(self, image_path: Path, kind: MetadataKind) -> str:
        return str(image_path.with_name(f"{image_path.name}.{kind.name}.json"))

    def _write_text(self, image_path: Path, kind: MetadataKind, text: str) -> None:
        target = Path(self.location(image_path, kind))
        clear_readonly(target)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp_name, target)  # noqa: PTH105
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)  # noqa: PTH108
            raise


class AlternateStreamStore(SidecarStore):
    """
    Records in NTFS alternate data streams.

    Streams cannot be renamed into place, so a write is not atomic: it is
    read back and an interrupted or short write raises ``OSError``. A stream
    left truncated by a crash reads back as an ``InvalidRecord``.
    """

    mode = "stream"

    def location(self, image_path: Path, kind: MetadataKind) -> str:
        return f"{image_path}:{kind.stream}"

    def _write_text(self, image_path: Path, kind: MetadataKind, text: str) -> None:
        target = self.location(image_path, kind)
        with open(target, "w", encoding="utf-8") as fh:  # noqa: PTH123
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        with open(target, encoding="utf-8") as fh:  # noqa: PTH123
            written = fh.read()
        if written != text:
            msg = f"Stream {target} holds {len(written)} of {len(text)} characters after write"
            raise OSError(msg)


def create_store(mode: StorageMode = "auto") -> SidecarStore:
    """Pick a backend; ``auto`` uses alternate streams on Windows only."""
    if mode == "auto":
        mode = "stream" if os.name == "nt" else "companion"
    if mode == "stream":
        if os.name != "nt":
            logger.warning("alternate_streams_require_ntfs", hint="falling back to companion files")
            return CompanionFileStore()
        return AlternateStreamStore()
    if mode == "companion":
        return CompanionFileStore()
    msg = f"Unknown storage mode {mode!r}"
    raise ValueError(msg)
