"""
Per-file batch metadata-update pipeline.

For every image found under the input roots the driver reads the existing
sidecar record, applies the eligibility policy, calls the detector and stores
either the normalized result or a failure record. Problems with a single file
are logged and reported in its outcome; they never stop the run.
"""

import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from loguru import logger

from photo_indexer.config import DEFAULT_MAX_FILE_SIZE
from photo_indexer.detection import Detector, DetectorError
from photo_indexer.kinds import MetadataKind
from photo_indexer.policy import RunPolicy, should_process
from photo_indexer.records import SidecarRecord
from photo_indexer.store import SidecarStore
from photo_indexer.walker import existing_roots, iter_media_files


Status = Literal["skipped", "succeeded", "failed"]


@dataclass
class FileOutcome:
    path: Path
    kind: str
    status: Status
    reason: str | None = None
    record: SidecarRecord | None = None

    @property
    def error(self) -> str | None:
        if self.record is not None and self.record.error:
            return self.record.error
        return self.reason if self.status == "failed" else None


@dataclass
class RunSummary:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failed_files: list[Path] = field(default_factory=list)

    @property
    def processed(self) -> int:
        """Files that reached the detector, whatever the result."""
        return self.succeeded + self.failed

    @property
    def total(self) -> int:
        return self.processed + self.skipped

    def add(self, outcome: FileOutcome) -> None:
        if outcome.status == "succeeded":
            self.succeeded += 1
        elif outcome.status == "failed":
            self.failed += 1
            self.failed_files.append(outcome.path)
        else:
            self.skipped += 1


class MetadataPipeline:
    def __init__(
        self,
        kind: MetadataKind,
        detector: Detector,
        store: SidecarStore,
        *,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ) -> None:
        if detector.kind != kind.name:
            msg = f"Detector for {detector.kind!r} cannot update {kind.name!r} metadata"
            raise ValueError(msg)
        self.kind = kind
        self.detector = detector
        self.store = store
        self.max_file_size = max_file_size

    def _io_problem(self, image_path: Path) -> str | None:
        try:
            size = image_path.stat().st_size
        except OSError as exc:
            return f"unreadable: {exc.strerror or exc}"
        if size > self.max_file_size:
            return f"too large: {size} bytes"
        if not os.access(image_path, os.R_OK):
            return "unreadable: permission denied"
        return None

    def _skip(self, image_path: Path, reason: str) -> FileOutcome:
        return FileOutcome(image_path, self.kind.name, "skipped", reason=reason)

    def process_file(self, image_path: Path, policy: RunPolicy) -> FileOutcome:
        with logger.contextualize(file=image_path.name, kind=self.kind.name):
            existing = self.store.read(image_path, self.kind)
            if not should_process(existing, policy):
                logger.debug("file_skipped", reason="up_to_date")
                return self._skip(image_path, "up_to_date")

            if problem := self._io_problem(image_path):
                logger.warning("file_skipped", reason=problem)
                return self._skip(image_path, problem)

            try:
                if existing is None:
                    self.store.write_placeholder(image_path, self.kind)
            except OSError as exc:
                logger.warning("sidecar_not_writable", error=str(exc))
                return self._skip(image_path, f"sidecar not writable: {exc}")

            status: Status
            try:
                result = self.detector.detect(image_path)
                record = self.kind.normalize(result, image_path)
            except DetectorError as exc:
                logger.error("detection_failed", error=str(exc))
                record, status = self.kind.failure(str(exc)), "failed"
            except Exception as exc:  # noqa: BLE001
                logger.exception("detection_exception", error=str(exc))
                record, status = self.kind.failure(str(exc) or type(exc).__name__), "failed"
            else:
                status = "succeeded"

            try:
                self.store.write(image_path, self.kind, record)
            except OSError as exc:
                logger.error("sidecar_write_failed", error=str(exc))
                return FileOutcome(image_path, self.kind.name, "failed", reason=str(exc), record=record)

            if status == "succeeded":
                logger.info("file_processed")
            return FileOutcome(image_path, self.kind.name, status, record=record)

    def run(self, roots: Iterable[Path], policy: RunPolicy) -> Iterator[FileOutcome]:
        """Yield one outcome per candidate file, lazily and in walk order."""
        found = existing_roots(roots)
        if not found:
            logger.warning("no_root_directories_found", kind=self.kind.name)
            return
        logger.info(
            "pipeline_started",
            kind=self.kind.name,
            roots=[str(root) for root in found],
            recurse=policy.recurse,
            only_new=policy.only_new,
            retry_failed=policy.retry_failed,
            force=policy.force,
        )
        for image_path in iter_media_files(found, self.kind.extensions, recursive=policy.recurse):
            yield self.process_file(image_path, policy)

    def run_all(self, roots: Iterable[Path], policy: RunPolicy) -> RunSummary:
        summary = RunSummary()
        for outcome in self.run(roots, policy):
            summary.add(outcome)
        logger.info(
            "processing_summary",
            kind=self.kind.name,
            total_files=summary.total,
            processed=summary.processed,
            successful=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
        )
        return summary
