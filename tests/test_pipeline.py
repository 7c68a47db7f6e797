"""End-to-end pipeline scenarios with a scripted detector and companion-file sidecars."""

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from photo_indexer.detection import DetectorError
from photo_indexer.kinds import DESCRIPTION, FACES, OBJECTS, SCENES
from photo_indexer.pipeline import MetadataPipeline
from photo_indexer.policy import RunPolicy
from photo_indexer.records import DescriptionRecord, Detection, FacesRecord, ObjectsRecord, ScenesRecord
from photo_indexer.store import CompanionFileStore


ONLY_NEW = RunPolicy(only_new=True)
RETRY = RunPolicy(only_new=True, retry_failed=True)


def _description(*keywords: str) -> DescriptionRecord:
    return DescriptionRecord(
        success=True,
        short_description="A cat sleeping on a sofa",
        long_description="A ginger cat curled up on a grey sofa.",
        keywords=list(keywords),
    )


def test_empty_directory_processes_nothing(
    tmp_path: Path,
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    detector = detector_factory("description", _description("Cat"))
    pipeline = MetadataPipeline(DESCRIPTION, detector, store)

    summary = pipeline.run_all([tmp_path], RunPolicy())

    assert summary.processed == 0
    assert summary.total == 0
    assert detector.calls == []


def test_new_file_is_described_once(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    """A completed file is not sent to the detector again with only_new."""
    image = make_image()
    detector = detector_factory("description", _description("Cat", "Sofa"))
    pipeline = MetadataPipeline(DESCRIPTION, detector, store)

    first = list(pipeline.run([image.parent], ONLY_NEW))
    second = list(pipeline.run([image.parent], ONLY_NEW))

    assert [o.status for o in first] == ["succeeded"]
    assert [o.status for o in second] == ["skipped"]
    assert second[0].reason == "up_to_date"
    assert len(detector.calls) == 1

    data = json.loads(Path(store.location(image, DESCRIPTION)).read_text(encoding="utf-8"))
    assert data["success"] is True
    assert len(data["keywords"]) == 2


def test_detector_failure_is_recorded_and_retried(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    """Failures are stored, skipped by a plain only_new run and retried on request."""
    image = make_image()
    detector = detector_factory("description", RuntimeError("model crashed"), _description("Cat"))
    pipeline = MetadataPipeline(DESCRIPTION, detector, store)

    failed = pipeline.run_all([image.parent], ONLY_NEW)
    record = store.read(image, DESCRIPTION)
    assert failed.failed == 1
    assert failed.failed_files == [image.resolve()]
    assert record is not None
    assert record.success is False
    assert record.error == "model crashed"

    pipeline.run_all([image.parent], ONLY_NEW)
    assert len(detector.calls) == 1

    retried = pipeline.run_all([image.parent], RETRY)
    assert retried.succeeded == 1
    assert len(detector.calls) == 2
    assert store.read(image, DESCRIPTION) == _description("Cat")


def test_detector_error_does_not_stop_the_run(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    make_image("a.jpg")
    make_image("b.jpg")
    detector = detector_factory("scenes", DetectorError("HTTP 500"), ScenesRecord.from_prediction("forest", 0.9))
    pipeline = MetadataPipeline(SCENES, detector, store)

    outcomes = list(pipeline.run([make_image("c.jpg").parent], RunPolicy()))

    assert [o.status for o in outcomes] == ["failed", "succeeded", "succeeded"]
    assert outcomes[0].error == "HTTP 500"


def test_missing_root_is_skipped_but_others_run(
    make_image: Callable[..., Path],
    tmp_path: Path,
    store: CompanionFileStore,
    detector_factory: type,
    log_events: list[str],
) -> None:
    image = make_image()
    detector = detector_factory("objects", ObjectsRecord(success=True))
    pipeline = MetadataPipeline(OBJECTS, detector, store)

    summary = pipeline.run_all([tmp_path / "nowhere", image.parent], RunPolicy())

    assert summary.succeeded == 1
    assert "root_directory_not_found" in log_events


def test_no_existing_root_ends_early(
    tmp_path: Path,
    store: CompanionFileStore,
    detector_factory: type,
    log_events: list[str],
) -> None:
    detector = detector_factory("objects", ObjectsRecord(success=True))
    pipeline = MetadataPipeline(OBJECTS, detector, store)

    assert list(pipeline.run([tmp_path / "a", tmp_path / "b"], RunPolicy())) == []
    assert "no_root_directories_found" in log_events


def test_placeholder_exists_during_detection(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    """An empty record marks the file as in progress before the detector runs."""
    image = make_image()
    seen: list[str] = []

    def _detect(path: Path) -> FacesRecord:
        seen.append(Path(store.location(path, FACES)).read_text(encoding="utf-8"))
        return FacesRecord(success=True)

    pipeline = MetadataPipeline(FACES, detector_factory("faces", _detect), store)
    pipeline.run_all([image.parent], RunPolicy())

    assert seen == ["{}"]


def test_interrupted_placeholder_is_retried(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    """A leftover placeholder counts as unfinished work."""
    image = make_image()
    store.write_placeholder(image, OBJECTS)
    detector = detector_factory("objects", ObjectsRecord(success=True))
    pipeline = MetadataPipeline(OBJECTS, detector, store)

    assert pipeline.run_all([image.parent], ONLY_NEW).skipped == 1
    assert pipeline.run_all([image.parent], RETRY).succeeded == 1


def test_malformed_sidecar_is_retried_not_fatal(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    image = make_image()
    Path(store.location(image, SCENES)).write_text("{truncated", encoding="utf-8")
    detector = detector_factory("scenes", ScenesRecord.from_prediction("beach", 0.95))
    pipeline = MetadataPipeline(SCENES, detector, store)

    assert pipeline.run_all([image.parent], ONLY_NEW).skipped == 1
    assert pipeline.run_all([image.parent], RETRY).succeeded == 1
    record = store.read(image, SCENES)
    assert isinstance(record, ScenesRecord)
    assert record.scene == "beach"


def test_unknown_scene_without_flag_is_skipped(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    image = make_image()
    Path(store.location(image, SCENES)).write_text('{"scene": "unknown"}', encoding="utf-8")
    detector = detector_factory("scenes", ScenesRecord.from_prediction("beach", 0.95))
    pipeline = MetadataPipeline(SCENES, detector, store)

    assert pipeline.run_all([image.parent], RETRY).skipped == 1
    assert detector.calls == []


def test_face_results_are_clamped_and_collapsed(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    image = make_image(size=(100, 80))
    raw = FacesRecord(
        success=True,
        predictions=[
            Detection(x_min=60, y_min=10, x_max=140, y_max=95, confidence=0.9, userid="alice_20240101"),
            Detection(x_min=5, y_min=5, x_max=30, y_max=30, confidence=0.8, userid="alice_20240215"),
        ],
    )
    pipeline = MetadataPipeline(FACES, detector_factory("faces", raw), store)

    pipeline.run_all([image.parent], RunPolicy())

    record = store.read(image, FACES)
    assert isinstance(record, FacesRecord)
    assert record.faces == ["alice"]
    assert record.count == 2
    assert (record.predictions[0].x_max, record.predictions[0].y_max) == (100, 80)
    assert record.predictions[0].userid == "alice_20240101"


def test_oversized_file_is_skipped_without_sidecar(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
    log_events: list[str],
) -> None:
    image = make_image()
    detector = detector_factory("objects", ObjectsRecord(success=True))
    pipeline = MetadataPipeline(OBJECTS, detector, store, max_file_size=10)

    outcomes = list(pipeline.run([image.parent], RunPolicy()))

    assert outcomes[0].status == "skipped"
    assert outcomes[0].reason is not None
    assert outcomes[0].reason.startswith("too large")
    assert detector.calls == []
    assert not store.exists(image, OBJECTS)
    assert "file_skipped" in log_events


def test_force_reprocesses_completed_files(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    image = make_image()
    detector = detector_factory("objects", ObjectsRecord(success=True))
    pipeline = MetadataPipeline(OBJECTS, detector, store)

    pipeline.run_all([image.parent], RunPolicy())
    pipeline.run_all([image.parent], RunPolicy(only_new=True, force=True))

    assert len(detector.calls) == 2


def test_run_is_lazy(
    make_image: Callable[..., Path],
    store: CompanionFileStore,
    detector_factory: type,
) -> None:
    """Stopping iteration after the first file leaves the rest untouched."""
    make_image("a.jpg")
    make_image("b.jpg")
    detector = detector_factory("objects", ObjectsRecord(success=True))
    pipeline = MetadataPipeline(OBJECTS, detector, store)

    outcomes = pipeline.run([make_image("c.jpg").parent], RunPolicy())
    next(outcomes)
    outcomes.close()

    assert len(detector.calls) == 1


def test_detector_kind_must_match(store: CompanionFileStore, detector_factory: type) -> None:
    with pytest.raises(ValueError, match="cannot update"):
        MetadataPipeline(FACES, detector_factory("objects", ObjectsRecord(success=True)), store)
