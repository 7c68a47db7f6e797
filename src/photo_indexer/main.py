#!/usr/bin/env python3
"""
Photo Indexer: CLI app that caches AI-generated image metadata in sidecar records.

For every image under the given directories one kind of metadata is requested
from a local AI service and stored next to the image:

 - description: keywords and descriptions from a vision-language model (LM Studio or Ollama)
 - faces, objects, scenes: DeepStack detections
 - exif: ExifTool metadata

Records live in NTFS alternate data streams on Windows and in companion
``<image>.<kind>.json`` files elsewhere. Re-runs skip completed files with
--only-new and give failed ones another chance with --retry-failed.

Requirements:
 - LM Studio/Ollama with a vision-language model for `description`.
 - A DeepStack container for `faces`, `objects` and `scenes`.
 - ExifTool on PATH for `exif`.

"""
# ruff: noqa: PLR0913

import contextlib
import csv
import dataclasses
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Literal, NoReturn

from cyclopts import App, Parameter, validators
from loguru import logger

from photo_indexer import __version__
from photo_indexer.config import (
    DEFAULT_DEEPSTACK_API_KEY,
    DEFAULT_DEEPSTACK_TIMEOUT,
    DEFAULT_DIMENSIONS,
    DEFAULT_JPEG_QUALITY,
    DEFAULT_MAX_FILE_SIZE,
    DEFAULT_MAX_TOKENS,
    DEFAULT_RETRIES,
    DEFAULT_TEMPERATURE,
    PROVIDERS,
    STORAGE_MODES,
    SUPPORTED_LANGUAGES,
    PreferenceError,
    Preferences,
    load_persisted_preferences,
)
from photo_indexer.deepstack import DeepStackClient, FaceDetector, ObjectDetector, SceneDetector
from photo_indexer.detection import Detector, DetectorError
from photo_indexer.exif import ExifDetector
from photo_indexer.faces import crop_all_faces, register_known_faces
from photo_indexer.kinds import get_kind
from photo_indexer.lmstudio import DescriptionDetector, create_agent
from photo_indexer.pipeline import FileOutcome, MetadataPipeline, RunSummary
from photo_indexer.policy import RunPolicy
from photo_indexer.store import SidecarStore, StorageMode, create_store
from photo_indexer.walker import parse_extensions


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]
KindName = Literal["description", "faces", "objects", "scenes", "exif"]
REPORT_FIELDS = ("path", "kind", "status", "reason", "error")

app = App(
    name="photo-indexer",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
    kind: str | None = None,
) -> None:
    """
    Configure Loguru for both console and file logging.

    The file sink gets one log per run, named after the metadata kind, and
    puts the ``kind`` and ``file`` context of the pipeline in fixed columns
    so a log can be filtered per image.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored
        kind: Metadata kind being updated, if any

    """
    logger.remove()
    logger.configure(extra={"kind": kind or "-", "file": "-"})

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        suffix = f"-{kind}" if kind else ""
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime(f"%Y%m%d%H%M%S-photo_indexer{suffix}.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[kind]:<11} | "
                "{extra[file]:<30} | "
                "{name}:{function}:{line} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )
        logger.debug("log_file_opened", path=str(log_file))

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<cyan>{extra[file]:<24.24}</cyan> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def write_report(outcomes: list[FileOutcome], report_path: Path) -> None:
    """Write one CSV row per file outcome."""
    report_path.parent.mkdir(parents=True, exist_ok=True)
    with report_path.open("w", encoding="utf-8", newline="") as fh:
        writer = csv.DictWriter(fh, fieldnames=REPORT_FIELDS)
        writer.writeheader()
        for outcome in outcomes:
            writer.writerow(
                {
                    "path": str(outcome.path),
                    "kind": outcome.kind,
                    "status": outcome.status,
                    "reason": outcome.reason or "",
                    "error": outcome.error or "",
                },
            )
    logger.info("report_written", file=str(report_path), rows=len(outcomes))


def _invalid_preference(exc: PreferenceError) -> NoReturn:
    logger.error("invalid_preference", key=exc.key, value=exc.value, expected=exc.expected)
    raise SystemExit(1) from exc


def _input_roots(prefs: Preferences, inputs: list[Path] | None) -> list[Path]:
    """Directories given with -i, else the saved ``image_directories`` list."""
    try:
        roots = prefs.get_paths("image_directories", inputs)
    except PreferenceError as exc:
        _invalid_preference(exc)
    if not roots:
        logger.error(
            "no_inputs_provided",
            hint="Pass one or more --input/-i directories or set image_directories",
        )
        raise SystemExit(1)
    return roots


def _sidecar_store(prefs: Preferences, storage: StorageMode | None) -> SidecarStore:
    try:
        mode = prefs.get_choice("storage", STORAGE_MODES, storage)
    except PreferenceError as exc:
        _invalid_preference(exc)
    return create_store(mode)  # type: ignore[arg-type]


def _deepstack_client(
    stack: contextlib.ExitStack,
    prefs: Preferences,
    deepstack_url: str | None,
    deepstack_api_key: str | None,
) -> DeepStackClient:
    url = str(prefs.get("deepstack_url", deepstack_url))
    try:
        client = DeepStackClient(
            url,
            api_key=deepstack_api_key or DEFAULT_DEEPSTACK_API_KEY,
            timeout=DEFAULT_DEEPSTACK_TIMEOUT,
        )
    except ValueError as exc:
        logger.error("deepstack_url_invalid", url=url, error=str(exc))
        raise SystemExit(1) from exc
    return stack.enter_context(client)


def _build_detector(
    kind: KindName,
    stack: contextlib.ExitStack,
    prefs: Preferences,
    *,
    language: str | None,
    model_name: str | None,
    provider_name: Literal["ollama", "lmstudio"] | None,
    api_base_url: str | None,
    api_key: str | None,
    deepstack_url: str | None,
    deepstack_api_key: str | None,
    confidence_threshold: float | None,
    temperature: float,
    max_tokens: int,
    jpeg_dimensions: int,
    jpeg_quality: int,
    retries: int,
) -> Detector:
    if kind == "description":
        provider = prefs.get_choice("provider", PROVIDERS, provider_name)
        prompt_language = prefs.get_choice("language", SUPPORTED_LANGUAGES, language)
        url = api_base_url or (prefs.get("lmstudio_url") if provider == "lmstudio" else None)
        agent = create_agent(
            provider,  # type: ignore[arg-type]
            prefs.get("model", model_name),
            api_base_url=url,
            api_key=api_key,
            retries=retries,
        )
        return DescriptionDetector(
            agent,
            language=prompt_language,
            temperature=temperature,
            max_tokens=max_tokens,
            jpeg_dimensions=jpeg_dimensions,
            jpeg_quality=jpeg_quality,
        )
    if kind == "exif":
        return ExifDetector()

    client = _deepstack_client(stack, prefs, deepstack_url, deepstack_api_key)
    threshold = prefs.get_float("confidence_threshold", confidence_threshold, minimum=0.0, maximum=1.0)
    if kind == "faces":
        return FaceDetector(client, min_confidence=threshold)
    if kind == "objects":
        return ObjectDetector(client, min_confidence=threshold)
    return SceneDetector(client, min_confidence=threshold)


@app.command
def update(
    kind: KindName,
    inputs: Annotated[
        list[Path] | None,
        Parameter(
            name=("--input", "-i"),
            help="One or more directories to scan (repeat this option)",
        ),
    ] = None,
    *,
    recursive: Annotated[
        bool,
        Parameter(name=("--recursive", "-r"), help="Scan subdirectories recursively"),
    ] = False,
    only_new: Annotated[
        bool,
        Parameter(name=("--only-new",), help="Skip images that already have a completed record"),
    ] = False,
    retry_failed: Annotated[
        bool,
        Parameter(name=("--retry-failed",), help="With --only-new, reprocess failed or invalid records"),
    ] = False,
    force: Annotated[
        bool,
        Parameter(name=("--force",), help="Reprocess every image regardless of existing records"),
    ] = False,
    report: Annotated[
        Path | None,
        Parameter(name=("--report",), help="Write a CSV report of per-file outcomes"),
    ] = None,
    storage: Annotated[
        StorageMode | None,
        Parameter(name=("--storage",), help="Sidecar backend: 'auto', 'companion' or 'stream'"),
    ] = None,
    preferences_file: Annotated[
        Path | None,
        Parameter(name=("--preferences",), help="JSON file with persisted preferences"),
    ] = None,
    skip_session: Annotated[
        bool,
        Parameter(name=("--skip-session",), help="Ignore PHOTO_INDEXER_* session overrides"),
    ] = False,
    language: Annotated[
        str | None,
        Parameter(name=("--language",), help="Language for generated descriptions and keywords"),
    ] = None,
    model_name: Annotated[
        str | None,
        Parameter(name=("--model", "-m"), help="Vision-language model name"),
    ] = None,
    provider_name: Annotated[
        Literal["ollama", "lmstudio"] | None,
        Parameter(name=("--provider",), help="Backend provider: 'ollama' or 'lmstudio'"),
    ] = None,
    api_base_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="Provider API base URL"),
    ] = None,
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="Provider API key. Will try env vars if not set"),
    ] = None,
    deepstack_url: Annotated[
        str | None,
        Parameter(name=("--deepstack-url",), help="DeepStack vision API base URL"),
    ] = None,
    deepstack_api_key: Annotated[
        str | None,
        Parameter(name=("--deepstack-api-key",), help="DeepStack API key"),
    ] = None,
    confidence_threshold: Annotated[
        float | None,
        Parameter(
            name=("--confidence",),
            help="Minimum confidence for DeepStack detections (0.0-1.0)",
        ),
    ] = None,
    temperature: Annotated[
        float,
        Parameter(name=("--temperature",), help="Sampling temperature (0.0-1.0)"),
    ] = DEFAULT_TEMPERATURE,
    max_tokens: Annotated[
        int,
        Parameter(name=("--max-tokens",), help="Maximum tokens to generate"),
    ] = DEFAULT_MAX_TOKENS,
    jpeg_dimensions: Annotated[
        int,
        Parameter(
            name=("--jpeg-dimensions",),
            help="Max dimension in pixels for the resized JPEG sent to the model",
        ),
    ] = DEFAULT_DIMENSIONS,
    jpeg_quality: Annotated[
        int,
        Parameter(
            name=("--jpeg-quality",),
            help="JPEG quality (1-100) for the image sent to the model",
        ),
    ] = DEFAULT_JPEG_QUALITY,
    retries: Annotated[
        int,
        Parameter(name=("--retries",), help="Number of automatic validation retries"),
    ] = DEFAULT_RETRIES,
    image_extensions: Annotated[
        str | None,
        Parameter(
            name=("--extensions", "-e"),
            help="Comma-separated extensions to process instead of the kind's defaults",
        ),
    ] = None,
    max_file_size: Annotated[
        int,
        Parameter(name=("--max-file-size",), help="Skip images larger than this many bytes"),
    ] = DEFAULT_MAX_FILE_SIZE,
    file_log_level: Annotated[
        LogLevel,
        Parameter(name="--file-log-level", help="Log level for file (use 'OFF' to disable)"),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(name=("--log-folder",), help="Folder where log files are stored"),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(name="--console-log-level", help="Log level for console (use 'OFF' to disable)"),
    ] = "INFO",
) -> None:
    """
    Update one kind of sidecar metadata for every image under the input directories.

    Behavior:
    - Without flags every image is processed and its record overwritten.
    - --only-new skips images with a completed record; add --retry-failed to
        reprocess failed, empty or unreadable records. --force overrides both.
    - Detection failures are recorded as {"success": false, "error": ...}
        and the run continues with the next image.

    Without -i the directories saved as the `image_directories` preference
    are scanned.

    Exit status: returns 1 when no directories are known, when a preference
    value is invalid, or when any image failed.

    Examples:
        photo-indexer update description -i ./photos -r --only-new
        photo-indexer update faces -i ./photos --only-new --retry-failed
        photo-indexer update scenes -i ./a -i ./b --report scenes.csv

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
        kind=kind,
    )
    prefs = Preferences(load_persisted_preferences(preferences_file), skip_session=skip_session)
    roots = _input_roots(prefs, inputs)
    logger.info(
        "starting_photo_indexer",
        kind=kind,
        inputs=[str(p) for p in roots],
        recursive=recursive,
        only_new=only_new,
        retry_failed=retry_failed,
        force=force,
    )
    policy = RunPolicy(recurse=recursive, only_new=only_new, retry_failed=retry_failed, force=force)
    store = _sidecar_store(prefs, storage)

    summary = RunSummary()
    outcomes: list[FileOutcome] = []
    with contextlib.ExitStack() as stack:
        try:
            detector = _build_detector(
                kind,
                stack,
                prefs,
                language=language,
                model_name=model_name,
                provider_name=provider_name,
                api_base_url=api_base_url,
                api_key=api_key,
                deepstack_url=deepstack_url,
                deepstack_api_key=deepstack_api_key,
                confidence_threshold=confidence_threshold,
                temperature=temperature,
                max_tokens=max_tokens,
                jpeg_dimensions=jpeg_dimensions,
                jpeg_quality=jpeg_quality,
                retries=retries,
            )
        except PreferenceError as exc:
            _invalid_preference(exc)
        metadata_kind = get_kind(kind)
        if image_extensions:
            metadata_kind = dataclasses.replace(metadata_kind, extensions=frozenset(parse_extensions(image_extensions)))
        pipeline = MetadataPipeline(metadata_kind, detector, store, max_file_size=max_file_size)
        for outcome in pipeline.run(roots, policy):
            summary.add(outcome)
            if report:
                outcomes.append(outcome)

    logger.info(
        "processing_summary",
        total_files=summary.total,
        processed=summary.processed,
        successful=summary.succeeded,
        failed=summary.failed,
        skipped=summary.skipped,
    )
    if report:
        write_report(outcomes, report)
    if summary.failed_files:
        logger.error("files_failed", files=[str(path) for path in summary.failed_files])
        raise SystemExit(1)


@app.command(name="register-faces")
def register_faces(
    *,
    faces_root: Annotated[
        Path | None,
        Parameter(
            name=("--faces-root",),
            help="Directory with one subdirectory of images per person",
        ),
    ] = None,
    deepstack_url: Annotated[
        str | None,
        Parameter(name=("--deepstack-url",), help="DeepStack vision API base URL"),
    ] = None,
    deepstack_api_key: Annotated[
        str | None,
        Parameter(name=("--deepstack-api-key",), help="DeepStack API key"),
    ] = None,
    preferences_file: Annotated[
        Path | None,
        Parameter(name=("--preferences",), help="JSON file with persisted preferences"),
    ] = None,
    skip_session: Annotated[
        bool,
        Parameter(name=("--skip-session",), help="Ignore PHOTO_INDEXER_* session overrides"),
    ] = False,
    console_log_level: Annotated[
        LogLevel,
        Parameter(name="--console-log-level", help="Log level for console (use 'OFF' to disable)"),
    ] = "INFO",
) -> None:
    """Register the known faces (``<root>/<person>/*.jpg``) with DeepStack face recognition."""
    setup_logging(file_log_level="OFF", console_log_level=console_log_level)
    prefs = Preferences(load_persisted_preferences(preferences_file), skip_session=skip_session)
    try:
        root = prefs.get_path("known_faces_root", faces_root)
    except PreferenceError as exc:
        _invalid_preference(exc)
    with contextlib.ExitStack() as stack:
        client = _deepstack_client(stack, prefs, deepstack_url, deepstack_api_key)
        registered = register_known_faces(root, client)
        if registered:
            try:
                logger.info("deepstack_known_faces", userids=client.list_faces())
            except DetectorError as exc:
                logger.warning("known_faces_listing_failed", error=str(exc))
    if not registered:
        logger.error("no_faces_registered", root=str(root))
        raise SystemExit(1)


@app.command(name="crop-faces")
def crop_faces_command(
    inputs: Annotated[
        list[Path] | None,
        Parameter(name=("--input", "-i"), help="One or more directories to scan (repeat this option)"),
    ] = None,
    *,
    output: Annotated[
        Path,
        Parameter(
            name=("--output", "-o"),
            validator=validators.Path(file_okay=False),
            help="Directory that receives the face crops",
        ),
    ] = Path("faces"),
    recursive: Annotated[
        bool,
        Parameter(name=("--recursive", "-r"), help="Scan subdirectories recursively"),
    ] = False,
    storage: Annotated[
        StorageMode | None,
        Parameter(name=("--storage",), help="Sidecar backend: 'auto', 'companion' or 'stream'"),
    ] = None,
    preferences_file: Annotated[
        Path | None,
        Parameter(name=("--preferences",), help="JSON file with persisted preferences"),
    ] = None,
    skip_session: Annotated[
        bool,
        Parameter(name=("--skip-session",), help="Ignore PHOTO_INDEXER_* session overrides"),
    ] = False,
    console_log_level: Annotated[
        LogLevel,
        Parameter(name="--console-log-level", help="Log level for console (use 'OFF' to disable)"),
    ] = "INFO",
) -> None:
    """Crop the faces recorded in `faces` sidecars into JPEG files."""
    setup_logging(file_log_level="OFF", console_log_level=console_log_level)
    prefs = Preferences(load_persisted_preferences(preferences_file), skip_session=skip_session)
    roots = _input_roots(prefs, inputs)
    crop_all_faces(roots, _sidecar_store(prefs, storage), output, recursive=recursive)


if __name__ == "__main__":
    app()
