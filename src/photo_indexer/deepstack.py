"""
DeepStack REST client and the face, object and scene detectors built on it.

DeepStack exposes multipart endpoints under ``/v1/vision/``; every response
carries a ``success`` flag and either ``predictions`` or a single
``label``/``confidence`` pair.
"""

import urllib.parse
from http import HTTPStatus
from pathlib import Path
from typing import Any, Self

import httpx
from loguru import logger
from pydantic import ValidationError

from photo_indexer.config import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    DEFAULT_DEEPSTACK_API_KEY,
    DEFAULT_DEEPSTACK_BASE_URL,
    DEFAULT_DEEPSTACK_TIMEOUT,
)
from photo_indexer.detection import DetectorError
from photo_indexer.kinds import DEEPSTACK_EXTENSIONS
from photo_indexer.records import Detection, FacesRecord, ObjectsRecord, ScenesRecord
from photo_indexer.walker import validate_image_file


class DeepStackClient:
    """Thin synchronous wrapper over the DeepStack vision endpoints."""

    def __init__(
        self,
        base_url: str = DEFAULT_DEEPSTACK_BASE_URL,
        *,
        api_key: str | None = DEFAULT_DEEPSTACK_API_KEY,
        timeout: float = DEFAULT_DEEPSTACK_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        parsed = urllib.parse.urlparse(base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            msg = f"Invalid DeepStack URL: {base_url!r}"
            raise ValueError(msg)
        self.base_url = base_url.rstrip("/") + "/"
        self.api_key = api_key
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _form(self, **fields: Any) -> dict[str, str]:  # noqa: ANN401
        data = {key: str(value) for key, value in fields.items() if value is not None}
        if self.api_key:
            data["api_key"] = self.api_key
        return data

    def post(
        self,
        endpoint: str,
        files: list[tuple[str, tuple[str, bytes, str]]],
        **fields: Any,  # noqa: ANN401
    ) -> dict[str, Any]:
        """POST images to ``endpoint`` and return the decoded body, raising on failure."""
        try:
            response = self._client.post(endpoint, files=files, data=self._form(**fields))
        except httpx.HTTPError as exc:
            msg = f"DeepStack request to {endpoint} failed: {exc}"
            raise DetectorError(msg) from exc

        if response.status_code != HTTPStatus.OK:
            msg = f"DeepStack {endpoint} returned HTTP {response.status_code}: {response.text[:200]}"
            raise DetectorError(msg)

        try:
            body = response.json()
        except ValueError as exc:
            msg = f"DeepStack {endpoint} returned invalid JSON"
            raise DetectorError(msg) from exc

        if not isinstance(body, dict) or body.get("success") is not True:
            error = body.get("error") if isinstance(body, dict) else None
            msg = f"DeepStack {endpoint} reported failure: {error or 'unknown error'}"
            raise DetectorError(msg)

        logger.debug("deepstack_response", endpoint=endpoint, keys=sorted(body))
        return body

    def post_image(self, endpoint: str, image_path: Path, **fields: Any) -> dict[str, Any]:  # noqa: ANN401
        try:
            validate_image_file(image_path, DEEPSTACK_EXTENSIONS)
            image = ("image", (image_path.name, image_path.read_bytes(), "application/octet-stream"))
        except (OSError, ValueError) as exc:
            raise DetectorError(str(exc)) from exc
        return self.post(endpoint, [image], **fields)

    def register_face(self, userid: str, image_paths: list[Path]) -> None:
        files = [
            (f"image{idx}", (path.name, path.read_bytes(), "application/octet-stream"))
            for idx, path in enumerate(image_paths, start=1)
        ]
        self.post("face/register", files, userid=userid)
        logger.info("face_registered", userid=userid, images=len(image_paths))

    def list_faces(self) -> list[str]:
        body = self.post("face/list", [])
        return [str(face) for face in body.get("faces", [])]


def _parse_predictions(body: dict[str, Any]) -> list[Detection]:
    try:
        return [Detection.model_validate(item) for item in body.get("predictions") or []]
    except ValidationError as exc:
        msg = f"Unexpected prediction format: {exc.error_count()} validation errors"
        raise DetectorError(msg) from exc


class FaceDetector:
    kind = "faces"

    def __init__(self, client: DeepStackClient, *, min_confidence: float = DEFAULT_CONFIDENCE_THRESHOLD) -> None:
        self.client = client
        self.min_confidence = min_confidence

    def detect(self, image_path: Path) -> FacesRecord:
        body = self.client.post_image("face/recognize", image_path, min_confidence=self.min_confidence)
        return FacesRecord(success=True, predictions=_parse_predictions(body))


class ObjectDetector:
    kind = "objects"

    def __init__(self, client: DeepStackClient, *, min_confidence: float = DEFAULT_CONFIDENCE_THRESHOLD) -> None:
        self.client = client
        self.min_confidence = min_confidence

    def detect(self, image_path: Path) -> ObjectsRecord:
        body = self.client.post_image("detection", image_path, min_confidence=self.min_confidence)
        return ObjectsRecord(success=True, predictions=_parse_predictions(body))


class SceneDetector:
    kind = "scenes"

    def __init__(self, client: DeepStackClient, *, min_confidence: float = DEFAULT_CONFIDENCE_THRESHOLD) -> None:
        self.client = client
        self.min_confidence = min_confidence

    def detect(self, image_path: Path) -> ScenesRecord:
        body = self.client.post_image("scene", image_path)
        label = body.get("label")
        if not isinstance(label, str) or not label:
            msg = "DeepStack scene response has no label"
            raise DetectorError(msg)
        try:
            confidence = float(body.get("confidence", 0.0))
        except (TypeError, ValueError) as exc:
            msg = "DeepStack scene response has a non-numeric confidence"
            raise DetectorError(msg) from exc
        return ScenesRecord.from_prediction(label, confidence, self.min_confidence)
