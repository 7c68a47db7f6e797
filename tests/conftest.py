"""Shared fixtures: synthetic images, scripted detectors, a LiteLLM-backed agent and captured log events."""

import json
import os
from collections.abc import Callable, Iterator
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import litellm
import pytest
from loguru import logger
from PIL import Image
from pydantic import BaseModel
from pydantic_ai import ModelSettings

from photo_indexer.records import SidecarRecord
from photo_indexer.store import CompanionFileStore


class ScriptedDetector:
    """Detector double that replays canned results; the last one repeats forever."""

    def __init__(self, kind: str, *results: Any) -> None:  # noqa: ANN401
        self.kind = kind
        self._results = list(results)
        self.calls: list[Path] = []

    def detect(self, image_path: Path) -> SidecarRecord:
        self.calls.append(image_path)
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return result(image_path)
        return result


DESCRIPTION_PAYLOAD = json.dumps(
    {
        "short_description": "Two marmosets share a quiet branch",
        "long_description": "Two marmosets rest together on a mossy branch in the forest canopy.",
        "has_nudity": False,
        "keywords": ["Marmoset<Primate<Animal", "Forest", "forest"],
        "has_explicit_content": False,
        "overall_mood_of_image": "calm",
        "picture_type": "wildlife",
        "style_type": "photograph",
    },
)


class LiteLLMAgentStub:
    """Minimal agent stub that delegates to LiteLLM's mock completion helper."""

    def __init__(self, payload: str = DESCRIPTION_PAYLOAD, *, model: str = "gpt-4o-mini") -> None:
        """Store the canned payload and model name used for mock completions."""
        self._payload = payload
        self._model = model
        self.calls: list[dict[str, Any]] = []

    def run_sync(
        self,
        items: list[object],
        model_settings: ModelSettings,
        output_type: type[BaseModel],
    ) -> SimpleNamespace:
        """Mimic Agent.run_sync by validating LiteLLM mock output."""
        self.calls.append(
            {
                "items": items,
                "temperature": model_settings.get("temperature"),
                "max_tokens": model_settings.get("max_tokens"),
            },
        )

        response = litellm.mock_completion(
            model=self._model,
            messages=[{"role": "user", "content": "stub"}],
            mock_response=self._payload,
        )
        content = response.choices[0].message["content"]  # type: ignore[union-attr]
        metadata = output_type.model_validate_json(content)
        return SimpleNamespace(output=metadata)


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[..., Path]:
    """Create a small solid-color image; the format follows the file extension."""

    def _make(name: str = "photo.jpg", size: tuple[int, int] = (64, 48), folder: Path | None = None) -> Path:
        target = (folder or tmp_path) / name
        target.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", size, (120, 80, 40)).save(target)
        return target

    return _make


@pytest.fixture
def store() -> CompanionFileStore:
    return CompanionFileStore()


@pytest.fixture
def detector_factory() -> type[ScriptedDetector]:
    return ScriptedDetector


@pytest.fixture
def log_events() -> Iterator[list[str]]:
    """Collect the event names logged while the test runs."""
    events: list[str] = []
    handler_id = logger.add(lambda message: events.append(message.record["message"]), level="DEBUG")
    yield events
    logger.remove(handler_id)


@pytest.fixture
def litellm_agent() -> type[LiteLLMAgentStub]:
    return LiteLLMAgentStub


@pytest.fixture
def clean_session(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Drop PHOTO_INDEXER_* session variables inherited from the environment."""
    for name in list(os.environ):
        if name.startswith("PHOTO_INDEXER_"):
            monkeypatch.delenv(name)
    return monkeypatch
