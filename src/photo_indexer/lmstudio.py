"""
Keyword and description detector backed by a vision-language model.

Talks to LM Studio (or Ollama) through their OpenAI-compatible endpoints
using a pydantic-ai Agent with a structured output schema.
"""

import difflib
import time
import urllib.parse
from http import HTTPStatus
from io import BytesIO
from pathlib import Path
from typing import Literal

import httpx
from loguru import logger
from PIL import Image
from pydantic import BaseModel, Field
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.ollama import OllamaProvider
from pydantic_ai.providers.openai import OpenAIProvider

from photo_indexer.config import (
    DEFAULT_DIMENSIONS,
    DEFAULT_JPEG_QUALITY,
    DEFAULT_LANGUAGE,
    DEFAULT_LMSTUDIO_API_KEY,
    DEFAULT_LMSTUDIO_BASE_URL,
    DEFAULT_MAX_TOKENS,
    DEFAULT_OLLAMA_API_KEY,
    DEFAULT_OLLAMA_BASE_URL,
    DEFAULT_TEMPERATURE,
)
from photo_indexer.records import MAX_SHORT_DESCRIPTION, DescriptionRecord


Provider = Literal["ollama", "lmstudio"]
PROVIDER_URLS = {
    "ollama": DEFAULT_OLLAMA_BASE_URL,
    "lmstudio": DEFAULT_LMSTUDIO_BASE_URL,
}

DEFAULT_SYSTEM_PROMPT = (
    "**Persona**: You are a specialist AI photo archivist. "
    "Your expertise is in analyzing visual information and creating rich, structured metadata.\n"
    "\n"
    "**Mission**: Analyze the provided image and fill in every field of the requested schema.\n"
    "\n"
    "**Process**:\n"
    f"1.  **short_description**: One sentence of at most {MAX_SHORT_DESCRIPTION} characters.\n"
    "2.  **long_description**: Two to four sentences covering subject, setting and composition.\n"
    "3.  **keywords**: 10-15 single or two-word keywords for subjects, objects, environment, "
    "actions, mood and style.\n"
    "4.  **has_nudity** / **has_explicit_content**: true only when clearly visible.\n"
    "5.  **overall_mood_of_image**, **picture_type**, **style_type**: one or two words each "
    "(e.g. 'serene', 'landscape', 'photograph').\n"
)

USER_PROMPT_TEMPLATE = (
    "Execute your mission: analyze this image and generate the structured metadata. "
    "Write all text values in {language}."
)


class ImageDescription(BaseModel):
    """Structured output requested from the model."""

    short_description: str = Field(max_length=MAX_SHORT_DESCRIPTION * 2)
    long_description: str
    has_nudity: bool = False
    keywords: list[str] = Field(default_factory=list)
    has_explicit_content: bool = False
    overall_mood_of_image: str = ""
    picture_type: str = ""
    style_type: str = ""


def validate_lmstudio_model(api_base_url: str, model_name: str, api_key: str | None) -> None:
    """Fail fast when LM Studio cannot resolve the requested model name."""
    url = urllib.parse.urljoin(api_base_url.rstrip("/") + "/", "models")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        logger.error("lmstudio_model_listing_invalid_scheme", url=url, scheme=parsed.scheme)
        raise SystemExit(1)
    if not parsed.netloc:
        logger.error("lmstudio_model_listing_missing_host", url=url)
        raise SystemExit(1)
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=5.0)
    except httpx.HTTPError as exc:
        logger.error("lmstudio_model_listing_error", error=str(exc), url=url)
        raise SystemExit(1) from exc

    if response.status_code != HTTPStatus.OK:
        logger.error(
            "lmstudio_model_listing_failed",
            status=response.status_code,
            url=url,
            body=response.text,
        )
        raise SystemExit(1)

    try:
        listing = response.json()
    except ValueError as exc:
        logger.error("lmstudio_model_listing_invalid_json", error=str(exc), url=url)
        raise SystemExit(1) from exc

    models = [
        str(entry["id"])
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]

    if model_name not in models:
        logger.error(
            "lmstudio_model_not_available",
            requested=model_name,
            suggestions=difflib.get_close_matches(model_name, models, n=3, cutoff=0.4),
            available=len(models),
        )
        raise SystemExit(1)

    logger.debug("lmstudio_model_validated", model=model_name)


def prepare_image_for_agent(
    image_path: Path,
    jpg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> BinaryContent:
    """
    Downscale and re-encode an image as JPEG bytes for the model, entirely in memory.

    Alpha channels are composited onto white; the aspect ratio is preserved.
    """
    with Image.open(image_path) as opened:
        if opened.mode in ("RGBA", "LA") or (opened.mode == "P" and "transparency" in opened.info):
            alpha = opened.convert("RGBA")
            bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
            img = Image.alpha_composite(bg, alpha).convert("RGB")
        else:
            img = opened.convert("RGB")

    img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=jpg_quality)
    jpeg_bytes = buf.getvalue()
    logger.debug(
        "image_prepared_for_agent",
        width=img.width,
        height=img.height,
        size_kb=len(jpeg_bytes) // 1024,
    )
    return BinaryContent(data=jpeg_bytes, media_type="image/jpeg")


def create_agent(
    provider_name: Provider,
    model_name: str,
    *,
    api_base_url: str | None,
    api_key: str | None,
    retries: int,
    validate_model: bool = True,
) -> Agent:
    resolved_url = api_base_url or PROVIDER_URLS.get(provider_name, DEFAULT_LMSTUDIO_BASE_URL)
    logger.info(
        "provider_config_resolved",
        provider=provider_name,
        url=resolved_url,
        model=model_name,
    )

    if provider_name == "ollama":
        provider = OllamaProvider(base_url=resolved_url, api_key=api_key or DEFAULT_OLLAMA_API_KEY)
    else:
        resolved_api_key = api_key or DEFAULT_LMSTUDIO_API_KEY
        if validate_model:
            validate_lmstudio_model(resolved_url, model_name, resolved_api_key)
        provider = OpenAIProvider(base_url=resolved_url, api_key=resolved_api_key)

    chat_model = OpenAIChatModel(model_name=model_name, provider=provider)
    return Agent(
        chat_model,
        output_type=ImageDescription,  # type: ignore[arg-type]
        retries=retries,
        system_prompt=DEFAULT_SYSTEM_PROMPT,
    )


class DescriptionDetector:
    """Generates keywords and descriptions for an image with a vision-language model."""

    kind = "description"

    def __init__(
        self,
        agent: Agent,
        *,
        language: str = DEFAULT_LANGUAGE,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        jpeg_dimensions: int = DEFAULT_DIMENSIONS,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    ) -> None:
        self.agent = agent
        self.language = language
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.jpeg_dimensions = jpeg_dimensions
        self.jpeg_quality = jpeg_quality

    @property
    def user_prompt(self) -> str:
        return USER_PROMPT_TEMPLATE.format(language=self.language)

    def describe(self, image_bytes: BinaryContent) -> ImageDescription:
        _t0 = time.perf_counter()
        result: AgentRunResult[ImageDescription] = self.agent.run_sync(
            [
                self.user_prompt,
                image_bytes,
            ],
            model_settings=ModelSettings(
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            ),
            output_type=ImageDescription,
        )
        logger.info(
            "ai_inference_completed",
            seconds=round(time.perf_counter() - _t0, 3),
            keywords=len(result.output.keywords),
        )
        return result.output

    def detect(self, image_path: Path) -> DescriptionRecord:
        image_bytes = prepare_image_for_agent(
            image_path,
            jpg_quality=self.jpeg_quality,
            max_size=self.jpeg_dimensions,
        )
        description = self.describe(image_bytes)
        return DescriptionRecord(success=True, **description.model_dump())
