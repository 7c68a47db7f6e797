"""
Configuration defaults and layered preference resolution.

Values are resolved in this order (first non-empty wins):

1. an explicit value passed by the caller (e.g. a CLI option),
2. the session layer (``PHOTO_INDEXER_<KEY>`` environment variables plus any
   in-process overrides set with ``Preferences.set_session``),
3. persisted preferences (a read-only JSON file, when provided),
4. the built-in default.

"""

import json
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from loguru import logger


SESSION_ENV_PREFIX = "PHOTO_INDEXER_"

# Service defaults
DEFAULT_OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")
DEFAULT_OLLAMA_API_KEY = os.getenv("OLLAMA_API_KEY")
DEFAULT_LMSTUDIO_BASE_URL = os.getenv("LM_STUDIO_BASE_URL", "http://localhost:1234/v1")
DEFAULT_LMSTUDIO_API_KEY = os.getenv("LM_STUDIO_API_KEY", os.getenv("OPENAI_API_KEY"))
DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "qwen/qwen3-vl-30b")
DEFAULT_DEEPSTACK_BASE_URL = os.getenv("DEEPSTACK_BASE_URL", "http://127.0.0.1:5000/v1/vision/")
DEFAULT_DEEPSTACK_API_KEY = os.getenv("DEEPSTACK_API_KEY")
DEFAULT_DEEPSTACK_TIMEOUT = float(os.getenv("DEEPSTACK_TIMEOUT", "60"))

# Generation defaults
DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))
DEFAULT_DIMENSIONS = int(os.getenv("JPEG_DIMENSIONS", "1280"))
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.2"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "800"))
DEFAULT_RETRIES = int(os.getenv("RETRIES", "5"))
DEFAULT_CONFIDENCE_THRESHOLD = float(os.getenv("CONFIDENCE_THRESHOLD", "0.7"))
DEFAULT_MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", str(20 * 1024 * 1024)))
DEFAULT_LANGUAGE = "English"

BUILTIN_DEFAULTS: dict[str, Any] = {
    "language": DEFAULT_LANGUAGE,
    "known_faces_root": str(Path("~/Pictures/Faces").expanduser()),
    "model": DEFAULT_MODEL_NAME,
    "provider": "lmstudio",
    "lmstudio_url": DEFAULT_LMSTUDIO_BASE_URL,
    "deepstack_url": DEFAULT_DEEPSTACK_BASE_URL,
    "confidence_threshold": DEFAULT_CONFIDENCE_THRESHOLD,
    "storage": "auto",
    "image_directories": [],
}

PROVIDERS = ("lmstudio", "ollama")
STORAGE_MODES = ("auto", "companion", "stream")

# Languages offered for generated descriptions and keywords.
SUPPORTED_LANGUAGES = (
    "Afrikaans", "Akan", "Albanian", "Amharic", "Arabic", "Armenian", "Azerbaijani", "Basque", "Belarusian",
    "Bemba", "Bengali", "Bihari", "Bosnian", "Breton", "Bulgarian", "Cambodian", "Catalan", "Cherokee",
    "Chichewa", "Chinese (Simplified)", "Chinese (Traditional)", "Corsican", "Croatian", "Czech", "Danish",
    "Dutch", "English", "Esperanto", "Estonian", "Ewe", "Faroese", "Filipino", "Finnish", "French", "Frisian",
    "Ga", "Galician", "Georgian", "German", "Greek", "Guarani", "Gujarati", "Haitian Creole", "Hausa",
    "Hawaiian", "Hebrew", "Hindi", "Hungarian", "Icelandic", "Igbo", "Indonesian", "Interlingua", "Irish",
    "Italian", "Japanese", "Javanese", "Kannada", "Kazakh", "Kinyarwanda", "Kirundi", "Kongo", "Korean",
    "Krio (Sierra Leone)", "Kurdish", "Kurdish (Soranî)", "Kyrgyz", "Laothian", "Latin", "Latvian", "Lingala",
    "Lithuanian", "Lozi", "Luganda", "Luo", "Macedonian", "Malagasy", "Malay", "Malayalam", "Maltese", "Maori",
    "Marathi", "Mauritian Creole", "Moldavian", "Mongolian", "Montenegrin", "Nepali", "Nigerian Pidgin",
    "Northern Sotho", "Norwegian", "Norwegian (Nynorsk)", "Occitan", "Oriya", "Oromo", "Pashto", "Persian",
    "Polish", "Portuguese (Brazil)", "Portuguese (Portugal)", "Punjabi", "Quechua", "Romanian", "Romansh",
    "Runyakitara", "Russian", "Scots Gaelic", "Serbian", "Serbo-Croatian", "Sesotho", "Setswana",
    "Seychellois Creole", "Shona", "Sindhi", "Sinhalese", "Slovak", "Slovenian", "Somali", "Spanish",
    "Spanish (Latin American)", "Sundanese", "Swahili", "Swedish", "Tajik", "Tamil", "Tatar", "Telugu", "Thai",
    "Tigrinya", "Tonga", "Tshiluba", "Tumbuka", "Turkish", "Turkmen", "Twi", "Uighur", "Ukrainian", "Urdu",
    "Uzbek", "Vietnamese", "Welsh", "Wolof", "Xhosa", "Yiddish", "Yoruba", "Zulu",
)


class PreferenceError(ValueError):
    """A resolved preference value that cannot be used."""

    def __init__(self, key: str, value: Any, expected: str) -> None:  # noqa: ANN401
        self.key = key
        self.value = value
        self.expected = expected
        super().__init__(f"Invalid value {value!r} for preference {key!r}; expected {expected}")


def _is_set(value: Any) -> bool:  # noqa: ANN401
    if value is None:
        return False
    if isinstance(value, list | tuple):
        return bool(value)
    return not (isinstance(value, str) and not value.strip())


def resolve(
    key: str,
    session_override: Any = None,  # noqa: ANN401
    persisted: Any = None,  # noqa: ANN401
    default: Any = None,  # noqa: ANN401
) -> Any:  # noqa: ANN401
    """
    Return the first configured value among session, persisted and default.

    Blank strings count as unset, so an empty environment variable never
    masks a persisted preference.

    Examples:
        >>> resolve("language", None, "Dutch", "English")
        'Dutch'
        >>> resolve("language", "French", "Dutch", "English")
        'French'
        >>> resolve("language", "  ", None, "English")
        'English'

    """
    for layer, value in (("session", session_override), ("persisted", persisted)):
        if _is_set(value):
            logger.trace("preference_resolved", key=key, layer=layer)
            return value
    return default


def load_persisted_preferences(path: Path | None) -> dict[str, Any]:
    """Read a JSON preferences file; a missing or malformed file yields no preferences."""
    if path is None:
        return {}
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug("preferences_file_missing", file=str(path))
        return {}
    except OSError as exc:
        logger.warning("preferences_file_unreadable", file=str(path), error=str(exc))
        return {}

    try:
        data = json.loads(content)
    except ValueError as exc:
        logger.warning("preferences_file_invalid_json", file=str(path), error=str(exc))
        return {}

    if not isinstance(data, dict):
        logger.warning("preferences_file_not_an_object", file=str(path))
        return {}
    return data


class Preferences:
    """Layered preferences: session overrides, then persisted values, then defaults."""

    def __init__(
        self,
        persisted: Mapping[str, Any] | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        defaults: Mapping[str, Any] | None = None,
        skip_session: bool = False,
    ) -> None:
        self._persisted = dict(persisted or {})
        self._environ = os.environ if environ is None else environ
        self._defaults = dict(BUILTIN_DEFAULTS if defaults is None else defaults)
        self._session: dict[str, Any] = {}
        self.skip_session = skip_session

    def session_value(self, key: str) -> Any:  # noqa: ANN401
        if key in self._session:
            return self._session[key]
        return self._environ.get(SESSION_ENV_PREFIX + key.upper())

    def set_session(self, key: str, value: Any) -> None:  # noqa: ANN401
        self._session[key] = value

    def clear_session(self, key: str | None = None) -> None:
        if key is None:
            self._session.clear()
        else:
            self._session.pop(key, None)

    def get(self, key: str, explicit: Any = None) -> Any:  # noqa: ANN401
        """Resolve ``key``; an explicit value always wins."""
        if _is_set(explicit):
            return explicit
        session = None if self.skip_session else self.session_value(key)
        return resolve(key, session, self._persisted.get(key), self._defaults.get(key))

    def get_float(
        self,
        key: str,
        explicit: float | None = None,
        *,
        minimum: float | None = None,
        maximum: float | None = None,
    ) -> float:
        value = self.get(key, explicit)
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise PreferenceError(key, value, "a number") from exc
        if (minimum is not None and number < minimum) or (maximum is not None and number > maximum):
            raise PreferenceError(key, value, f"a number between {minimum} and {maximum}")
        return number

    def get_choice(self, key: str, choices: Sequence[str], explicit: str | None = None) -> str:
        """
        Resolve ``key`` and match it case-insensitively against ``choices``.

        Examples:
            >>> Preferences(environ={}).get_choice("language", SUPPORTED_LANGUAGES, "dutch")
            'Dutch'

        """
        value = self.get(key, explicit)
        for choice in choices:
            if str(value).strip().casefold() == choice.casefold():
                return choice
        raise PreferenceError(key, value, "one of " + ", ".join(choices))

    def get_path(self, key: str, explicit: Path | None = None) -> Path:
        value = self.get(key, explicit)
        if not isinstance(value, str | os.PathLike):
            raise PreferenceError(key, value, "a path")
        return Path(value).expanduser()

    def get_paths(self, key: str, explicit: Sequence[Path] | None = None) -> list[Path]:
        """
        Resolve a list of paths.

        Session values are strings split on ``os.pathsep``; persisted values
        may be a JSON list or such a string.
        """
        value = self.get(key, list(explicit or []))
        if isinstance(value, str):
            value = value.split(os.pathsep)
        if not isinstance(value, list | tuple):
            raise PreferenceError(key, value, "a list of paths")
        paths: list[Path] = []
        for item in value:
            if not isinstance(item, str | os.PathLike):
                raise PreferenceError(key, value, "a list of paths")
            if str(item).strip():
                paths.append(Path(str(item).strip()).expanduser())
        return paths
