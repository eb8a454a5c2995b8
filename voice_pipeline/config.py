"""
Voice front-end configuration.

Loads plain configuration values from environment variables (optionally
seeded from .env_local / .env.local). No flag parsing happens here; the
entry point and tests construct VoiceConfig directly when they need to.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


GEMINI_VOICES = ("Puck", "Charon", "Kore", "Fenrir", "Zephyr")

DEFAULT_EXIT_PHRASES = ("tạm biệt", "goodbye", "kết thúc", "dừng lại", "thôi đi")


def _clean_env(key: str) -> Optional[str]:
    """
    Read an environment variable, stripping inline comments and whitespace.

    "600  # snappier" -> "600"; unset or empty -> None
    """
    value = os.environ.get(key)
    if not value:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = _clean_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_phrases_env(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Exit phrases are '|'-separated, mirroring the regex alternation they become."""
    value = os.environ.get(key)
    if not value:
        return default
    phrases = tuple(p.strip() for p in value.split("|") if p.strip())
    return phrases or default


def load_env_files(root: Optional[Path] = None) -> None:
    """Best-effort local dev convenience; never overrides the real environment."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


@dataclass
class VoiceConfig:
    """Voice front-end configuration."""

    # Speech output provider: "native" (host speech) | "gemini" (streaming synthesis)
    voice_provider: str = "native"

    # Gemini (responder + synthesis)
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_tts_model: str = "gemini-2.5-flash-preview-tts"
    gemini_voice: str = "Kore"

    # Endpointing
    capture_locale: str = "vi-VN"
    silence_timeout_ms: int = 600

    # Synthesis pipeline
    lookahead_depth: int = 2

    # Conversation loop
    relisten_delay_ms: int = 200
    # Consecutive empty sessions re-listened at the base delay before backing off
    empty_relisten_limit: int = 2
    exit_phrases: Tuple[str, ...] = field(default=DEFAULT_EXIT_PHRASES)

    # Responder context
    history_enabled: bool = False
    history_max_chars: int = 20000
    search_enabled: bool = False
    persona: str = "default"

    # User profile
    user_name: str = ""
    user_gender: str = ""
    user_personality: str = ""

    # Host speech voice parameters
    native_voice_uri: str = ""
    native_rate: float = 1.0
    native_pitch: float = 1.0

    # Host surface
    control_host: str = "127.0.0.1"
    control_port: int = 8000

    def __post_init__(self):
        self.voice_provider = (self.voice_provider or "native").lower()
        if self.voice_provider not in ("native", "gemini"):
            raise ValueError(f"Unknown voice provider: {self.voice_provider}")
        if self.gemini_voice not in GEMINI_VOICES:
            raise ValueError(f"Unknown Gemini voice: {self.gemini_voice}")
        if self.silence_timeout_ms <= 0:
            raise ValueError("silence_timeout_ms must be positive")
        if self.lookahead_depth < 1:
            raise ValueError("lookahead_depth must be at least 1")
        if self.history_max_chars <= 0:
            raise ValueError("history_max_chars must be positive")

    @property
    def streaming_synthesis_enabled(self) -> bool:
        """Gemini speech needs an API key; without one the host voice is used."""
        return self.voice_provider == "gemini" and bool(self.gemini_api_key)

    @classmethod
    def from_env(cls) -> "VoiceConfig":
        """Load configuration from environment variables."""
        return cls(
            voice_provider=os.environ.get("VOICE_PROVIDER", "native"),
            gemini_api_key=_clean_env("GEMINI_API_KEY") or _clean_env("API_KEY"),
            gemini_model=os.environ.get("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_tts_model=os.environ.get("GEMINI_TTS_MODEL", "gemini-2.5-flash-preview-tts"),
            gemini_voice=os.environ.get("GEMINI_VOICE", "Kore"),
            capture_locale=os.environ.get("CAPTURE_LOCALE", "vi-VN"),
            silence_timeout_ms=_parse_int_env("SILENCE_TIMEOUT_MS", default=600),
            lookahead_depth=_parse_int_env("LOOKAHEAD_DEPTH", default=2),
            relisten_delay_ms=_parse_int_env("RELISTEN_DELAY_MS", default=200),
            empty_relisten_limit=_parse_int_env("EMPTY_RELISTEN_LIMIT", default=2),
            exit_phrases=_parse_phrases_env("EXIT_PHRASES", DEFAULT_EXIT_PHRASES),
            history_enabled=_parse_bool_env("HISTORY_ENABLED", default=False),
            history_max_chars=_parse_int_env("HISTORY_MAX_CHARS", default=20000),
            search_enabled=_parse_bool_env("SEARCH_ENABLED", default=False),
            persona=os.environ.get("PERSONA", "default"),
            user_name=os.environ.get("USER_NAME", ""),
            user_gender=os.environ.get("USER_GENDER", ""),
            user_personality=os.environ.get("USER_PERSONALITY", ""),
            native_voice_uri=os.environ.get("NATIVE_VOICE_URI", ""),
            native_rate=_parse_float_env("NATIVE_RATE", default=1.0),
            native_pitch=_parse_float_env("NATIVE_PITCH", default=1.0),
            control_host=os.environ.get("VOICE_CONTROL_HOST", "127.0.0.1"),
            control_port=_parse_int_env("VOICE_CONTROL_PORT", default=8000),
        )


def get_config() -> VoiceConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = VoiceConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[VoiceConfig] = None
