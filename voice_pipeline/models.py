"""
Data model shared by the voice pipeline components.

Capture events and utterances are scoped to one listening session; segments,
audio clips and pipeline runs to one spoken reply. SessionState lives as long
as the controller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


# --- Capture events ---


@dataclass(frozen=True)
class Partial:
    """Interim transcription; may still change."""

    text: str


@dataclass(frozen=True)
class Final:
    """Transcription committed by the capture engine."""

    text: str


@dataclass(frozen=True)
class CaptureFailed:
    """Capture engine error, e.g. kind="no-speech" or "network"."""

    kind: str


@dataclass(frozen=True)
class SessionStarted:
    pass


@dataclass(frozen=True)
class SessionEnded:
    pass


CaptureEvent = Union[Partial, Final, CaptureFailed, SessionStarted, SessionEnded]


# --- Listening results ---


class FinalizedBy(str, Enum):
    EXPLICIT_FINAL = "explicit_final"
    SILENCE_TIMEOUT = "silence_timeout"


@dataclass(frozen=True)
class Utterance:
    text: str
    finalized_by: FinalizedBy


class ListenOutcome(str, Enum):
    """How a listening session ended; exactly one per session."""

    FINALIZED = "finalized"
    ENDED_EMPTY = "ended_empty"
    NO_SPEECH = "no_speech"
    ERROR = "error"
    STOPPED = "stopped"


# --- Speech output ---


@dataclass(frozen=True)
class Segment:
    index: int
    text: str


@dataclass
class AudioClip:
    """
    Decoded PCM16 mono audio for one segment.

    Owned by the pipeline until played or discarded; `release` drops the
    buffer once either has happened.
    """

    segment_index: int
    pcm: bytes
    sample_rate: int = 24000

    @property
    def duration_ms(self) -> int:
        if not self.sample_rate:
            return 0
        return int(len(self.pcm) / 2 / self.sample_rate * 1000)

    @property
    def released(self) -> bool:
        return not self.pcm

    def release(self) -> None:
        self.pcm = b""


@dataclass(frozen=True)
class VoiceParams:
    """Host speech parameters; rate and pitch are clamped to 0.5-2.0."""

    voice_uri: str = ""
    rate: float = 1.0
    pitch: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "rate", _clamp(self.rate or 1.0, 0.5, 2.0))
        object.__setattr__(self, "pitch", _clamp(self.pitch or 1.0, 0.5, 2.0))


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, float(value)))


# --- Conversation ---


class SessionState(str, Enum):
    """Controller state; a single value so the states are mutually exclusive."""

    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


@dataclass(frozen=True)
class Turn:
    """One history record. role is "user" or "model"."""

    role: str
    text: str

    def to_content(self) -> Dict[str, Any]:
        return {"role": self.role, "parts": [{"text": self.text}]}


@dataclass(frozen=True)
class UserProfile:
    name: str = ""
    gender: str = ""  # "male" | "female" | "other" | ""
    custom_personality: str = ""

    @property
    def address_term(self) -> str:
        """Vietnamese form of address used when talking to the user."""
        if self.gender == "male":
            return "anh"
        if self.gender == "female":
            return "chị"
        return "bạn"


class CommandType(str, Enum):
    CHAT = "chat"
    OPEN_APP = "open_app"
    TOGGLE_WIFI = "toggle_wifi"
    SET_TIMER = "set_timer"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "CommandType":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class CommandParams:
    app_name: Optional[str] = None
    wifi_status: Optional[str] = None  # "on" | "off"
    duration_seconds: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CommandParams":
        if not isinstance(data, dict):
            return cls()
        duration = data.get("durationSeconds")
        try:
            duration = int(duration) if duration is not None else None
        except (TypeError, ValueError):
            duration = None
        wifi = data.get("wifiStatus")
        return cls(
            app_name=data.get("appName") if isinstance(data.get("appName"), str) else None,
            wifi_status=wifi if wifi in ("on", "off") else None,
            duration_seconds=duration,
        )


@dataclass(frozen=True)
class ResponderReply:
    text: str
    command: CommandType = CommandType.CHAT
    params: CommandParams = field(default_factory=CommandParams)
