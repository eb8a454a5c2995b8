"""
Host capabilities consumed by the voice pipeline.

The pipeline never touches microphones, speakers or model SDKs directly; it
talks to these interfaces. voice_control.bridge implements the host-side ones
over a WebSocket, voice_pipeline.gemini the model-side ones.
"""

from __future__ import annotations

from typing import AsyncIterator, Optional, Protocol, Sequence, runtime_checkable

from .models import AudioClip, CaptureEvent, ResponderReply, Turn, UserProfile, VoiceParams


@runtime_checkable
class CaptureCapability(Protocol):
    """Speech capture with continuous partial results."""

    @property
    def available(self) -> bool: ...

    def start(self, locale: str) -> AsyncIterator[CaptureEvent]:
        """Open a capture session and stream its events until it ends."""
        ...

    def stop(self) -> None: ...


@runtime_checkable
class SpeechOutput(Protocol):
    """Host speech engine, used when no streaming synthesis is configured."""

    async def speak(self, text: str, params: VoiceParams) -> None:
        """Return once speech ended; raise if the engine reported an error."""
        ...

    def cancel(self) -> None: ...


@runtime_checkable
class SpeechSynthesizer(Protocol):
    """Text to PCM audio. Must tolerate concurrent calls (look-ahead prefetch)."""

    async def synthesize(self, text: str, voice: str) -> Optional[bytes]: ...


@runtime_checkable
class AudioOutput(Protocol):
    """The single audio output device."""

    async def play(self, clip: AudioClip) -> None:
        """Return once the clip finished playing or `stop` was called."""
        ...

    def stop(self) -> None:
        """Silence whatever is sounding now."""
        ...

    def play_cue(self, pcm: bytes, sample_rate: int) -> None:
        """Fire-and-forget short tone."""
        ...


@runtime_checkable
class Responder(Protocol):
    async def respond(
        self,
        query: str,
        history: Sequence[Turn],
        profile: UserProfile,
        search_enabled: bool,
    ) -> ResponderReply: ...
