"""
Host bridge: the host's microphone, speech engine and speaker over one WebSocket.

The host (a browser page or a device shell) connects to /voice/bridge and
exchanges JSON messages:

host -> server
    {"type": "capture", "event": "started|partial|final|error|ended", "text"?, "kind"?}
    {"type": "speech.ended" | "speech.error", "id", "kind"?}
    {"type": "audio.ended", "id"}

server -> host
    capture.start {locale}, capture.stop
    speech.speak {id, text, voice_uri, rate, pitch}, speech.cancel
    audio.play {id, segment_index, sample_rate, pcm}, audio.stop
    audio.cue {sample_rate, pcm}
    session.state_changed / command.* events, forwarded as-is

PCM payloads are base64 little-endian PCM16 mono. Outgoing messages go
through an outbox queue so the capability methods that must not block
(stop, cancel, play_cue) stay synchronous.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
from typing import Any, AsyncIterator, Dict, Optional

from pydantic import BaseModel, ValidationError

from logging_setup import get_logger, Component
from observability.events import subscribe
from voice_pipeline.models import (
    AudioClip,
    CaptureEvent,
    CaptureFailed,
    Final,
    Partial,
    SessionEnded,
    SessionStarted,
    VoiceParams,
)

logger = get_logger(Component.HOST_BRIDGE)

FORWARDED_EVENT_PREFIXES = ("session.", "command.")


class HostMessage(BaseModel):
    """Inbound message from the host."""
    type: str
    event: Optional[str] = None
    text: Optional[str] = None
    kind: Optional[str] = None
    id: Optional[str] = None


class HostSpeechError(RuntimeError):
    """The host speech engine reported an error for an utterance."""


def capture_event_from_message(message: HostMessage) -> Optional[CaptureEvent]:
    event = message.event
    if event == "started":
        return SessionStarted()
    if event == "partial":
        return Partial(text=message.text or "")
    if event == "final":
        return Final(text=message.text or "")
    if event == "error":
        return CaptureFailed(kind=message.kind or "unknown")
    if event == "ended":
        return SessionEnded()
    return None


class HostBridge:
    """
    Capture, local speech and audio output capabilities backed by the host.

    At most one host is attached at a time; a new connection replaces the old.
    """

    def __init__(self):
        self._outbox: Optional[asyncio.Queue] = None
        self._capture_queue: Optional[asyncio.Queue] = None
        self._speech: Dict[str, asyncio.Future] = {}
        self._audio: Dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._unsubscribe = None

    # --- Connection lifecycle ---

    @property
    def connected(self) -> bool:
        return self._outbox is not None

    def attach(self) -> asyncio.Queue:
        """Register a host connection; returns the queue its writer drains."""
        if self.connected:
            logger.info("Host replaced by a new connection")
            self.detach()
        self._outbox = asyncio.Queue()
        self._unsubscribe = subscribe(self._forward_event)
        logger.info("Host attached")
        return self._outbox

    def is_current(self, outbox: asyncio.Queue) -> bool:
        return self._outbox is outbox

    def detach(self) -> None:
        """Drop the host; everything waiting on it is released."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._capture_queue is not None:
            self._capture_queue.put_nowait(CaptureFailed(kind="host-disconnected"))
            self._capture_queue.put_nowait(None)
            self._capture_queue = None
        self._release_all(self._speech)
        self._release_all(self._audio)
        self._outbox = None
        logger.info("Host detached")

    def handle_message(self, data: Any) -> None:
        """Dispatch one decoded JSON message from the host."""
        try:
            message = HostMessage.model_validate(data)
        except ValidationError as e:
            logger.warning("Malformed host message", error_count=e.error_count())
            return

        if message.type == "capture":
            event = capture_event_from_message(message)
            if event is None:
                logger.warning("Unknown capture event", capture_event=message.event)
            elif self._capture_queue is None:
                logger.debug("Capture event without an open session", capture_event=message.event)
            else:
                self._capture_queue.put_nowait(event)
        elif message.type == "speech.ended":
            self._resolve(self._speech, message.id, None)
        elif message.type == "speech.error":
            self._resolve(self._speech, message.id, HostSpeechError(message.kind or "speech-error"))
        elif message.type == "audio.ended":
            self._resolve(self._audio, message.id, None)
        else:
            logger.warning("Unknown host message type", message_type=message.type)

    # --- CaptureCapability ---

    @property
    def available(self) -> bool:
        return self.connected

    def start(self, locale: str) -> AsyncIterator[CaptureEvent]:
        if not self.connected:
            raise ConnectionError("no host attached")
        if self._capture_queue is not None:
            self._capture_queue.put_nowait(None)
        queue: asyncio.Queue = asyncio.Queue()
        self._capture_queue = queue
        self._send({"type": "capture.start", "locale": locale})
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue) -> AsyncIterator[CaptureEvent]:
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    def stop(self) -> None:
        queue, self._capture_queue = self._capture_queue, None
        if queue is None:
            return
        queue.put_nowait(None)
        self._send({"type": "capture.stop"})

    # --- SpeechOutput ---

    async def speak(self, text: str, params: VoiceParams) -> None:
        speech_id = self._new_id("speech")
        future = asyncio.get_running_loop().create_future()
        self._speech[speech_id] = future
        message = {
            "type": "speech.speak",
            "id": speech_id,
            "text": text,
            "voice_uri": params.voice_uri,
            "rate": params.rate,
            "pitch": params.pitch,
        }
        try:
            # Nothing would ever resolve the future without a host
            if not self._send(message):
                raise ConnectionError("no host attached")
            await future
        finally:
            self._speech.pop(speech_id, None)

    def cancel(self) -> None:
        self._send({"type": "speech.cancel"})
        self._release_all(self._speech)

    # --- AudioOutput ---

    async def play(self, clip: AudioClip) -> None:
        audio_id = self._new_id("audio")
        future = asyncio.get_running_loop().create_future()
        self._audio[audio_id] = future
        message = {
            "type": "audio.play",
            "id": audio_id,
            "segment_index": clip.segment_index,
            "sample_rate": clip.sample_rate,
            "pcm": base64.b64encode(clip.pcm).decode("ascii"),
        }
        try:
            if not self._send(message):
                raise ConnectionError("no host attached")
            await future
        finally:
            self._audio.pop(audio_id, None)

    def play_cue(self, pcm: bytes, sample_rate: int) -> None:
        self._send({
            "type": "audio.cue",
            "sample_rate": sample_rate,
            "pcm": base64.b64encode(pcm).decode("ascii"),
        })

    # AudioOutput.stop shares the name with CaptureCapability.stop, so the
    # bridge hands out thin per-capability views (see below).
    def stop_audio(self) -> None:
        self._send({"type": "audio.stop"})
        self._release_all(self._audio)

    @property
    def audio(self) -> "BridgeAudioOutput":
        return BridgeAudioOutput(self)

    # --- Internals ---

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _send(self, message: Dict[str, Any]) -> bool:
        """Queue a message for the host; False when no host is attached."""
        if self._outbox is None:
            logger.debug("No host attached, message dropped", message_type=message.get("type"))
            return False
        self._outbox.put_nowait(message)
        return True

    def _forward_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("event_type", "")
        if event_type.startswith(FORWARDED_EVENT_PREFIXES):
            self._send({"type": event_type, **{k: v for k, v in event.items() if k != "pii"}})

    @staticmethod
    def _resolve(pending: Dict[str, asyncio.Future], key: Optional[str], error: Optional[Exception]) -> None:
        future = pending.get(key) if key else None
        if future is None or future.done():
            logger.debug("Completion for unknown or finished request", request_id=key)
            return
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(error)

    @staticmethod
    def _release_all(pending: Dict[str, asyncio.Future]) -> None:
        for future in pending.values():
            if not future.done():
                future.set_result(None)
        pending.clear()


class BridgeAudioOutput:
    """AudioOutput view of the bridge."""

    def __init__(self, bridge: HostBridge):
        self._bridge = bridge

    async def play(self, clip: AudioClip) -> None:
        await self._bridge.play(clip)

    def stop(self) -> None:
        self._bridge.stop_audio()

    def play_cue(self, pcm: bytes, sample_rate: int) -> None:
        self._bridge.play_cue(pcm, sample_rate)
