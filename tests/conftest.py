"""
Fakes for the host and model capabilities used across the test-suite.
"""
import asyncio
from typing import Dict, List, Optional, Sequence

import pytest

from observability.event_store import event_store
from voice_pipeline.models import AudioClip, ResponderReply, Turn, UserProfile, VoiceParams


class FakeCapture:
    """Capture capability fed by the test through `push`."""

    def __init__(self, available: bool = True, fail_start: bool = False):
        self.available = available
        self.fail_start = fail_start
        self.locales: List[str] = []
        self.stop_count = 0
        self._queue: Optional[asyncio.Queue] = None

    def start(self, locale: str):
        if self.fail_start:
            raise OSError("microphone busy")
        self.locales.append(locale)
        self._queue = asyncio.Queue()
        return self._events(self._queue)

    async def _events(self, queue: asyncio.Queue):
        while True:
            event = await queue.get()
            if event is None:
                return
            if isinstance(event, Exception):
                raise event
            yield event

    def push(self, event) -> None:
        assert self._queue is not None, "capture was not started"
        self._queue.put_nowait(event)

    def end_stream(self) -> None:
        self.push(None)

    def stop(self) -> None:
        self.stop_count += 1
        if self._queue is not None:
            self._queue.put_nowait(None)
            self._queue = None

    @property
    def started(self) -> bool:
        return self._queue is not None


class FakeAudioOutput:
    """Audio output that 'plays' each clip for a fixed time unless stopped."""

    def __init__(self, play_seconds: float = 0.0):
        self.play_seconds = play_seconds
        self.played: List[int] = []
        self.started: List[int] = []
        self.cues: List[int] = []
        self.stop_count = 0
        self.sounding = False
        self._stopped = asyncio.Event()

    async def play(self, clip: AudioClip) -> None:
        assert not clip.released
        self.started.append(clip.segment_index)
        self.sounding = True
        self._stopped = asyncio.Event()
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=self.play_seconds)
        except asyncio.TimeoutError:
            self.played.append(clip.segment_index)
        finally:
            self.sounding = False

    def stop(self) -> None:
        self.stop_count += 1
        self.sounding = False
        self._stopped.set()

    def play_cue(self, pcm: bytes, sample_rate: int) -> None:
        self.cues.append(len(pcm))


class FakeSynthesizer:
    """
    Synthesizer with per-text delays and failures.

    Returns 200 samples of PCM16 so clips survive edge smoothing.
    """

    def __init__(
        self,
        delays: Optional[Dict[str, float]] = None,
        failures: Sequence[str] = (),
        empty: Sequence[str] = (),
        default_delay: float = 0.0,
    ):
        self.delays = delays or {}
        self.failures = set(failures)
        self.empty = set(empty)
        self.default_delay = default_delay
        self.requested: List[str] = []
        self.completed: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def synthesize(self, text: str, voice: str) -> Optional[bytes]:
        self.requested.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(text, self.default_delay))
            if text in self.failures:
                raise RuntimeError(f"synthesis failed for {text!r}")
            if text in self.empty:
                return None
            return b"\x10\x00" * 200
        finally:
            self.in_flight -= 1
            self.completed.append(text)


class FakeResponder:
    def __init__(self, replies: Sequence = (), delay: float = 0.0):
        self.replies = list(replies)
        self.delay = delay
        self.calls: List[dict] = []

    async def respond(
        self,
        query: str,
        history: Sequence[Turn],
        profile: UserProfile,
        search_enabled: bool,
    ) -> ResponderReply:
        self.calls.append({
            "query": query,
            "history": list(history),
            "profile": profile,
            "search_enabled": search_enabled,
        })
        await asyncio.sleep(self.delay)
        reply = self.replies.pop(0) if self.replies else ResponderReply(text="Dạ.")
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return ResponderReply(text=reply)
        return reply


class FakeSpeech:
    """Host speech engine; each utterance lasts `speak_seconds`."""

    def __init__(self, speak_seconds: float = 0.0, error: Optional[Exception] = None):
        self.speak_seconds = speak_seconds
        self.error = error
        self.spoken: List[str] = []
        self.params: List[VoiceParams] = []
        self.cancel_count = 0

    async def speak(self, text: str, params: VoiceParams) -> None:
        self.spoken.append(text)
        self.params.append(params)
        await asyncio.sleep(self.speak_seconds)
        if self.error is not None:
            raise self.error

    def cancel(self) -> None:
        self.cancel_count += 1


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true; fails the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture(autouse=True)
def clean_event_store():
    event_store.clear()
    yield
    event_store.clear()
