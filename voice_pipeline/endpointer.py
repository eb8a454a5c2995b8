"""
Endpointing: turn a stream of partial transcriptions into one utterance.

State machine per listening session:

    IDLE -> LISTENING -> FINALIZING -> IDLE

A session ends exactly once, by an explicit Final event, by the silence
timer, by stop(), or by the capture engine ending / failing. Whatever comes
first wins; later events and timers for that session are inert because they
are checked against the session generation and the LISTENING state.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity, text_pii
from .audio_cues import AudioCuePlayer, Cue
from .capabilities import CaptureCapability
from .errors import CaptureError, CaptureUnavailable
from .models import (
    CaptureEvent,
    CaptureFailed,
    Final,
    FinalizedBy,
    ListenOutcome,
    Partial,
    SessionEnded,
    SessionStarted,
    Utterance,
)


class EndpointerState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    FINALIZING = "finalizing"


class Endpointer:
    """
    Decides the earliest safe moment to consider an utterance complete.

    Every Partial restarts a silence countdown (debounce: only the most recent
    partial has a pending finalize). When the countdown elapses without a new
    partial, the last interim text is finalized as a SILENCE_TIMEOUT utterance.
    """

    def __init__(
        self,
        capture: Optional[CaptureCapability],
        cues: AudioCuePlayer,
        *,
        silence_timeout_ms: int = 600,
        locale: str = "vi-VN",
        session_id: str = "local",
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._capture = capture
        self._cues = cues
        self._silence_timeout = silence_timeout_ms / 1000.0
        self._locale = locale
        self._sleep = sleep

        self.session_id = session_id
        self.emitter = EventEmitter(ObsComponent.ENDPOINTER)
        self.logger = get_logger(LogComponent.ENDPOINTER, session_id=session_id)

        self.state = EndpointerState.IDLE
        self.last_outcome: Optional[ListenOutcome] = None
        self.last_error: Optional[CaptureError] = None

        self._generation = 0
        self._interim = ""
        self._partial_count = 0
        self._result: Optional[asyncio.Future] = None
        self._reader: Optional[asyncio.Task] = None
        self._silence_timer: Optional[asyncio.Task] = None

    @property
    def available(self) -> bool:
        return self._capture is not None and bool(self._capture.available)

    @property
    def listening(self) -> bool:
        return self.state is EndpointerState.LISTENING

    @property
    def correlation_id(self) -> str:
        return f"listen_{self._generation}"

    def ensure_available(self) -> None:
        if not self.available:
            raise CaptureUnavailable("no speech capture capability is present")

    # --- Session lifecycle ---

    def start(self) -> asyncio.Future:
        """
        Open a listening session.

        Returns a future resolving to the Utterance, or None when the session
        ended without one (see `last_outcome`).
        """
        self.ensure_available()
        if self.state is not EndpointerState.IDLE:
            raise RuntimeError("a listening session is already open")

        loop = asyncio.get_running_loop()
        self._generation += 1
        generation = self._generation
        self._interim = ""
        self._partial_count = 0
        self.last_outcome = None
        self.last_error = None
        self._result = loop.create_future()

        try:
            stream = self._capture.start(self._locale)
        except Exception as e:
            self._result = None
            raise CaptureUnavailable(f"capture failed to start: {e}") from e

        self.state = EndpointerState.LISTENING
        self._reader = loop.create_task(self._read(stream, generation))
        self.logger.debug("Listening session opened", correlation_id=self.correlation_id, locale=self._locale)
        self.emitter.emit(
            "listen.started",
            session_id=self.session_id,
            severity=Severity.DEBUG,
            correlation_id=self.correlation_id,
            locale=self._locale,
        )
        return self._result

    async def listen(self) -> Optional[Utterance]:
        """Open a session and wait for its result."""
        result = self.start()
        try:
            return await result
        except asyncio.CancelledError:
            self.stop()
            raise

    def stop(self) -> None:
        """Force the session closed; no finalize can happen afterwards."""
        if self.state is EndpointerState.IDLE:
            return
        self._close(ListenOutcome.STOPPED)

    # --- Event handling ---

    def on_event(self, event: CaptureEvent) -> None:
        if self.state is not EndpointerState.LISTENING:
            self.logger.debug(
                "Capture event ignored",
                event=type(event).__name__,
                state=self.state.value,
            )
            return

        if isinstance(event, SessionStarted):
            self._cues.play(Cue.LISTENING)
            self.emitter.emit(
                "listen.confirmed",
                session_id=self.session_id,
                severity=Severity.DEBUG,
                correlation_id=self.correlation_id,
            )
        elif isinstance(event, Partial):
            self._on_partial(event.text)
        elif isinstance(event, Final):
            self._finalize(event.text, FinalizedBy.EXPLICIT_FINAL)
        elif isinstance(event, CaptureFailed):
            error = CaptureError(event.kind)
            if error.transient:
                self.logger.debug("No speech detected", correlation_id=self.correlation_id)
                self._close(ListenOutcome.NO_SPEECH)
            else:
                self._fail(error)
        elif isinstance(event, SessionEnded):
            self._close(ListenOutcome.ENDED_EMPTY)
        else:
            self.logger.warning("Unknown capture event", event=type(event).__name__)

    def _on_partial(self, text: str) -> None:
        self._interim = text
        self._partial_count += 1
        self._cancel_silence_timer()
        self.logger.debug_pii("Partial transcript", text=text)
        if text.strip():
            self._silence_timer = asyncio.get_running_loop().create_task(
                self._silence_countdown(self._generation)
            )

    async def _silence_countdown(self, generation: int) -> None:
        await self._sleep(self._silence_timeout)
        if generation != self._generation or self.state is not EndpointerState.LISTENING:
            return
        if not self._interim.strip():
            return
        # The countdown is finishing on its own; nothing left to cancel
        self._silence_timer = None
        self._finalize(self._interim, FinalizedBy.SILENCE_TIMEOUT)

    async def _read(self, stream: AsyncIterator[CaptureEvent], generation: int) -> None:
        try:
            async for event in stream:
                if generation != self._generation or self.state is not EndpointerState.LISTENING:
                    break
                self.on_event(event)
                if self.state is not EndpointerState.LISTENING:
                    break
            else:
                if generation == self._generation and self.state is EndpointerState.LISTENING:
                    # Stream ran dry without an explicit end-of-session event
                    self.on_event(SessionEnded())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation == self._generation and self.state is EndpointerState.LISTENING:
                self._fail(CaptureError(f"stream-{type(e).__name__}"))

    # --- Terminal transitions ---

    def _finalize(self, text: str, finalized_by: FinalizedBy) -> None:
        self.state = EndpointerState.FINALIZING
        utterance = Utterance(text=text, finalized_by=finalized_by)
        self._cues.play(Cue.PROCESSING)
        self.logger.info_pii(
            "Utterance finalized",
            text=text,
        )
        self.emitter.emit(
            "listen.finalized",
            session_id=self.session_id,
            severity=Severity.INFO,
            correlation_id=self.correlation_id,
            pii=text_pii("text"),
            text=text,
            text_length=len(text),
            finalized_by=finalized_by.value,
            partial_count=self._partial_count,
        )
        self._close(ListenOutcome.FINALIZED, utterance)

    def _fail(self, error: CaptureError) -> None:
        self.last_error = error
        self.logger.warning("Capture error", correlation_id=self.correlation_id, kind=error.kind)
        self.emitter.emit(
            "capture.error",
            session_id=self.session_id,
            severity=Severity.WARN,
            correlation_id=self.correlation_id,
            kind=error.kind,
        )
        self._close(ListenOutcome.ERROR)

    def _close(self, outcome: ListenOutcome, utterance: Optional[Utterance] = None) -> None:
        self._cancel_silence_timer()
        self._cancel_reader()
        self.state = EndpointerState.IDLE
        self.last_outcome = outcome

        if self._capture is not None:
            try:
                self._capture.stop()
            except Exception as e:
                self.logger.warning("Capture stop failed", error=str(e), error_type=type(e).__name__)

        result, self._result = self._result, None
        if result is not None and not result.done():
            result.set_result(utterance)

        self.emitter.emit(
            "listen.ended",
            session_id=self.session_id,
            severity=Severity.DEBUG,
            correlation_id=self.correlation_id,
            outcome=outcome.value,
        )

    def _cancel_silence_timer(self) -> None:
        timer, self._silence_timer = self._silence_timer, None
        cancel_unless_current(timer)

    def _cancel_reader(self) -> None:
        reader, self._reader = self._reader, None
        cancel_unless_current(reader)


def cancel_unless_current(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    try:
        current = asyncio.current_task()
    except RuntimeError:
        current = None
    if task is not current:
        task.cancel()
