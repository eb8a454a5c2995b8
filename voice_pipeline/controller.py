"""
Conversation loop: listen -> respond -> speak -> listen again.

The controller owns the single SessionState value and the single "activity"
task that runs the loop. Everything that can interrupt the loop (toggle, an
exit phrase, a timer announcement) goes through it, so at most one capture
session and one speech output are ever live.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Callable, Coroutine, Dict, List, Optional, Sequence

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity, text_pii
from .capabilities import Responder, SpeechOutput
from .commands import CommandExecutor
from .config import DEFAULT_EXIT_PHRASES
from .endpointer import Endpointer, cancel_unless_current
from .errors import CaptureUnavailable, ResponderFailure
from .history import ConversationHistory
from .instructions import DEFAULT_FALLBACK_TEXT, DEFAULT_FAREWELL_TEXT
from .models import ResponderReply, SessionState, UserProfile, VoiceParams
from .segmenter import segment
from .synthesis import SpeechSynthesisPipeline

StateObserver = Callable[[SessionState, SessionState], None]

# Upper bound for the re-listen delay after repeated empty sessions
MAX_RELISTEN_BACKOFF_S = 5.0


def compile_exit_pattern(phrases: Sequence[str]) -> "re.Pattern[str]":
    """Case-insensitive alternation that matches anywhere in the utterance."""
    escaped = [re.escape(p) for p in phrases if p and p.strip()]
    if not escaped:
        # An empty alternation would match every utterance
        return re.compile(r"(?!)")
    return re.compile(f"({'|'.join(escaped)})", re.IGNORECASE)


class VoiceSessionController:
    def __init__(
        self,
        endpointer: Endpointer,
        pipeline: SpeechSynthesisPipeline,
        *,
        responder: Optional[Responder] = None,
        speech: Optional[SpeechOutput] = None,
        history: Optional[ConversationHistory] = None,
        profile: Optional[UserProfile] = None,
        voice_params: Optional[VoiceParams] = None,
        exit_phrases: Sequence[str] = DEFAULT_EXIT_PHRASES,
        relisten_delay_ms: int = 200,
        empty_relisten_limit: int = 2,
        history_enabled: bool = False,
        search_enabled: bool = False,
        farewell_text: str = DEFAULT_FAREWELL_TEXT,
        fallback_text: str = DEFAULT_FALLBACK_TEXT,
        session_id: str = "local",
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.endpointer = endpointer
        self.pipeline = pipeline
        self.responder = responder
        self.speech = speech
        self.history = history if history is not None else ConversationHistory(session_id=session_id)
        self.profile = profile or UserProfile()
        self.voice_params = voice_params or VoiceParams()
        self.commands = CommandExecutor(self.announce, session_id=session_id, sleep=sleep)

        self.history_enabled = history_enabled
        self.search_enabled = search_enabled
        self.farewell_text = farewell_text
        self.fallback_text = fallback_text
        self.empty_relisten_limit = empty_relisten_limit
        self._relisten_delay = relisten_delay_ms / 1000.0
        self._exit_pattern = compile_exit_pattern(exit_phrases)
        self._sleep = sleep

        self.session_id = session_id
        self.emitter = EventEmitter(ObsComponent.VOICE_SESSION)
        self.logger = get_logger(LogComponent.VOICE_SESSION, session_id=session_id)

        self.active = False
        self.state = SessionState.IDLE
        self._activity: Optional[asyncio.Task] = None
        self._speaking_locally = False
        self._observers: List[StateObserver] = []
        self._turn_count = 0

    # --- Observers ---

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Observe (previous, current) state transitions; returns an unsubscribe callable."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def _set_state(self, state: SessionState) -> None:
        previous = self.state
        if previous is state:
            return
        self.state = state
        for observer in list(self._observers):
            try:
                observer(previous, state)
            except Exception as e:
                self.logger.warning(
                    "State observer failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
        self.emitter.emit(
            "session.state_changed",
            session_id=self.session_id,
            severity=Severity.DEBUG,
            previous=previous.value,
            state=state.value,
        )

    # --- User actions ---

    def toggle(self) -> bool:
        """
        Activate or deactivate the conversation loop.

        Returns the new activation flag. Raises CaptureUnavailable when
        activation is impossible; the loop stays inactive in that case.
        """
        if self.active:
            self.deactivate(reason="toggle")
            return False

        self.endpointer.ensure_available()
        # A farewell or announcement may still be sounding
        self._interrupt()
        self.active = True
        self.logger.info("Conversation activated")
        self.emitter.emit("session.activated", session_id=self.session_id, severity=Severity.INFO)
        self._start_activity(self._converse())
        return True

    def deactivate(self, reason: str = "toggle") -> None:
        """Stop capture, silence output and suppress any pending re-listen."""
        was_active = self.active
        self.active = False
        self._interrupt()
        self._set_state(SessionState.IDLE)
        if was_active:
            self._emit_deactivated(reason)

    def _emit_deactivated(self, reason: str) -> None:
        self.logger.info("Conversation deactivated", reason=reason)
        self.emitter.emit(
            "session.deactivated",
            session_id=self.session_id,
            severity=Severity.INFO,
            reason=reason,
        )

    def announce(self, text: str) -> None:
        """
        Speak an unsolicited message, interrupting whatever is in progress.

        When the loop is active it re-listens afterwards.
        """
        self.logger.info("Announcement", text_length=len(text))
        self._interrupt()
        if self.active:
            self._start_activity(self._converse(first_speech=text))
        else:
            self._start_activity(self._speak_once(text))

    async def close(self) -> None:
        self.deactivate(reason="shutdown")
        self.commands.close()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "state": self.state.value,
            "wifi_enabled": self.commands.wifi_enabled,
            "active_timer": self.commands.active_timer,
            "history_turns": len(self.history),
            "turns": self._turn_count,
        }

    # --- Activity ---

    def _interrupt(self) -> None:
        self.endpointer.stop()
        self.pipeline.cancel()
        if self._speaking_locally and self.speech is not None:
            self.speech.cancel()
        self._speaking_locally = False
        activity, self._activity = self._activity, None
        cancel_unless_current(activity)

    def _start_activity(self, coro: Coroutine[Any, Any, None]) -> None:
        cancel_unless_current(self._activity)
        self._activity = asyncio.get_running_loop().create_task(coro)

    async def _converse(self, first_speech: Optional[str] = None) -> None:
        if first_speech is not None:
            await self._speak(first_speech)
            if not self.active:
                return
            await self._sleep(self._relisten_delay)

        empty_sessions = 0
        while self.active:
            self._set_state(SessionState.LISTENING)
            try:
                utterance = await self.endpointer.listen()
            except CaptureUnavailable as e:
                self.logger.error("Capture became unavailable", error=str(e))
                self.deactivate(reason="capture_unavailable")
                return
            if not self.active:
                return

            if utterance is None or not utterance.text.strip():
                empty_sessions += 1
                outcome = self.endpointer.last_outcome
                self.logger.debug(
                    "Listening session ended without speech",
                    outcome=outcome.value if outcome else None,
                    empty_sessions=empty_sessions,
                )
                await self._sleep(self._relisten_backoff(empty_sessions))
                continue

            empty_sessions = 0
            text = utterance.text.strip()

            if self._exit_pattern.search(text):
                self.logger.info("Exit phrase detected")
                self.emitter.emit(
                    "turn.exit_phrase",
                    session_id=self.session_id,
                    severity=Severity.INFO,
                    pii=text_pii("text"),
                    text=text,
                )
                self.active = False
                self._emit_deactivated("exit_phrase")
                await self._speak(self.farewell_text)
                self._set_state(SessionState.IDLE)
                return

            reply_text = await self._respond(text)
            if not self.active:
                return
            await self._speak(reply_text)
            if not self.active:
                return
            await self._sleep(self._relisten_delay)

    def _relisten_backoff(self, empty_sessions: int) -> float:
        """Re-listen delay; doubles for each empty session past the limit."""
        excess = empty_sessions - self.empty_relisten_limit
        if excess <= 0:
            return self._relisten_delay
        delay = self._relisten_delay * (2 ** min(excess, 16))
        if excess == 1:
            self.logger.info("Backing off re-listen after empty sessions", empty_sessions=empty_sessions)
        return min(delay, MAX_RELISTEN_BACKOFF_S)

    async def _speak_once(self, text: str) -> None:
        await self._speak(text)
        self._set_state(SessionState.IDLE)

    async def _respond(self, text: str) -> str:
        self._set_state(SessionState.PROCESSING)
        self._turn_count += 1
        correlation_id = f"turn_{self._turn_count}"
        history = self.history.turns if self.history_enabled else []

        try:
            if self.responder is None:
                raise ResponderFailure("no responder configured")
            reply = await self.responder.respond(text, history, self.profile, self.search_enabled)
            if not reply.text.strip():
                raise ResponderFailure("empty reply")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(
                "Responder failed, using fallback reply",
                correlation_id=correlation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.emitter.emit(
                "turn.responder_failed",
                session_id=self.session_id,
                severity=Severity.WARN,
                correlation_id=correlation_id,
                error_type=type(e).__name__,
            )
            return self.fallback_text

        if not self.active:
            # Deactivated while the responder was running; the result is dropped
            return reply.text

        if self.history_enabled:
            self.history.append_turn(text, reply.text)
        self.commands.execute(reply)
        self._emit_turn(correlation_id, text, reply)
        return reply.text

    def _emit_turn(self, correlation_id: str, text: str, reply: ResponderReply) -> None:
        self.logger.info_pii("Turn completed", text=text, reply=reply.text)
        self.emitter.emit(
            "turn.completed",
            session_id=self.session_id,
            severity=Severity.INFO,
            correlation_id=correlation_id,
            pii=text_pii("text", "reply"),
            text=text,
            reply=reply.text,
            command=reply.command.value,
        )

    async def _speak(self, text: str) -> None:
        self._set_state(SessionState.SPEAKING)
        segments = segment(text)

        if self.pipeline.enabled and segments:
            handle = self.pipeline.play(segments)
            try:
                await handle.wait()
            except asyncio.CancelledError:
                handle.cancel()
                raise
            return

        if self.speech is None:
            self.logger.warning("No speech output available, reply not spoken")
            return

        self._speaking_locally = True
        try:
            await self.speech.speak(text, self.voice_params)
        except asyncio.CancelledError:
            self.speech.cancel()
            raise
        except Exception as e:
            # A speech engine error still counts as the end of the reply
            self.logger.warning("Local speech failed", error=str(e), error_type=type(e).__name__)
        finally:
            self._speaking_locally = False
