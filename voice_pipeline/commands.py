"""
Applies the structured command that accompanies a responder reply.

The device state is simulated: a Wi-Fi flag and one countdown timer. A timer
that reaches zero is announced through the `announce` callback supplied by
the session controller.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .models import CommandType, ResponderReply

TIMER_EXPIRED_TEXT = "Hết giờ hẹn!"


class CommandExecutor:
    def __init__(
        self,
        announce: Optional[Callable[[str], None]] = None,
        *,
        session_id: str = "local",
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._announce = announce
        self._sleep = sleep

        self.session_id = session_id
        self.emitter = EventEmitter(ObsComponent.COMMANDS)
        self.logger = get_logger(LogComponent.COMMANDS, session_id=session_id)

        self.wifi_enabled = False
        self.active_timer: Optional[int] = None
        self._timer_task: Optional[asyncio.Task] = None

    def execute(self, reply: ResponderReply) -> None:
        command = reply.command
        params = reply.params

        if command is CommandType.TOGGLE_WIFI:
            self.wifi_enabled = params.wifi_status == "on"
            self.logger.info("Wi-Fi toggled", wifi_enabled=self.wifi_enabled)
            self._emit("command.toggle_wifi", wifi_enabled=self.wifi_enabled)
        elif command is CommandType.SET_TIMER:
            duration = params.duration_seconds or 0
            if duration > 0:
                self.start_timer(duration)
            else:
                self.logger.warning("Timer command without a positive duration", duration_seconds=duration)
        elif command is CommandType.OPEN_APP:
            self.logger.info("Open app requested", app_name=params.app_name)
            self._emit("command.open_app", app_name=params.app_name)
        elif command is CommandType.UNKNOWN:
            self.logger.debug("Unknown command ignored")

    def start_timer(self, seconds: int) -> None:
        """Replace any running countdown with a new one."""
        self.cancel_timer()
        self.active_timer = seconds
        self._timer_task = asyncio.get_running_loop().create_task(self._countdown())
        self.logger.info("Timer started", duration_seconds=seconds)
        self._emit("command.set_timer", duration_seconds=seconds)

    def cancel_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is not None and not task.done():
            task.cancel()
        self.active_timer = None

    async def _countdown(self) -> None:
        while self.active_timer is not None and self.active_timer > 0:
            await self._sleep(1.0)
            if self.active_timer is None:
                return
            self.active_timer -= 1

        self._timer_task = None
        self.logger.info("Timer expired")
        self._emit("command.timer_expired")
        if self._announce is not None:
            try:
                self._announce(TIMER_EXPIRED_TEXT)
            except Exception as e:
                self.logger.error(
                    "Timer announcement failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def close(self) -> None:
        self.cancel_timer()

    def _emit(self, event_type: str, **fields: Any) -> None:
        self.emitter.emit(
            event_type,
            session_id=self.session_id,
            severity=Severity.INFO,
            **fields,
        )
