"""
Structured JSON event emission with in-process subscribers.

Every event shares one envelope (ts, session_id, component, event_type,
severity, correlation_id, pii). Events are written as JSON lines to stdout,
kept in the bounded event store, and delivered to subscribers. Presentation
layers (avatar moods, the host bridge) observe session-state transitions
through `subscribe` instead of being wired into the pipeline.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from logging_setup import get_logger, Component as LogComponent
from .event_store import event_store


logger = get_logger(LogComponent.VOICE_SESSION)


class Component(str, Enum):
    """Event-emitting components."""

    VOICE_SESSION = "voice_session"
    ENDPOINTER = "endpointer"
    SYNTHESIS = "synthesis"
    COMMANDS = "commands"
    CONTROL_API = "control_api"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}

EventListener = Callable[[Dict[str, Any]], None]

# Shared by every emitter so a single subscription sees all components
_listeners: List[EventListener] = []


def subscribe(listener: EventListener) -> Callable[[], None]:
    """
    Register a listener for every emitted event.

    Returns a callable that removes the listener again.
    """
    _listeners.append(listener)

    def _unsubscribe() -> None:
        if listener in _listeners:
            _listeners.remove(listener)

    return _unsubscribe


def _notify(event: Dict[str, Any]) -> None:
    for listener in list(_listeners):
        try:
            listener(event)
        except Exception as e:
            logger.warning(
                "Event listener failed",
                event_type=event.get("event_type"),
                error=str(e),
                error_type=type(e).__name__,
            )


class EventEmitter:
    """Emits structured JSON events for one component."""

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or DEFAULT_PII,
        }
        event.update(kwargs)

        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)
        _notify(event)
        return event

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Subscribe to events of this component only."""
        component = self.component.value

        def _filtered(event: Dict[str, Any]) -> None:
            if event.get("component") == component:
                listener(event)

        return subscribe(_filtered)


def text_pii(*fields: str) -> Optional[Dict[str, Any]]:
    """PII descriptor for events that carry transcript or reply text."""
    if not fields:
        return None
    return {"contains_pii": True, "fields": list(fields), "handling": "none"}
