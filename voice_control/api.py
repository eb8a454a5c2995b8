"""
Voice control API.

This module exposes:
- Write API: toggle the conversation loop
- Read API: current session state, recent events
- The host bridge WebSocket (/voice/bridge)

Emits auditable events: control.command_received / control.command_applied.
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from logging_setup import get_logger, Component
from observability.event_store import event_store
from observability.events import Component as ObsComponent, EventEmitter, Severity
from voice_pipeline.controller import VoiceSessionController
from voice_pipeline.errors import CaptureUnavailable
from .bridge import HostBridge


router = APIRouter(prefix="/voice", tags=["voice"])
emitter = EventEmitter(ObsComponent.CONTROL_API)
logger = get_logger(Component.CONTROL_API)


class ToggleResponse(BaseModel):
    active: bool
    state: str


class SessionSnapshot(BaseModel):
    session_id: str
    active: bool
    state: str
    wifi_enabled: bool
    active_timer: Optional[int] = None
    history_turns: int
    turns: int
    host_connected: bool


def _new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}"


def _controller(request: Request) -> VoiceSessionController:
    return request.app.state.controller


def _parse_since(since: str) -> datetime:
    # A '+' in the query string may arrive decoded as a space
    since_clean = since.replace(" ", "+").replace("Z", "+00:00")
    if "+" not in since_clean and "-" not in since_clean[-6:]:
        since_clean += "+00:00"
    return datetime.fromisoformat(since_clean)


@router.post("/toggle", response_model=ToggleResponse)
async def toggle(request: Request) -> ToggleResponse:
    """Activate or deactivate the conversation loop."""
    controller = _controller(request)
    correlation_id = _new_correlation_id()

    emitter.emit(
        "control.command_received",
        session_id=controller.session_id,
        severity=Severity.INFO,
        correlation_id=correlation_id,
        command="voice.toggle",
    )

    try:
        active = controller.toggle()
    except CaptureUnavailable as e:
        emitter.emit(
            "control.command_applied",
            session_id=controller.session_id,
            severity=Severity.ERROR,
            correlation_id=correlation_id,
            command="voice.toggle",
            result="error",
            error_class=type(e).__name__,
        )
        raise HTTPException(status_code=503, detail="capture_unavailable")

    emitter.emit(
        "control.command_applied",
        session_id=controller.session_id,
        severity=Severity.INFO,
        correlation_id=correlation_id,
        command="voice.toggle",
        result="ok",
        active=active,
    )
    return ToggleResponse(active=active, state=controller.state.value)


@router.get("/state", response_model=SessionSnapshot)
async def get_state(request: Request) -> SessionSnapshot:
    controller = _controller(request)
    bridge: HostBridge = request.app.state.bridge
    return SessionSnapshot(
        session_id=controller.session_id,
        host_connected=bridge.connected,
        **controller.snapshot(),
    )


@router.get("/events")
async def get_events(
    request: Request,
    event_type: Optional[str] = Query(None, description="Filter by event_type; 'prefix.*' matches a prefix"),
    component: Optional[str] = Query(None, description="Filter by component"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return, most recent"),
) -> Dict[str, Any]:
    """Query recent events of the current conversation."""
    controller = _controller(request)

    since_dt: Optional[datetime] = None
    if since:
        try:
            since_dt = _parse_since(since)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid since timestamp: {since}")

    events = event_store.query(
        session_id=controller.session_id,
        event_type=event_type,
        component=component,
        since=since_dt,
        limit=limit,
    )
    return {
        "session_id": controller.session_id,
        "events": events,
        "count": len(events),
    }


@router.websocket("/bridge")
async def host_bridge(websocket: WebSocket) -> None:
    """Host connection carrying capture events, speech and audio."""
    bridge: HostBridge = websocket.app.state.bridge
    # Attached before the handshake completes so the host can toggle right away
    outbox = bridge.attach()
    writer: Optional[asyncio.Task] = None

    try:
        await websocket.accept()
        writer = asyncio.create_task(_pump(websocket, outbox))
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Host sent invalid JSON", size=len(raw))
                continue
            bridge.handle_message(data)
    except WebSocketDisconnect as e:
        logger.info("Host disconnected", code=e.code)
    finally:
        if writer is not None:
            writer.cancel()
        # A newer connection may already have replaced this one
        if bridge.is_current(outbox):
            bridge.detach()


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        message = await outbox.get()
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Host send failed", error=str(e), message_type=message.get("type"))
            return
