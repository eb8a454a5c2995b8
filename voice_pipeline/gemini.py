"""
Gemini responder and speech synthesis via the generateContent REST API.

Uses API key authentication. Both clients keep one pooled aiohttp session so
consecutive calls (and the synthesis look-ahead fetches) reuse connections.
Synthesis output: raw PCM16 mono 24 kHz, as returned by the TTS model.
"""
import asyncio
import base64
import json
import os
import re
import time
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from logging_setup import get_logger, Component
from .errors import ResponderFailure, SynthesisFailure, classify_provider_error
from .instructions import build_system_instruction
from .models import CommandParams, CommandType, ResponderReply, Turn, UserProfile

logger = get_logger(Component.RESPONDER)
tts_logger = get_logger(Component.SYNTHESIS)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_TTS_SAMPLE_RATE = 24000

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "type": {
            "type": "STRING",
            "enum": ["chat", "open_app", "toggle_wifi", "set_timer"],
            "description": "The type of action to perform based on user input.",
        },
        "textResponse": {
            "type": "STRING",
            "description": (
                "The natural language response the assistant should speak to the user. "
                "If providing real-time data (weather, prices), summarize it here."
            ),
        },
        "params": {
            "type": "OBJECT",
            "properties": {
                "appName": {"type": "STRING", "description": "Name of the app to open (e.g., 'YouTube', 'Zalo')."},
                "wifiStatus": {"type": "STRING", "enum": ["on", "off"], "description": "Target status for Wi-Fi."},
                "durationSeconds": {"type": "INTEGER", "description": "Duration for timer in seconds."},
            },
            "description": "Parameters required to execute the command.",
        },
    },
    "required": ["type", "textResponse"],
}

_FENCE_RE = re.compile(r"```(?:json)?")


def parse_reply(text: str) -> ResponderReply:
    """
    Parse model output into a reply, tolerating prose around the JSON.

    1. The outermost {...} block, if it parses
    2. The text with markdown code fences stripped, if it parses
    3. Otherwise the raw text itself is the chat reply (common with search)
    """
    first_open = text.find("{")
    last_close = text.rfind("}")
    if first_open != -1 and last_close > first_open:
        reply = _reply_from_json(text[first_open:last_close + 1])
        if reply is not None:
            return reply

    reply = _reply_from_json(_FENCE_RE.sub("", text).strip())
    if reply is not None:
        return reply

    return ResponderReply(text=text, command=CommandType.CHAT)


def _reply_from_json(candidate: str) -> Optional[ResponderReply]:
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    text = data.get("textResponse")
    return ResponderReply(
        text=text if isinstance(text, str) else "",
        command=CommandType.parse(data.get("type", "chat")),
        params=CommandParams.from_dict(data.get("params")),
    )


def _candidate_parts(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    candidates = data.get("candidates") or []
    if not candidates:
        return []
    content = candidates[0].get("content") or {}
    return content.get("parts") or []


class _GeminiClient:
    """Shared connection pooling for the Gemini REST clients."""

    def __init__(self, *, api_key: str, model: str):
        if not api_key:
            raise ValueError("Gemini requires a valid API key in GEMINI_API_KEY")
        self._api_key = api_key
        self.model = model

        self._http_session: Optional[aiohttp.ClientSession] = None
        self._connector: Optional[aiohttp.TCPConnector] = None

    @property
    def url(self) -> str:
        return f"{GEMINI_API_BASE}/models/{self.model}:generateContent"

    def _get_or_create_session(self) -> aiohttp.ClientSession:
        """Reuses TCP connections between requests to reduce latency."""
        if self._http_session is None or self._http_session.closed:
            pool_size = int(os.getenv("GEMINI_CONNECTION_POOL_SIZE", "10"))
            connect_timeout = float(os.getenv("GEMINI_CONNECTION_TIMEOUT", "3.0"))
            total_timeout = float(os.getenv("GEMINI_CONNECTION_TOTAL_TIMEOUT", "30.0"))

            self._connector = aiohttp.TCPConnector(
                limit=pool_size,
                limit_per_host=pool_size,
                ttl_dns_cache=300,
                force_close=False,
            )
            timeout = aiohttp.ClientTimeout(total=total_timeout, connect=connect_timeout)
            self._http_session = aiohttp.ClientSession(connector=self._connector, timeout=timeout)

            logger.info(
                "Gemini connection pool created",
                model=self.model,
                pool_size=pool_size,
                connect_timeout_ms=int(connect_timeout * 1000),
                total_timeout_ms=int(total_timeout * 1000),
            )
        return self._http_session

    async def _generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST one generateContent request; raises aiohttp.ClientResponseError on non-200."""
        session = self._get_or_create_session()
        async with session.post(self.url, params={"key": self._api_key}, json=payload) as response:
            if response.status != 200:
                error_text = await response.text()
                raise aiohttp.ClientResponseError(
                    response.request_info,
                    response.history,
                    status=response.status,
                    message=error_text[:500],
                )
            return await response.json()

    async def aclose(self) -> None:
        """Best-effort cleanup; safe to call multiple times."""
        if self._http_session is not None:
            try:
                await self._http_session.close()
                logger.info("Gemini connection pool closed", model=self.model)
            except Exception as e:
                logger.warning(
                    "Error closing Gemini HTTP session",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._http_session = None
                self._connector = None


class GeminiResponder(_GeminiClient):
    """Responder capability: query + history + profile -> reply text and command."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-2.5-flash",
        persona: Optional[str] = None,
        temperature: float = 0.8,
    ):
        super().__init__(api_key=api_key, model=model)
        self._persona = persona
        self._temperature = temperature

    def build_payload(
        self,
        query: str,
        history: Sequence[Turn],
        profile: Optional[UserProfile],
        search_enabled: bool,
    ) -> Dict[str, Any]:
        instruction = build_system_instruction(profile, search_enabled, persona=self._persona)
        payload: Dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": instruction}]},
            "contents": [turn.to_content() for turn in history]
            + [{"role": "user", "parts": [{"text": query}]}],
            "generationConfig": {"temperature": self._temperature},
        }
        if search_enabled:
            # The response schema cannot be combined with the search tool
            payload["tools"] = [{"google_search": {}}]
        else:
            payload["generationConfig"]["responseMimeType"] = "application/json"
            payload["generationConfig"]["responseSchema"] = RESPONSE_SCHEMA
        return payload

    async def respond(
        self,
        query: str,
        history: Sequence[Turn],
        profile: Optional[UserProfile],
        search_enabled: bool,
    ) -> ResponderReply:
        payload = self.build_payload(query, history, profile, search_enabled)
        logger.info(
            "Responder call started",
            model=self.model,
            history_turns=len(history),
            search_enabled=search_enabled,
            text_length=len(query),
        )

        t_start = time.perf_counter()
        try:
            data = await self._generate(payload)
        except aiohttp.ClientResponseError as e:
            category = classify_provider_error(e, status=e.status)
            logger.error("Responder call failed", status_code=e.status, category=category, error=e.message)
            raise ResponderFailure(f"Gemini responder error: {e.status}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            category = classify_provider_error(e)
            logger.error("Responder call failed", category=category, error=str(e), error_type=type(e).__name__)
            raise ResponderFailure(f"Gemini responder exception: {e}") from e
        latency_ms = int((time.perf_counter() - t_start) * 1000)

        text = "".join(part.get("text", "") for part in _candidate_parts(data))
        if not text.strip():
            logger.error("Responder returned empty response", latency_ms=latency_ms)
            raise ResponderFailure("Empty response from Gemini")

        reply = parse_reply(text)
        logger.info(
            "Responder call completed",
            latency_ms=latency_ms,
            command=reply.command.value,
            text_length=len(reply.text),
        )
        return reply

    async def validate_api_key(self) -> bool:
        """Minimal one-token request; False on any failure."""
        payload = {
            "contents": [{"parts": [{"text": "ping"}]}],
            "generationConfig": {"maxOutputTokens": 1},
        }
        try:
            await self._generate(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "API key validation failed",
                category=classify_provider_error(e, status=getattr(e, "status", None)),
                error_type=type(e).__name__,
            )
            return False
        return True


class GeminiSpeechSynthesizer(_GeminiClient):
    """Streaming synthesis capability: one request per segment, safe to call concurrently."""

    def __init__(self, *, api_key: str, model: str = "gemini-2.5-flash-preview-tts"):
        super().__init__(api_key=api_key, model=model)

    @property
    def sample_rate(self) -> int:
        return GEMINI_TTS_SAMPLE_RATE

    async def synthesize(self, text: str, voice: str) -> Optional[bytes]:
        if not text or not text.strip():
            return None

        payload = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}},
                },
            },
        }

        t_start = time.perf_counter()
        try:
            data = await self._generate(payload)
        except aiohttp.ClientResponseError as e:
            category = classify_provider_error(e, status=e.status)
            tts_logger.error("TTS call failed", status_code=e.status, category=category, error=e.message)
            raise SynthesisFailure(f"Gemini TTS API error: {e.status}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            category = classify_provider_error(e)
            tts_logger.error("TTS call failed", category=category, error=str(e), error_type=type(e).__name__)
            raise SynthesisFailure(f"Gemini TTS exception: {e}") from e

        parts = _candidate_parts(data)
        audio_b64 = (parts[0].get("inlineData") or {}).get("data") if parts else None
        if not audio_b64:
            tts_logger.warning("TTS response holds no audio", text_length=len(text))
            return None

        pcm = base64.b64decode(audio_b64)
        tts_logger.info(
            "TTS call completed",
            voice=voice,
            text_length=len(text),
            audio_bytes=len(pcm),
            latency_ms=int((time.perf_counter() - t_start) * 1000),
        )
        return pcm
