"""
Voice control server: wires the voice pipeline to the host bridge.

Run with `python -m voice_control`, or mount `create_app()` in an existing
ASGI server.
"""
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from logging_setup import get_logger, Component
from voice_pipeline.audio_cues import AudioCuePlayer
from voice_pipeline.capabilities import Responder, SpeechSynthesizer
from voice_pipeline.config import VoiceConfig, get_config
from voice_pipeline.controller import VoiceSessionController
from voice_pipeline.endpointer import Endpointer
from voice_pipeline.gemini import GEMINI_TTS_SAMPLE_RATE, GeminiResponder, GeminiSpeechSynthesizer
from voice_pipeline.history import ConversationHistory
from voice_pipeline.instructions import get_fallback_text, get_farewell_text
from voice_pipeline.models import UserProfile, VoiceParams
from voice_pipeline.synthesis import SpeechSynthesisPipeline
from .api import router as voice_router
from .bridge import HostBridge

logger = get_logger(Component.CONTROL_API)


def build_controller(
    config: VoiceConfig,
    bridge: HostBridge,
    *,
    responder: Optional[Responder] = None,
    synthesizer: Optional[SpeechSynthesizer] = None,
    session_id: Optional[str] = None,
) -> VoiceSessionController:
    """Assemble one conversation loop on top of the host bridge."""
    session_id = session_id or f"conv_{uuid.uuid4().hex[:12]}"
    audio = bridge.audio

    endpointer = Endpointer(
        bridge,
        AudioCuePlayer(audio),
        silence_timeout_ms=config.silence_timeout_ms,
        locale=config.capture_locale,
        session_id=session_id,
    )
    pipeline = SpeechSynthesisPipeline(
        synthesizer,
        audio,
        voice=config.gemini_voice,
        lookahead_depth=config.lookahead_depth,
        sample_rate=GEMINI_TTS_SAMPLE_RATE,
        session_id=session_id,
    )
    return VoiceSessionController(
        endpointer,
        pipeline,
        responder=responder,
        speech=bridge,
        history=ConversationHistory(max_chars=config.history_max_chars, session_id=session_id),
        profile=UserProfile(
            name=config.user_name,
            gender=config.user_gender,
            custom_personality=config.user_personality,
        ),
        voice_params=VoiceParams(
            voice_uri=config.native_voice_uri,
            rate=config.native_rate,
            pitch=config.native_pitch,
        ),
        exit_phrases=config.exit_phrases,
        relisten_delay_ms=config.relisten_delay_ms,
        empty_relisten_limit=config.empty_relisten_limit,
        history_enabled=config.history_enabled,
        search_enabled=config.search_enabled,
        farewell_text=get_farewell_text(config.persona),
        fallback_text=get_fallback_text(config.persona),
        session_id=session_id,
    )


def create_app(
    config: Optional[VoiceConfig] = None,
    *,
    responder: Optional[Responder] = None,
    synthesizer: Optional[SpeechSynthesizer] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Without explicit collaborators, Gemini clients are created from config:
    the responder whenever an API key is set, streaming synthesis only when
    the gemini voice provider is selected as well.
    """
    config = config or get_config()
    owned = []
    if responder is None and config.gemini_api_key:
        responder = GeminiResponder(
            api_key=config.gemini_api_key,
            model=config.gemini_model,
            persona=config.persona,
        )
        owned.append(responder)
    if synthesizer is None and config.streaming_synthesis_enabled:
        synthesizer = GeminiSpeechSynthesizer(api_key=config.gemini_api_key, model=config.gemini_tts_model)
        owned.append(synthesizer)
    if config.voice_provider == "gemini" and synthesizer is None:
        logger.warning("Gemini voice selected without an API key, using host speech")

    bridge = HostBridge()
    controller = build_controller(config, bridge, responder=responder, synthesizer=synthesizer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Voice control server started",
            session_id=controller.session_id,
            voice_provider=config.voice_provider,
            streaming_synthesis=controller.pipeline.enabled,
            responder=responder is not None,
        )
        yield
        await controller.close()
        for client in owned:
            await client.aclose()

    app = FastAPI(title="ViVi Voice Control", lifespan=lifespan)
    app.state.config = config
    app.state.bridge = bridge
    app.state.controller = controller
    app.include_router(voice_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "component": "voice_control", "host_connected": bridge.connected}

    return app
