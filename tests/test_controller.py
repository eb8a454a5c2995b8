"""
Tests for the conversation loop controller.
"""
import asyncio
from types import SimpleNamespace

import pytest

from conftest import (
    FakeAudioOutput,
    FakeCapture,
    FakeResponder,
    FakeSpeech,
    FakeSynthesizer,
    wait_until,
)
from observability.event_store import event_store
from voice_pipeline.audio_cues import AudioCuePlayer
from voice_pipeline.commands import TIMER_EXPIRED_TEXT
from voice_pipeline.controller import VoiceSessionController, compile_exit_pattern
from voice_pipeline.endpointer import Endpointer
from voice_pipeline.errors import CaptureUnavailable, ResponderFailure
from voice_pipeline.instructions import DEFAULT_FALLBACK_TEXT, DEFAULT_FAREWELL_TEXT
from voice_pipeline.models import (
    CommandParams,
    CommandType,
    Final,
    ResponderReply,
    SessionEnded,
    SessionState,
    Turn,
    VoiceParams,
)
from voice_pipeline.synthesis import SpeechSynthesisPipeline


async def fast_sleep(seconds):
    await asyncio.sleep(seconds / 100)


def make_session(replies=(), *, streaming=False, play_seconds=0.0, speech=None, responder_delay=0.0, **kwargs):
    capture = FakeCapture()
    output = FakeAudioOutput(play_seconds=play_seconds)
    synthesizer = FakeSynthesizer() if streaming else None
    responder = FakeResponder(replies, delay=responder_delay)
    speech = speech or FakeSpeech()
    endpointer = Endpointer(capture, AudioCuePlayer(output), silence_timeout_ms=50)
    pipeline = SpeechSynthesisPipeline(synthesizer, output)
    kwargs.setdefault("relisten_delay_ms", 10)
    controller = VoiceSessionController(
        endpointer,
        pipeline,
        responder=responder,
        speech=speech,
        **kwargs,
    )
    return SimpleNamespace(
        controller=controller,
        capture=capture,
        output=output,
        synthesizer=synthesizer,
        responder=responder,
        speech=speech,
    )


async def wait_for_session(capture, number):
    """Wait until the `number`-th listening session is open."""
    await wait_until(lambda: len(capture.locales) >= number and capture.started)


async def say(capture, number, text):
    await wait_for_session(capture, number)
    capture.push(Final(text))


def deactivation_reasons():
    return [e["reason"] for e in event_store.query(event_type="session.deactivated")]


def test_exit_pattern_matches_anywhere_ignoring_case():
    pattern = compile_exit_pattern(("tạm biệt", "goodbye"))

    assert pattern.search("Thôi, TẠM BIỆT nhé")
    assert pattern.search("ok Goodbye")
    assert not pattern.search("xin chào")


@pytest.mark.parametrize("phrases", [(), ("", "  ")])
def test_empty_exit_phrase_set_matches_nothing(phrases):
    pattern = compile_exit_pattern(phrases)

    assert not pattern.search("tạm biệt")
    assert not pattern.search("")


@pytest.mark.asyncio
async def test_toggle_starts_and_stops_listening():
    s = make_session()

    assert s.controller.toggle() is True
    await wait_for_session(s.capture, 1)
    assert s.controller.state is SessionState.LISTENING
    assert s.controller.snapshot()["active"] is True

    assert s.controller.toggle() is False
    assert s.controller.state is SessionState.IDLE
    assert s.capture.stop_count == 1
    assert deactivation_reasons() == ["toggle"]

    await asyncio.sleep(0.05)
    assert len(s.capture.locales) == 1


@pytest.mark.asyncio
async def test_toggle_without_capture_raises():
    s = make_session()
    s.capture.available = False

    with pytest.raises(CaptureUnavailable):
        s.controller.toggle()

    assert s.controller.active is False
    assert event_store.query(event_type="session.activated") == []


@pytest.mark.asyncio
async def test_turn_with_streaming_synthesis():
    s = make_session(["Chào bạn! Mình là ViVi."], streaming=True)
    transitions = []
    s.controller.subscribe(lambda prev, cur: transitions.append(cur))

    s.controller.toggle()
    await say(s.capture, 1, "xin chào")
    await wait_for_session(s.capture, 2)

    assert s.responder.calls[0]["query"] == "xin chào"
    assert s.synthesizer.requested == ["Chào bạn!", "Mình là ViVi."]
    assert s.output.played == [0, 1]
    assert s.speech.spoken == []
    assert transitions == [
        SessionState.LISTENING,
        SessionState.PROCESSING,
        SessionState.SPEAKING,
        SessionState.LISTENING,
    ]
    completed = event_store.query(event_type="turn.completed")
    assert len(completed) == 1
    assert completed[0]["correlation_id"] == "turn_1"
    assert completed[0]["pii"]["contains_pii"] is True

    await s.controller.close()


@pytest.mark.asyncio
async def test_turn_with_host_speech():
    params = VoiceParams(voice_uri="vi-VN-Standard-A", rate=1.2)
    s = make_session(["Bây giờ là 2 giờ chiều."], voice_params=params)

    s.controller.toggle()
    await say(s.capture, 1, "mấy giờ rồi")
    await wait_for_session(s.capture, 2)

    assert s.speech.spoken == ["Bây giờ là 2 giờ chiều."]
    assert s.speech.params == [params]

    await s.controller.close()


@pytest.mark.asyncio
async def test_host_speech_error_still_relistens():
    s = make_session(["Dạ."], speech=FakeSpeech(error=RuntimeError("synthesis-failed")))

    s.controller.toggle()
    await say(s.capture, 1, "xin chào")

    await wait_for_session(s.capture, 2)
    assert s.controller.active is True

    await s.controller.close()


@pytest.mark.asyncio
async def test_exit_phrase_says_farewell_and_stops():
    s = make_session()

    s.controller.toggle()
    await say(s.capture, 1, "Thôi, tạm biệt nhé")
    await wait_until(lambda: s.speech.spoken)

    assert s.speech.spoken == [DEFAULT_FAREWELL_TEXT]
    assert s.responder.calls == []
    assert s.controller.active is False
    assert deactivation_reasons() == ["exit_phrase"]

    await wait_until(lambda: s.controller.state is SessionState.IDLE)
    await asyncio.sleep(0.05)
    assert len(s.capture.locales) == 1


@pytest.mark.asyncio
async def test_without_exit_phrases_every_utterance_is_answered():
    s = make_session(["Dạ, chào bạn."], exit_phrases=())

    s.controller.toggle()
    await say(s.capture, 1, "tạm biệt")
    await wait_for_session(s.capture, 2)

    assert s.responder.calls[0]["query"] == "tạm biệt"
    assert s.speech.spoken == ["Dạ, chào bạn."]
    assert s.controller.active is True
    assert deactivation_reasons() == []

    await s.controller.close()


@pytest.mark.asyncio
async def test_reactivating_during_farewell_silences_it():
    s = make_session(streaming=True, play_seconds=5.0)

    s.controller.toggle()
    await say(s.capture, 1, "tạm biệt")
    await wait_until(lambda: s.output.sounding)

    assert s.controller.toggle() is True
    assert s.output.sounding is False
    assert s.controller.pipeline.active is None

    await wait_for_session(s.capture, 2)
    assert s.controller.state is SessionState.LISTENING
    assert s.output.played == []

    await s.controller.close()


@pytest.mark.asyncio
async def test_reactivating_during_local_farewell_cancels_speech():
    s = make_session(speech=FakeSpeech(speak_seconds=5.0))

    s.controller.toggle()
    await say(s.capture, 1, "tạm biệt")
    await wait_until(lambda: s.speech.spoken)

    assert s.controller.toggle() is True
    assert s.speech.cancel_count >= 1

    await wait_for_session(s.capture, 2)
    assert s.controller.active is True

    await s.controller.close()


@pytest.mark.asyncio
async def test_responder_failure_speaks_fallback():
    s = make_session([ResponderFailure("503")], history_enabled=True)

    s.controller.toggle()
    await say(s.capture, 1, "giá vàng hôm nay")
    await wait_for_session(s.capture, 2)

    assert s.speech.spoken == [DEFAULT_FALLBACK_TEXT]
    assert len(s.controller.history) == 0
    assert len(event_store.query(event_type="turn.responder_failed")) == 1
    assert s.controller.active is True

    await s.controller.close()


@pytest.mark.asyncio
async def test_empty_reply_speaks_fallback():
    s = make_session([""], fallback_text="Xin lỗi nhé.")

    s.controller.toggle()
    await say(s.capture, 1, "xin chào")
    await wait_for_session(s.capture, 2)

    assert s.speech.spoken == ["Xin lỗi nhé."]

    await s.controller.close()


@pytest.mark.asyncio
async def test_history_is_sent_when_enabled():
    s = make_session(["Chào Lan!", "Trời nắng."], history_enabled=True)

    s.controller.toggle()
    await say(s.capture, 1, "xin chào")
    await say(s.capture, 2, "thời tiết thế nào")
    await wait_for_session(s.capture, 3)

    assert s.responder.calls[0]["history"] == []
    assert s.responder.calls[1]["history"] == [Turn("user", "xin chào"), Turn("model", "Chào Lan!")]
    assert len(s.controller.history) == 4

    await s.controller.close()


@pytest.mark.asyncio
async def test_history_is_not_kept_when_disabled():
    s = make_session(["Một.", "Hai."])

    s.controller.toggle()
    await say(s.capture, 1, "một")
    await say(s.capture, 2, "hai")
    await wait_for_session(s.capture, 3)

    assert s.responder.calls[1]["history"] == []
    assert len(s.controller.history) == 0

    await s.controller.close()


@pytest.mark.asyncio
async def test_search_flag_and_profile_reach_responder():
    s = make_session(search_enabled=True)

    s.controller.toggle()
    await say(s.capture, 1, "tin tức hôm nay")
    await wait_until(lambda: s.responder.calls)

    assert s.responder.calls[0]["search_enabled"] is True
    assert s.responder.calls[0]["profile"] is s.controller.profile

    await s.controller.close()


@pytest.mark.asyncio
async def test_empty_sessions_back_off_and_keep_listening():
    delays = []

    async def recording_sleep(seconds):
        delays.append(seconds)
        await asyncio.sleep(0)

    s = make_session(empty_relisten_limit=1, sleep=recording_sleep)

    s.controller.toggle()
    for number in (1, 2, 3):
        await wait_for_session(s.capture, number)
        s.capture.push(SessionEnded())
    await wait_for_session(s.capture, 4)

    assert delays == [0.01, 0.02, 0.04]
    assert s.controller.active is True
    assert s.controller.state is SessionState.LISTENING
    assert deactivation_reasons() == []
    assert s.responder.calls == []

    await s.controller.close()


@pytest.mark.asyncio
async def test_speech_after_empty_sessions_resets_backoff():
    delays = []

    async def recording_sleep(seconds):
        delays.append(seconds)
        await asyncio.sleep(0)

    s = make_session(["Dạ."], empty_relisten_limit=0, sleep=recording_sleep)

    s.controller.toggle()
    await wait_for_session(s.capture, 1)
    s.capture.push(SessionEnded())
    await say(s.capture, 2, "xin chào")
    await wait_for_session(s.capture, 3)
    s.capture.push(SessionEnded())
    await wait_for_session(s.capture, 4)

    assert delays == [0.02, 0.01, 0.02]

    await s.controller.close()


@pytest.mark.asyncio
async def test_backoff_is_capped():
    s = make_session(relisten_delay_ms=1000, empty_relisten_limit=2)

    assert s.controller._relisten_backoff(2) == 1.0
    assert s.controller._relisten_backoff(3) == 2.0
    assert s.controller._relisten_backoff(500) == 5.0


@pytest.mark.asyncio
async def test_capture_lost_mid_conversation_deactivates():
    s = make_session()

    s.controller.toggle()
    await wait_for_session(s.capture, 1)
    s.capture.fail_start = True
    s.capture.push(SessionEnded())

    await wait_until(lambda: not s.controller.active)
    assert deactivation_reasons() == ["capture_unavailable"]


@pytest.mark.asyncio
async def test_deactivate_while_speaking_silences_output():
    s = make_session(["Một câu trả lời rất dài."], streaming=True, play_seconds=5.0)

    s.controller.toggle()
    await say(s.capture, 1, "kể chuyện đi")
    await wait_until(lambda: s.output.sounding)

    s.controller.toggle()

    assert s.output.sounding is False
    assert s.controller.pipeline.active is None
    assert s.controller.state is SessionState.IDLE
    await asyncio.sleep(0.05)
    assert len(s.capture.locales) == 1
    assert s.output.played == []


@pytest.mark.asyncio
async def test_deactivate_while_speaking_locally_cancels_speech():
    s = make_session(["Dạ."], speech=FakeSpeech(speak_seconds=5.0))

    s.controller.toggle()
    await say(s.capture, 1, "xin chào")
    await wait_until(lambda: s.speech.spoken)

    s.controller.toggle()

    assert s.speech.cancel_count >= 1
    await asyncio.sleep(0.05)
    assert len(s.capture.locales) == 1


@pytest.mark.asyncio
async def test_deactivate_while_processing_drops_reply():
    s = make_session(["Quá muộn."], responder_delay=0.1, history_enabled=True)

    s.controller.toggle()
    await say(s.capture, 1, "xin chào")
    await wait_until(lambda: s.controller.state is SessionState.PROCESSING)

    s.controller.toggle()
    await asyncio.sleep(0.15)

    assert s.speech.spoken == []
    assert len(s.controller.history) == 0
    assert event_store.query(event_type="turn.completed") == []


@pytest.mark.asyncio
async def test_commands_are_applied():
    reply = ResponderReply(
        text="Đã bật wifi.",
        command=CommandType.TOGGLE_WIFI,
        params=CommandParams(wifi_status="on"),
    )
    s = make_session([reply])

    s.controller.toggle()
    await say(s.capture, 1, "bật wifi")
    await wait_for_session(s.capture, 2)

    assert s.controller.snapshot()["wifi_enabled"] is True
    assert s.controller.snapshot()["turns"] == 1

    await s.controller.close()


@pytest.mark.asyncio
async def test_expired_timer_interrupts_listening_and_relistens():
    reply = ResponderReply(
        text="Đã hẹn giờ.",
        command=CommandType.SET_TIMER,
        params=CommandParams(duration_seconds=2),
    )
    s = make_session([reply], sleep=fast_sleep)

    s.controller.toggle()
    await say(s.capture, 1, "hẹn giờ hai giây")

    await wait_until(lambda: TIMER_EXPIRED_TEXT in s.speech.spoken)
    assert s.speech.spoken == ["Đã hẹn giờ.", TIMER_EXPIRED_TEXT]

    await wait_for_session(s.capture, 3)
    assert s.controller.active is True

    await s.controller.close()


@pytest.mark.asyncio
async def test_announce_while_inactive_speaks_once():
    s = make_session()

    s.controller.announce("Hết giờ hẹn!")
    await wait_until(lambda: s.speech.spoken)
    await wait_until(lambda: s.controller.state is SessionState.IDLE)

    assert s.speech.spoken == ["Hết giờ hẹn!"]
    assert s.capture.locales == []


@pytest.mark.asyncio
async def test_failing_state_observer_does_not_break_the_loop():
    s = make_session(["Dạ."])

    def broken(prev, cur):
        raise RuntimeError("avatar crashed")

    s.controller.subscribe(broken)
    s.controller.toggle()
    await say(s.capture, 1, "xin chào")
    await wait_for_session(s.capture, 2)

    assert s.speech.spoken == ["Dạ."]
    await s.controller.close()


@pytest.mark.asyncio
async def test_unsubscribed_observer_is_not_called():
    s = make_session()
    seen = []
    unsubscribe = s.controller.subscribe(lambda prev, cur: seen.append(cur))
    unsubscribe()

    s.controller.toggle()
    await wait_for_session(s.capture, 1)

    assert seen == []
    await s.controller.close()
