import asyncio

import httpx
import pytest
from fakes import FakeConversationClient, FakeSynthesisClient, reply

from voice_lesson.config_models import ConversationAPIConfig, VoiceProfile
from voice_lesson.errors import (
    AuthMissing,
    InvalidBackendResponse,
    NetworkError,
    PayloadTooLarge,
    RateLimited,
    SessionNotInitialized,
    SynthesisFailure,
    UnsupportedAudioFormat,
)
from voice_lesson.gemini_client import GeminiConversationClient
from voice_lesson.lesson import LessonOrchestrator
from voice_lesson.lesson_scripts import TAXI_RIDE_LESSON
from voice_lesson.models import AudioBlob, FinishReason, ToolCall

BLOB = AudioBlob(data=b"\x00" * 3000, mime_type="audio/webm;codecs=opus")


def make_orchestrator(conversation, synthesis=None, **kwargs):
    return LessonOrchestrator(TAXI_RIDE_LESSON, conversation, synthesis or FakeSynthesisClient(), **kwargs)


def test_uninitialized_lesson_makes_no_calls():
    conversation = FakeConversationClient(reply("Hola"))
    orchestrator = make_orchestrator(conversation)
    with pytest.raises(SessionNotInitialized):
        asyncio.run(orchestrator.process_turn(BLOB))
    assert conversation.calls == []


def test_hint_turn_keeps_tool_calls_and_gets_audio():
    hint = ToolCall("show_hint", {"hint_text": "Try: Hola"})
    conversation = FakeConversationClient(reply("Hola", [hint]))
    synthesis = FakeSynthesisClient()
    orchestrator = make_orchestrator(conversation, synthesis)
    orchestrator.initialize_lesson()

    result = asyncio.run(orchestrator.process_turn(BLOB))

    assert result.tool_calls == (hint,)
    assert result.audio_blob is not None
    assert result.audio_blob.mime_type == "audio/mpeg"
    assert result.finish_reason is FinishReason.STOP
    assert synthesis.calls == [("Hola", None)]


def test_tool_calls_forwarded_unmodified_in_order():
    calls = [
        ToolCall("finish_lesson", {"success": True}),
        ToolCall("unknown_tool", {"x": 1}),
        ToolCall("show_hint", {"hint_text": "Con tarjeta"}),
    ]
    orchestrator = make_orchestrator(FakeConversationClient(reply("Gracias", calls, FinishReason.TOOL_CALL)))
    orchestrator.initialize_lesson()

    result = asyncio.run(orchestrator.process_turn(BLOB))

    assert list(result.tool_calls) == calls
    assert result.finish_reason is FinishReason.TOOL_CALL


def test_empty_text_skips_synthesis():
    synthesis = FakeSynthesisClient()
    orchestrator = make_orchestrator(FakeConversationClient(reply("")), synthesis)
    orchestrator.initialize_lesson()

    result = asyncio.run(orchestrator.process_turn(BLOB))

    assert result.audio_blob is None
    assert not result.has_audio
    assert synthesis.calls == []


def test_voice_profile_is_passed_to_synthesis():
    profile = VoiceProfile(voice_id="jorge")
    synthesis = FakeSynthesisClient()
    orchestrator = make_orchestrator(FakeConversationClient(reply("Hola")), synthesis, voice_profile=profile)
    orchestrator.initialize_lesson()
    asyncio.run(orchestrator.process_turn(BLOB))
    assert synthesis.calls == [("Hola", profile)]


def test_synthesis_failure_fails_turn_with_partial_result():
    hint = ToolCall("show_hint", {"hint_text": "Voy al hotel"})
    orchestrator = make_orchestrator(
        FakeConversationClient(reply("¿A dónde vamos?", [hint])),
        FakeSynthesisClient(error=SynthesisFailure("boom")),
    )
    orchestrator.initialize_lesson()

    with pytest.raises(SynthesisFailure) as exc_info:
        asyncio.run(orchestrator.process_turn(BLOB))

    partial = exc_info.value.partial_result
    assert partial.text == "¿A dónde vamos?"
    assert partial.tool_calls == (hint,)
    assert exc_info.value.code == "TTS_ERROR"


def test_synthesis_rate_limit_keeps_its_code():
    orchestrator = make_orchestrator(
        FakeConversationClient(reply("Hola")),
        FakeSynthesisClient(error=RateLimited("slow down")),
    )
    orchestrator.initialize_lesson()
    with pytest.raises(SynthesisFailure) as exc_info:
        asyncio.run(orchestrator.process_turn(BLOB))
    assert exc_info.value.code == "RATE_LIMIT"
    assert exc_info.value.partial_result.text == "Hola"


def test_text_only_policy_returns_caption_without_audio():
    failure = SynthesisFailure("boom")
    orchestrator = make_orchestrator(
        FakeConversationClient(reply("Hola")),
        FakeSynthesisClient(error=failure),
        synthesis_failure_policy="text_only",
    )
    orchestrator.initialize_lesson()

    result = asyncio.run(orchestrator.process_turn(BLOB))

    assert result.text == "Hola"
    assert result.audio_blob is None
    assert result.synthesis_error is failure


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        make_orchestrator(FakeConversationClient(), synthesis_failure_policy="retry")


@pytest.mark.parametrize("raised, expected", [
    (OSError("socket closed"), NetworkError),
    (asyncio.TimeoutError(), NetworkError),
    (KeyError("candidates"), InvalidBackendResponse),
    (RateLimited("429"), RateLimited),
])
def test_dialogue_errors_are_wrapped(raised, expected):
    orchestrator = make_orchestrator(FakeConversationClient(raised))
    orchestrator.initialize_lesson()
    with pytest.raises(expected):
        asyncio.run(orchestrator.process_turn(BLOB))


def test_initialize_replaces_session_and_reset_is_idempotent():
    conversation = FakeConversationClient()
    orchestrator = make_orchestrator(conversation)

    first = orchestrator.initialize_lesson()
    second = orchestrator.initialize_lesson()
    assert conversation.ended == [first]
    assert orchestrator.session is second
    assert orchestrator.is_lesson_active

    orchestrator.reset_lesson()
    orchestrator.reset_lesson()
    assert not orchestrator.is_lesson_active
    assert conversation.ended == [first, second]


def test_initialize_without_key_is_auth_missing():
    orchestrator = make_orchestrator(FakeConversationClient(start_error=AuthMissing("no key")))
    with pytest.raises(AuthMissing):
        orchestrator.initialize_lesson()
    assert not orchestrator.is_lesson_active


@pytest.mark.parametrize("blob, error", [
    (AudioBlob(b"\x00" * 4096, "audio/webm"), PayloadTooLarge),
    (AudioBlob(b"\x00", "audio/aac"), UnsupportedAudioFormat),
])
def test_invalid_blob_never_reaches_backend(blob, error):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={})

    client = GeminiConversationClient(
        "test-key",
        ConversationAPIConfig(max_audio_size_mb=0.001),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    orchestrator = make_orchestrator(client)
    orchestrator.initialize_lesson()

    with pytest.raises(error):
        asyncio.run(orchestrator.process_turn(blob))
    assert requests == []
