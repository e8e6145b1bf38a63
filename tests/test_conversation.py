import asyncio

from fakes import FakeCaptureBackend, FakeConversationClient, FakePlayer, FakeSynthesisClient, reply

from voice_lesson.audio_capture import AudioCaptureSession
from voice_lesson.conversation import ConversationStateMachine
from voice_lesson.errors import (
    AuthMissing,
    DeviceUnavailable,
    NetworkError,
    PermissionDenied,
    PlaybackError,
    SynthesisFailure,
)
from voice_lesson.lesson import LessonOrchestrator
from voice_lesson.lesson_scripts import TAXI_RIDE_LESSON
from voice_lesson.models import ToolCall
from voice_lesson.state_machine import LessonState

IDLE = LessonState.IDLE
LISTENING = LessonState.LISTENING
THINKING = LessonState.THINKING
SPEAKING = LessonState.SPEAKING
ERROR = LessonState.ERROR


class Harness:
    def __init__(self, *responses, synthesis=None, player=None, backend=None, gate=None, policy="fail_turn",
                 min_audio_size_bytes=0):
        self.backend = backend or FakeCaptureBackend()
        self.conversation = FakeConversationClient(*responses, gate=gate)
        self.synthesis = synthesis or FakeSynthesisClient()
        self.player = player or FakePlayer()
        self.capture = AudioCaptureSession(self.backend)
        self.orchestrator = LessonOrchestrator(
            TAXI_RIDE_LESSON, self.conversation, self.synthesis, synthesis_failure_policy=policy
        )
        self.states = [IDLE]
        self.hints = []
        self.captions = []
        self.completions = []
        self.errors = []
        self.machine = ConversationStateMachine(
            self.orchestrator,
            self.capture,
            self.player,
            on_state_change=lambda old, new: self.states.append(new),
            on_hint=self.hints.append,
            on_caption=self.captions.append,
            on_lesson_complete=self.completions.append,
            on_error=self.errors.append,
            min_audio_size_bytes=min_audio_size_bytes,
        )
        self.machine.start_lesson()

    async def speak(self, *chunks):
        await self.machine.on_mic_press_start()
        for chunk in chunks:
            self.backend.streams[-1].emit(chunk)
        return await self.machine.on_mic_press_end()


def test_empty_reply_goes_straight_back_to_idle():
    h = Harness(reply(""))
    asyncio.run(h.speak(b"audio"))
    assert h.states == [IDLE, LISTENING, THINKING, IDLE]
    assert h.player.played == []
    assert h.synthesis.calls == []


def test_spoken_reply_plays_audio():
    h = Harness(reply("¡Hola! ¿A dónde vamos?"))
    result = asyncio.run(h.speak(b"a" * 1000, b"b" * 1000))

    assert h.states == [IDLE, LISTENING, THINKING, SPEAKING, IDLE]
    assert h.captions == ["¡Hola! ¿A dónde vamos?"]
    assert h.machine.caption == "¡Hola! ¿A dónde vamos?"
    assert h.player.played == [result.audio_blob]
    sent_blob = h.conversation.calls[0][1]
    assert sent_blob.size == 2000
    assert h.capture.blob is None


def test_nothing_recorded_returns_to_idle_without_a_turn():
    h = Harness()
    assert asyncio.run(h.speak()) is None
    assert h.states == [IDLE, LISTENING, IDLE]
    assert h.conversation.calls == []


def test_hint_is_shown_and_cleared_on_next_press():
    hint_call = ToolCall("show_hint", {"hint_text": "Try: Voy al hotel"})
    h = Harness(reply("¿Cómo?", [hint_call]), reply(""))

    async def scenario():
        await h.speak(b"x")
        assert h.machine.hint.text == "Try: Voy al hotel"
        assert h.machine.hint.trigger == "show_hint"
        await h.machine.on_mic_press_start()
        assert h.machine.hint is None

    asyncio.run(scenario())
    assert [hint.text if hint else None for hint in h.hints] == ["Try: Voy al hotel", None]


def test_finish_lesson_signals_completion():
    h = Harness(reply("¡Bienvenido!", [ToolCall("finish_lesson", {"success": True})]))
    asyncio.run(h.speak(b"x"))
    assert len(h.completions) == 1
    assert h.completions[0].success is True
    assert h.completions[0].message == TAXI_RIDE_LESSON.completion_message
    assert h.machine.completion is h.completions[0]
    assert h.states[-1] == IDLE


def test_invalid_tool_calls_are_skipped():
    h = Harness(reply("Hola", [
        ToolCall("show_hint", {}),
        ToolCall("delete_account", {}),
        ToolCall("finish_lesson", {"success": "yes"}),
    ]))
    asyncio.run(h.speak(b"x"))
    assert h.hints == []
    assert h.completions == []
    assert h.states[-1] == IDLE
    assert h.errors == []


def test_error_while_thinking_resolves_to_idle_with_error():
    h = Harness(NetworkError("connection reset"))
    asyncio.run(h.speak(b"x"))

    assert h.states == [IDLE, LISTENING, THINKING, ERROR, IDLE]
    assert h.machine.state == IDLE
    assert isinstance(h.machine.error, NetworkError)
    assert h.errors == [h.machine.error]

    h.machine.dismiss_error()
    assert h.machine.error is None


def test_synthesis_failure_shows_caption_and_error():
    hint_call = ToolCall("show_hint", {"hint_text": "Soy de..."})
    h = Harness(reply("¿De dónde eres?", [hint_call]), synthesis=FakeSynthesisClient(error=SynthesisFailure("tts")))
    asyncio.run(h.speak(b"x"))

    assert h.machine.state == IDLE
    assert h.captions == ["¿De dónde eres?"]
    assert isinstance(h.machine.error, SynthesisFailure)
    assert h.hints == []


def test_text_only_policy_keeps_turn_alive():
    hint_call = ToolCall("show_hint", {"hint_text": "Soy de..."})
    h = Harness(
        reply("¿De dónde eres?", [hint_call]),
        synthesis=FakeSynthesisClient(error=SynthesisFailure("tts")),
        policy="text_only",
    )
    asyncio.run(h.speak(b"x"))

    assert h.states == [IDLE, LISTENING, THINKING, IDLE]
    assert h.captions == ["¿De dónde eres?"]
    assert h.machine.hint.text == "Soy de..."
    assert h.machine.error is None


def test_capture_failure_returns_to_idle():
    h = Harness(backend=FakeCaptureBackend(permission=False))
    assert asyncio.run(h.machine.on_mic_press_start()) is False
    assert h.states == [IDLE, LISTENING, ERROR, IDLE]
    assert isinstance(h.machine.error, PermissionDenied)
    assert asyncio.run(h.machine.on_mic_press_end()) is None


def test_playback_error_returns_to_idle():
    h = Harness(reply("Hola"), player=FakePlayer(error="device lost"))
    asyncio.run(h.speak(b"x"))
    assert h.states == [IDLE, LISTENING, THINKING, SPEAKING, IDLE]
    assert h.machine.error.code == "PLAYBACK_ERROR"


def test_press_ignored_while_turn_in_flight():
    gate = asyncio.Event()
    h = Harness(reply("Hola"), gate=gate)

    async def scenario():
        turn = asyncio.ensure_future(h.speak(b"x"))
        while h.machine.state != THINKING:
            await asyncio.sleep(0)
        assert await h.machine.on_mic_press_start() is False
        assert await h.machine.on_mic_press_end() is None
        gate.set()
        await turn

    asyncio.run(scenario())
    assert h.states == [IDLE, LISTENING, THINKING, SPEAKING, IDLE]
    assert len(h.conversation.calls) == 1


def test_dispose_mid_turn_discards_late_result():
    gate = asyncio.Event()
    h = Harness(reply("Hola", [ToolCall("finish_lesson", {"success": True})]), gate=gate)

    async def scenario():
        turn = asyncio.ensure_future(h.speak(b"x"))
        while h.machine.state != THINKING:
            await asyncio.sleep(0)
        h.machine.dispose()
        gate.set()
        return await turn

    assert asyncio.run(scenario()) is None
    assert h.machine.state == IDLE
    assert h.captions == []
    assert h.completions == []
    assert h.player.played == []
    assert h.player.stop_calls == 1
    assert h.backend.streams[-1].released
    assert not h.orchestrator.is_lesson_active
    assert h.machine.is_disposed


def test_dispose_while_listening_releases_microphone():
    h = Harness()

    async def scenario():
        await h.machine.on_mic_press_start()
        h.machine.dispose()

    asyncio.run(scenario())
    assert h.backend.streams[-1].released
    assert h.backend.streams[-1].track_count == 0
    assert h.states == [IDLE, LISTENING, IDLE]
    h.machine.dispose()


def test_auth_failure_at_start_is_reported():
    h = Harness()
    h.conversation.start_error = AuthMissing("no key")
    assert h.machine.start_lesson() is False
    assert h.machine.error.code == "API_KEY_MISSING"
    assert h.machine.state == IDLE


def test_unexpected_playback_exception_is_reported_as_playback_error():
    h = Harness(reply("Hola"), reply("Otra vez"), player=FakePlayer(error=ValueError("buffer size must be a multiple")))
    asyncio.run(h.speak(b"x"))
    assert h.states == [IDLE, LISTENING, THINKING, SPEAKING, IDLE]
    assert isinstance(h.machine.error, PlaybackError)
    assert isinstance(h.machine.error.original_error, ValueError)
    assert h.errors == [h.machine.error]

    h.player.error = None
    asyncio.run(h.speak(b"y"))
    assert h.states[-3:] == [THINKING, SPEAKING, IDLE]


def test_unexpected_capture_stop_exception_fails_turn_and_allows_retry():
    backend = FakeCaptureBackend(stop_error=OSError("Stream is stopped", -9988))
    h = Harness(reply("Hola"), backend=backend)
    assert asyncio.run(h.speak(b"audio")) is None
    assert h.states == [IDLE, LISTENING, ERROR, IDLE]
    assert isinstance(h.machine.error, DeviceUnavailable)
    assert isinstance(h.machine.error.original_error, OSError)
    assert h.conversation.calls == []
    assert backend.streams[-1].released

    backend.stop_error = None
    result = asyncio.run(h.speak(b"audio"))
    assert result.text == "Hola"
    assert len(backend.streams) == 2


def test_recording_below_minimum_size_returns_to_idle_without_a_turn():
    h = Harness(reply("Hola"), min_audio_size_bytes=1024)
    assert asyncio.run(h.speak(b"O" * 200)) is None
    assert h.states == [IDLE, LISTENING, IDLE]
    assert h.conversation.calls == []
    assert h.machine.error is None

    result = asyncio.run(h.speak(b"O" * 1024))
    assert result.text == "Hola"
    assert h.conversation.calls[0][1].size == 1024
