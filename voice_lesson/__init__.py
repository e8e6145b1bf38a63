"""
voice_lesson - 音声レッスンの会話パイプライン

学習者の発話を録音し、マルチモーダル対話バックエンド（Gemini）で応答とツール呼び出しを
生成し、音声合成（ElevenLabs）で読み上げるまでを、ターン制の状態マシンで制御します。

PortAudioを使う録音・再生（voice_lesson.audio）はオプション依存のため、
ここではインポートしません。
"""

from .audio_capture import AudioCaptureSession, MIME_TYPE_PREFERENCE
from .config_models import AppConfig, VoiceProfile
from .conversation import ConversationStateMachine
from .errors import LessonError
from .gemini_client import GeminiConversationClient
from .lesson import LessonOrchestrator
from .lesson_scripts import TAXI_RIDE_LESSON, LessonScript
from .models import AudioBlob, DialogueResponse, FinishReason, Hint, LessonCompletion, ToolCall, TurnResult
from .state_machine import LessonState, StateTransition
from .tts_client import ElevenLabsSynthesisClient

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "AudioBlob",
    "AudioCaptureSession",
    "ConversationStateMachine",
    "DialogueResponse",
    "ElevenLabsSynthesisClient",
    "FinishReason",
    "GeminiConversationClient",
    "Hint",
    "LessonCompletion",
    "LessonError",
    "LessonOrchestrator",
    "LessonScript",
    "LessonState",
    "MIME_TYPE_PREFERENCE",
    "StateTransition",
    "TAXI_RIDE_LESSON",
    "ToolCall",
    "TurnResult",
    "VoiceProfile",
]
