"""
レッスンオーケストレーター

1つのレッスンスクリプトを保持し、録音音声1件を「対話バックエンド → 音声合成」の
順に処理して TurnResult を返します。対話クライアントと合成クライアントは
コンストラクタで注入され、UIへの副作用（ヒント表示・画面遷移）は一切行いません。

処理フロー（process_turn）:
    1. セッション確認（未初期化なら通信せずに SessionNotInitialized）
    2. send_audio_turn() でテキストとツール呼び出しを取得
    3. テキストが空でなければ synthesize() で音声を合成
    4. ツール呼び出しをそのままの順序・内容で返す
"""

import asyncio
import logging
from typing import Optional, Protocol

from .config_models import VoiceProfile
from .errors import (
    InvalidBackendResponse,
    LessonError,
    NetworkError,
    SessionNotInitialized,
    SynthesisFailure,
)
from .lesson_scripts import LessonScript
from .models import AudioBlob, DialogueResponse, TurnResult

logger = logging.getLogger(__name__)

FAIL_TURN = "fail_turn"
TEXT_ONLY = "text_only"
SYNTHESIS_FAILURE_POLICIES = (FAIL_TURN, TEXT_ONLY)


class ConversationSessionClient(Protocol):
    def start_session(self, persona_instruction: str, tool_schema): ...

    async def send_audio_turn(self, session, blob: AudioBlob) -> DialogueResponse: ...

    def end_session(self, session) -> None: ...


class SpeechSynthesisClient(Protocol):
    async def synthesize(self, text: str, voice_profile: Optional[VoiceProfile] = None) -> AudioBlob: ...


def wrap_backend_error(error: BaseException, context: str) -> LessonError:
    """分類外の例外をエラー分類にラップ（OS・タイムアウト系はNetworkError）"""
    if isinstance(error, LessonError):
        return error
    if isinstance(error, (OSError, asyncio.TimeoutError)):
        return NetworkError(f"{context} failed: {error}", original_error=error)
    return InvalidBackendResponse(f"{context} failed: {error!r}", original_error=error)


def raise_wrapped(error: LessonError, source: BaseException):
    """ラップ済みエラーを送出（元の例外がそのまま分類済みなら再送出のみ）"""
    if error is source:
        raise error
    raise error from source


class LessonOrchestrator:
    """
    レッスン1件分のターン処理

    Attributes:
        script (LessonScript): ペルソナ指示・ツール契約・レッスン文言
        voice_profile (VoiceProfile): 合成時のボイス設定
        synthesis_failure_policy (str): "fail_turn" または "text_only"
    """

    def __init__(self, script: LessonScript, conversation_client: ConversationSessionClient,
                 synthesis_client: SpeechSynthesisClient, voice_profile: Optional[VoiceProfile] = None,
                 synthesis_failure_policy: str = FAIL_TURN):
        if synthesis_failure_policy not in SYNTHESIS_FAILURE_POLICIES:
            raise ValueError(
                f"synthesis_failure_policy must be one of {SYNTHESIS_FAILURE_POLICIES}, "
                f"got {synthesis_failure_policy!r}"
            )
        self.script = script
        self.conversation_client = conversation_client
        self.synthesis_client = synthesis_client
        self.voice_profile = voice_profile
        self.synthesis_failure_policy = synthesis_failure_policy
        self.session = None
        self.logger = logging.getLogger(__name__)

    @property
    def is_lesson_active(self) -> bool:
        return self.session is not None and getattr(self.session, "active", True)

    # ================================================================================
    # レッスンのライフサイクル
    # ================================================================================

    def initialize_lesson(self):
        """
        対話セッションを開始（既存セッションは破棄して置き換え）

        Raises:
            AuthMissing: APIキー未設定
        """
        if self.session is not None:
            self.reset_lesson()

        try:
            self.session = self.conversation_client.start_session(
                self.script.persona_instruction,
                self.script.tools.to_schema(),
            )
        except LessonError:
            raise
        except Exception as e:
            raise wrap_backend_error(e, "Session start") from e
        self.logger.info(
            f"Lesson initialized: {self.script.lesson_id} (tools={list(self.script.tools.names)})"
        )
        return self.session

    def reset_lesson(self):
        """セッションを破棄（冪等、例外を送出しない）"""
        session, self.session = self.session, None
        if session is None:
            return
        try:
            self.conversation_client.end_session(session)
        except Exception as e:
            self.logger.warning(f"Error while ending conversation session: {e}")
        self.logger.info(f"Lesson reset: {self.script.lesson_id}")

    # ================================================================================
    # ターン処理
    # ================================================================================

    async def process_turn(self, blob: AudioBlob) -> TurnResult:
        """
        録音音声1件を処理

        Args:
            blob (AudioBlob): 録音音声

        Returns:
            TurnResult: 応答テキスト・合成音声・ツール呼び出し・停止理由

        Raises:
            SessionNotInitialized: initialize_lesson()前、またはセッション無効化後
            SynthesisFailure: fail_turnポリシーで合成に失敗（partial_resultにテキストとツール呼び出し）
            LessonError: その他の対話・合成エラー（生の例外は送出しない）
        """
        if not self.is_lesson_active:
            raise SessionNotInitialized("Lesson has not been initialized")

        try:
            response = await self.conversation_client.send_audio_turn(self.session, blob)
        except Exception as e:
            error = wrap_backend_error(e, "Dialogue request")
            self.logger.error(f"Dialogue turn failed: {error.code} - {error}")
            raise_wrapped(error, e)

        tool_calls = tuple(response.tool_calls)
        self.logger.debug(
            f"Dialogue response: text={response.text!r} tool_calls={[c.name for c in tool_calls]} "
            f"finish={response.finish_reason.value}"
        )

        if not response.text.strip():
            return TurnResult(
                text=response.text,
                audio_blob=None,
                tool_calls=tool_calls,
                finish_reason=response.finish_reason,
            )

        try:
            audio_blob = await self.synthesis_client.synthesize(response.text, self.voice_profile)
        except Exception as e:
            error = wrap_backend_error(e, "Speech synthesis")
            partial = TurnResult(
                text=response.text,
                audio_blob=None,
                tool_calls=tool_calls,
                finish_reason=response.finish_reason,
                synthesis_error=error,
            )
            if self.synthesis_failure_policy == TEXT_ONLY:
                self.logger.warning(f"Speech synthesis failed, continuing with text only: {error.code} - {error}")
                return partial
            self.logger.error(f"Speech synthesis failed: {error.code} - {error}")
            if isinstance(error, SynthesisFailure):
                error.partial_result = partial
                raise_wrapped(error, e)
            raise SynthesisFailure(
                f"Speech synthesis failed: {error}",
                code=error.code,
                original_error=error,
                partial_result=partial,
            ) from e

        return TurnResult(
            text=response.text,
            audio_blob=audio_blob,
            tool_calls=tool_calls,
            finish_reason=response.finish_reason,
        )
