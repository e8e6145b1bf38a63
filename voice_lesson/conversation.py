"""
会話状態マシン - プッシュ・トゥ・トークのターン進行を制御

マイクボタンの押下・解放、オーケストレーターの処理結果、音声再生の終了を受けて
LessonStateを遷移させ、キャプション・ヒント・レッスン完了・エラーを
UI層へコールバックで通知します。

状態フロー:
    IDLE → LISTENING（押下）→ THINKING（解放・音声あり）→ SPEAKING（合成音声あり）→ IDLE
    LISTENING → IDLE（何も録音されなかった）
    THINKING → IDLE（応答テキストが空）
    任意の状態 → ERROR → IDLE（エラーはdismiss_error()まで保持）
"""

import asyncio
import logging
from typing import Callable, Optional, Protocol

from .audio_capture import AudioCaptureSession
from .errors import (
    CaptureError,
    DeviceUnavailable,
    InvalidToolCall,
    LessonError,
    PlaybackError,
    SynthesisFailure,
)
from .lesson import LessonOrchestrator
from .lesson_scripts import FINISH_LESSON, SHOW_HINT
from .models import AudioBlob, Hint, LessonCompletion, TurnResult
from .state_machine import LessonState, StateTransition

logger = logging.getLogger(__name__)


class AudioOutput(Protocol):
    """合成音声の再生先（audio.AudioPlayer が実装）"""

    async def play(self, blob: AudioBlob) -> None:
        ...

    def stop(self) -> None:
        ...


class ConversationStateMachine:
    """
    レッスン画面の状態マシン

    同時に進行するターンは1つだけです（LISTENINGにはIDLEからしか入れない）。
    dispose()後やターン置き換え後に届いた結果は破棄されます。

    Attributes:
        state (LessonState): 現在の状態
        hint (Hint): 表示中のヒント（次の押下で消える）
        caption (str): 直近のアシスタント発話テキスト
        error (LessonError): 表示中のエラー（dismiss_error()まで保持）
        completion (LessonCompletion): レッスン完了シグナル（未完了ならNone）
    """

    def __init__(self, orchestrator: LessonOrchestrator, capture: AudioCaptureSession, player: AudioOutput,
                 on_state_change: Optional[Callable[[LessonState, LessonState], None]] = None,
                 on_hint: Optional[Callable[[Optional[Hint]], None]] = None,
                 on_caption: Optional[Callable[[str], None]] = None,
                 on_lesson_complete: Optional[Callable[[LessonCompletion], None]] = None,
                 on_error: Optional[Callable[[LessonError], None]] = None,
                 min_audio_size_bytes: int = 0):
        """
        Args:
            orchestrator (LessonOrchestrator): ターン処理
            capture (AudioCaptureSession): 録音セッション
            player (AudioOutput): 合成音声の再生先
            on_state_change (callable, optional): (旧状態, 新状態) を受け取るコールバック
            on_hint (callable, optional): Hint（消去時はNone）を受け取るコールバック
            on_caption (callable, optional): キャプション文字列を受け取るコールバック
            on_lesson_complete (callable, optional): LessonCompletionを受け取るコールバック
            on_error (callable, optional): LessonErrorを受け取るコールバック
            min_audio_size_bytes (int): これ未満の録音は「何も録音されなかった」扱い（0なら空のみ）
        """
        self.orchestrator = orchestrator
        self.capture = capture
        self.player = player
        self.on_state_change = on_state_change
        self.on_hint = on_hint
        self.on_caption = on_caption
        self.on_lesson_complete = on_lesson_complete
        self.on_error = on_error
        self.min_audio_size_bytes = min_audio_size_bytes

        self.state = LessonState.IDLE
        self.hint: Optional[Hint] = None
        self.caption = ""
        self.error: Optional[LessonError] = None
        self.completion: Optional[LessonCompletion] = None

        self._alive = True
        self._turn_id = 0
        self._start_task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(__name__)

    @property
    def is_disposed(self) -> bool:
        return not self._alive

    def set_state(self, new_state: LessonState) -> bool:
        """
        状態遷移（検証付き）

        Returns:
            bool: 遷移した場合True

        Note:
            不正な遷移は警告ログを出力し、遷移を行いません。
        """
        if not StateTransition.is_valid_transition(self.state, new_state):
            allowed = [s.name for s in StateTransition.get_allowed_transitions(self.state)]
            self.logger.warning(
                f"Invalid state transition: {self.state.name} → {new_state.name} "
                f"(allowed: {allowed})"
            )
            return False

        old_state = self.state
        self.state = new_state
        self.logger.info(f"State transition: {old_state.name} → {new_state.name}")
        if self.on_state_change:
            self.on_state_change(old_state, new_state)
        return True

    # ================================================================================
    # レッスンのライフサイクル
    # ================================================================================

    def start_lesson(self) -> bool:
        """対話セッションを開始（失敗時はエラーを通知してFalse）"""
        if not self._alive:
            return False
        try:
            self.orchestrator.initialize_lesson()
        except LessonError as e:
            self._fail(e)
            return False
        self.completion = None
        return True

    def dismiss_error(self):
        self.error = None

    def dispose(self):
        """
        再生停止・マイク解放・セッション破棄（冪等）

        どの状態から呼ばれてもリソースを解放し、進行中のターンの結果は破棄されます。
        """
        if not self._alive:
            return
        self._alive = False
        self._turn_id += 1

        try:
            self.player.stop()
        except Exception as e:
            self.logger.warning(f"Error stopping playback during dispose: {e}")
        self.capture.dispose()
        self.orchestrator.reset_lesson()

        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()
        self._start_task = None

        if self.state != LessonState.IDLE:
            self.set_state(LessonState.IDLE)
        self.logger.info("Conversation state machine disposed")

    # ================================================================================
    # マイクボタン
    # ================================================================================

    async def on_mic_press_start(self) -> bool:
        """
        マイクボタン押下（IDLEのときのみ録音を開始）

        Returns:
            bool: 録音を開始した場合True
        """
        if not self._alive:
            return False
        if self.state != LessonState.IDLE:
            self.logger.debug(f"Mic press ignored (state={self.state.name})")
            return False

        self._set_hint(None)
        self.set_state(LessonState.LISTENING)

        self._start_task = asyncio.ensure_future(self.capture.start())
        try:
            await self._start_task
        except CaptureError as e:
            if self._alive:
                self._fail(e)
            return False
        except asyncio.CancelledError:
            if self._alive:
                raise
            return False
        return self._alive and self.state == LessonState.LISTENING

    async def on_mic_press_end(self) -> Optional[TurnResult]:
        """
        マイクボタン解放（録音停止 → ターン処理 → 再生まで待つ）

        Returns:
            TurnResult: 処理したターンの結果（ターンが成立しなかった場合None）
        """
        if not self._alive or self.state != LessonState.LISTENING:
            self.logger.debug(f"Mic release ignored (state={self.state.name})")
            return None

        # 録音開始がまだ完了していなければ待つ（失敗は押下側で処理済み）
        if self._start_task is not None and not self._start_task.done():
            await asyncio.wait({self._start_task})
        if not self._alive or self.state != LessonState.LISTENING:
            return None

        try:
            blob = await self.capture.stop()
        except CaptureError as e:
            if self._alive:
                self._fail(e)
            return None
        except Exception as e:
            if self._alive:
                self._fail(DeviceUnavailable(f"Recording failed: {e}", original_error=e))
            return None
        if not self._alive:
            return None

        if blob is None:
            self.logger.info("Nothing was recorded; returning to idle")
            self.set_state(LessonState.IDLE)
            return None
        self.capture.clear_blob()
        if blob.size < self.min_audio_size_bytes:
            self.logger.info(
                f"Recording too short ({blob.size} < {self.min_audio_size_bytes} bytes); returning to idle"
            )
            self.set_state(LessonState.IDLE)
            return None

        self._turn_id += 1
        turn_id = self._turn_id
        self.set_state(LessonState.THINKING)

        try:
            result = await self.orchestrator.process_turn(blob)
        except SynthesisFailure as e:
            if self._is_stale(turn_id):
                return None
            if e.partial_result is not None and e.partial_result.text:
                self._set_caption(e.partial_result.text)
            self._fail(e)
            return None
        except LessonError as e:
            if self._is_stale(turn_id):
                return None
            self._fail(e)
            return None

        if self._is_stale(turn_id):
            self.logger.info("Discarding turn result that arrived after teardown")
            return None

        await self._apply_result(result, turn_id)
        return result

    # ================================================================================
    # ターン結果の反映
    # ================================================================================

    async def _apply_result(self, result: TurnResult, turn_id: int):
        if result.text:
            self._set_caption(result.text)
        if result.synthesis_error is not None:
            self.logger.warning(f"Showing caption without audio: {result.synthesis_error.code}")

        hint, completion = self._dispatch_tool_calls(result)

        # ヒントはTHINKINGからの遷移と同時に届ける
        if hint is not None:
            self._set_hint(hint)

        if completion is not None:
            self.completion = completion
            self.logger.info(f"Lesson complete (success={completion.success})")
            if self.on_lesson_complete:
                self.on_lesson_complete(completion)

        if not result.has_audio:
            self.set_state(LessonState.IDLE)
            return

        self.set_state(LessonState.SPEAKING)
        try:
            await self.player.play(result.audio_blob)
        except Exception as e:
            if self._is_stale(turn_id):
                return
            error = e if isinstance(e, PlaybackError) else PlaybackError(f"Playback failed: {e}", original_error=e)
            self.logger.error(f"Playback failed: {error}")
            self._report_error(error)

        if self._is_stale(turn_id):
            return
        self.set_state(LessonState.IDLE)

    def _dispatch_tool_calls(self, result: TurnResult):
        """宣言済み契約で検証してからヒント・完了シグナルに変換（不正な呼び出しはスキップ）"""
        script = self.orchestrator.script
        hint = None
        completion = None
        for call in result.tool_calls:
            try:
                script.tools.validate(call)
            except InvalidToolCall as e:
                self.logger.warning(f"Skipping invalid tool call: {e}")
                continue

            if call.name == SHOW_HINT:
                hint = Hint(text=call.args["hint_text"], trigger=SHOW_HINT)
                self.logger.info(f"Hint: {hint.text}")
            elif call.name == FINISH_LESSON:
                completion = LessonCompletion(
                    success=call.args["success"],
                    message=script.completion_message,
                )
            else:
                self.logger.warning(f"No handler for declared tool '{call.name}'")
        return hint, completion

    # ================================================================================
    # 内部処理
    # ================================================================================

    def _is_stale(self, turn_id: int) -> bool:
        return not self._alive or turn_id != self._turn_id

    def _set_hint(self, hint: Optional[Hint]):
        if hint is None and self.hint is None:
            return
        self.hint = hint
        if self.on_hint:
            self.on_hint(hint)

    def _set_caption(self, text: str):
        self.caption = text
        if self.on_caption:
            self.on_caption(text)

    def _report_error(self, error: LessonError):
        self.error = error
        if self.on_error:
            self.on_error(error)

    def _fail(self, error: LessonError):
        """エラーを保持して ERROR → IDLE へ遷移"""
        self.logger.error(f"Turn failed in {self.state.name}: {error.code} - {error}")
        if self.state != LessonState.ERROR:
            self.set_state(LessonState.ERROR)
        self.set_state(LessonState.IDLE)
        self._report_error(error)
