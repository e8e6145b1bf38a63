#!/usr/bin/env python3
"""
音声レッスンアプリケーション（コンソール版）

タクシー運転手ホルヘとのスペイン語ロールプレイを、キーボード操作の
プッシュ・トゥ・トークで行います。

操作:
- Enter: 録音開始 / 録音終了（終了するとホルヘが応答します）
- q + Enter: 終了

動作フロー:
1. .envから設定を読み込み、ロギングを初期化
2. マイク・スピーカー、Gemini、ElevenLabsのクライアントを準備
3. レッスンセッションを開始
4. Enterで録音 → Enterで送信 → 応答テキストを表示して音声を再生
5. finish_lessonを受け取ったら完了メッセージを表示
"""

import asyncio
import logging
import sys

from dotenv import load_dotenv

from voice_lesson.audio_capture import AudioCaptureSession
from voice_lesson.config_models import AppConfig
from voice_lesson.conversation import ConversationStateMachine
from voice_lesson.gemini_client import GeminiConversationClient
from voice_lesson.lesson import LessonOrchestrator
from voice_lesson.lesson_scripts import TAXI_RIDE_LESSON
from voice_lesson.logging_config import setup_logging
from voice_lesson.state_machine import LessonState
from voice_lesson.tts_client import ElevenLabsSynthesisClient

logger = logging.getLogger(__name__)


class LessonApp:
    """
    コンソールレッスン管理クラス

    Attributes:
        config (AppConfig): アプリケーション設定
        machine (ConversationStateMachine): レッスン状態マシン
    """

    def __init__(self, config: AppConfig):
        # オプション依存（PyAudio / soundfile）はここで読み込む
        import pyaudio
        from voice_lesson.audio import AudioPlayer, MicrophoneBackend

        self.config = config
        self.logger = logging.getLogger(__name__)

        self.p = pyaudio.PyAudio()
        self.microphone = MicrophoneBackend(config.audio, p=self.p)
        self.player = AudioPlayer(config.audio, p=self.p)

        self.conversation_client = GeminiConversationClient(config.gemini_api_key, config.conversation)
        synthesis_client = ElevenLabsSynthesisClient(config.elevenlabs_api_key, config.synthesis)
        orchestrator = LessonOrchestrator(
            TAXI_RIDE_LESSON,
            self.conversation_client,
            synthesis_client,
            voice_profile=config.synthesis.voice,
            synthesis_failure_policy=config.lesson.synthesis_failure_policy,
        )
        capture = AudioCaptureSession(
            self.microphone,
            chunk_interval_ms=config.audio.chunk_interval_ms,
            mime_type_preference=config.audio.mime_type_preference,
        )
        self.machine = ConversationStateMachine(
            orchestrator,
            capture,
            self.player,
            on_state_change=self.handle_state_change,
            on_hint=self.handle_hint,
            on_caption=self.handle_caption,
            on_lesson_complete=self.handle_lesson_complete,
            on_error=self.handle_error,
            min_audio_size_bytes=config.audio.min_audio_size_bytes,
        )

    # ================================================================================
    # 表示コールバック
    # ================================================================================

    def handle_state_change(self, old_state, new_state):
        labels = {
            LessonState.LISTENING: "🎙  Listening... (Enter to send)",
            LessonState.THINKING: "…  Jorge is thinking",
            LessonState.SPEAKING: "🔊 Jorge is speaking",
        }
        if new_state in labels:
            print(labels[new_state])

    def handle_hint(self, hint):
        if hint is not None:
            print(f"💡 Hint: {hint.text}")

    def handle_caption(self, text):
        print(f"Jorge: {text}")

    def handle_lesson_complete(self, completion):
        print(f"\n✅ {completion.message}\n")

    def handle_error(self, error):
        print(f"⚠️  {error.user_message}")

    # ================================================================================
    # メインループ
    # ================================================================================

    async def run(self):
        print(f"=== {TAXI_RIDE_LESSON.title} ===")
        print("Press Enter to start talking, Enter again to send. Type 'q' to quit.")
        print("Try saying: " + " / ".join(TAXI_RIDE_LESSON.example_phrases))

        if not self.machine.start_lesson():
            return

        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            command = line.strip().lower()
            if not line or command == "q":
                break

            if self.machine.error is not None:
                self.machine.dismiss_error()

            if self.machine.state == LessonState.IDLE:
                await self.machine.on_mic_press_start()
            elif self.machine.state == LessonState.LISTENING:
                await self.machine.on_mic_press_end()
                if self.machine.completion is not None:
                    break

    async def cleanup(self):
        """マイク・スピーカー・HTTPクライアントを解放"""
        self.logger.info("Cleaning up lesson app...")
        self.machine.dispose()
        await self.conversation_client.aclose()
        self.player.stop()
        self.p.terminate()
        self.logger.info("Lesson app exited")


async def main():
    load_dotenv()
    config = AppConfig()
    setup_logging(config.log_dir, config.log_level)

    try:
        app = LessonApp(config)
    except ImportError as e:
        logger.error(f"Audio libraries are not installed ({e}); install with: pip install 'voice-lesson[audio]'")
        return

    try:
        await app.run()
    finally:
        await app.cleanup()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
    except Exception as e:
        logger.error(f"Application error: {e}", exc_info=True)
