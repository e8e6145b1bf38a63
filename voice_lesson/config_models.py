"""
設定モデル - Pydanticベースの型安全な設定管理

音声入出力、対話バックエンド（Gemini）、音声合成（ElevenLabs）、レッスン進行の
設定を型安全に管理します。環境変数（.envファイル）から自動的に読み込まれます。
ネストされた値は "__" 区切りで上書きできます（例: CONVERSATION__MODEL=gemini-2.0-flash）。
"""

import logging
import os
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# .env.example のままの値はキー未設定として扱う
PLACEHOLDER_API_KEYS = frozenset({"", "your_api_key_here"})


def usable_api_key(value: Optional[str]) -> Optional[str]:
    """空文字列・プレースホルダーを除いた有効なAPIキーを返す（なければNone）"""
    if value is None:
        return None
    value = value.strip()
    if value in PLACEHOLDER_API_KEYS:
        return None
    return value


class AudioConfig(BaseModel):
    """
    音声設定

    マイク録音とスピーカー再生に関する設定を管理します。

    Attributes:
        sample_rate: 録音エンコード時のサンプルレート
        hardware_sample_rate: ハードウェアを開くサンプルレート（48kHz）
        input_channels: 入力チャンネル数（モノラル: 1）
        output_channels: 出力チャンネル数（ステレオ: 2）
        chunk_interval_ms: 録音チャンク配信間隔（ミリ秒）
        input_device_index: 入力デバイスインデックス
        output_device_index: 出力デバイスインデックス
        input_device_name: 入力デバイス名（フォールバック検索用）
        output_device_name: 出力デバイス名（フォールバック検索用）
        mime_type_preference: 録音フォーマットの優先順位
        min_audio_size_bytes: これ未満の録音は送信せずに破棄する（誤タップ対策）
    """
    sample_rate: int = Field(default=48000, description="録音サンプルレート")
    hardware_sample_rate: int = Field(default=48000, description="ハードウェアサンプルレート")
    input_channels: int = Field(default=1, description="入力チャンネル数（モノラル）")
    output_channels: int = Field(default=2, description="出力チャンネル数（ステレオ）")
    chunk_interval_ms: int = Field(default=100, description="チャンク配信間隔（ミリ秒）")
    min_audio_size_bytes: int = Field(default=1024, ge=0, description="送信する録音の最小サイズ（バイト）")
    input_device_index: Optional[int] = Field(default=None, description="入力デバイスインデックス")
    output_device_index: Optional[int] = Field(default=None, description="出力デバイスインデックス")
    input_device_name: Optional[str] = Field(default=None, description="入力デバイス名")
    output_device_name: Optional[str] = Field(default=None, description="出力デバイス名")
    mime_type_preference: Tuple[str, ...] = Field(
        default=(
            "audio/webm;codecs=opus",
            "audio/webm",
            "audio/ogg;codecs=opus",
            "audio/ogg",
            "audio/mp4",
        ),
        description="録音MIMEタイプの優先順位",
    )


class ConversationAPIConfig(BaseModel):
    """
    対話バックエンド（Gemini generateContent）設定

    Attributes:
        model: 使用するモデル名
        base_url: REST APIのベースURL
        temperature: 生成温度
        max_output_tokens: 最大出力トークン数
        max_audio_size_mb: 送信できる音声の最大サイズ（MB）
        supported_audio_formats: 送信可能な音声MIMEタイプ
        request_timeout: 1リクエストあたりのタイムアウト（秒）
        max_request_size_mb: 直列化したリクエスト全体の上限（MB、履歴を含む）
        max_history_turns: 保持する履歴のターン数（user/modelの組）
    """
    model: str = Field(default="gemini-2.0-flash", description="Geminiモデル")
    base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini REST APIベースURL",
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="生成温度")
    max_output_tokens: int = Field(default=150, gt=0, description="最大出力トークン数")
    max_audio_size_mb: float = Field(default=20.0, gt=0, description="音声サイズ上限（MB）")
    supported_audio_formats: Tuple[str, ...] = Field(
        default=(
            "audio/webm;codecs=opus",
            "audio/webm",
            "audio/ogg;codecs=opus",
            "audio/ogg",
            "audio/mp4",
            "audio/mpeg",
            "audio/mp3",
            "audio/wav",
        ),
        description="送信可能な音声フォーマット",
    )
    request_timeout: float = Field(default=30.0, gt=0, description="リクエストタイムアウト（秒）")
    max_request_size_mb: float = Field(default=20.0, gt=0, description="リクエストサイズ上限（MB）")
    max_history_turns: int = Field(default=25, ge=0, description="履歴の最大ターン数")

    @property
    def max_audio_size_bytes(self) -> int:
        return int(self.max_audio_size_mb * 1024 * 1024)

    @property
    def max_request_size_bytes(self) -> int:
        return int(self.max_request_size_mb * 1024 * 1024)


class VoiceProfile(BaseModel):
    """
    音声合成のボイス設定

    純粋な設定値で、合成呼び出しごとに独立して渡されます。
    """
    model_config = {"frozen": True}

    voice_id: str = Field(default="pNInz6obpgDQGcFmaJgB", description="ElevenLabsボイスID")
    model_id: str = Field(default="eleven_multilingual_v2", description="合成モデルID")
    stability: float = Field(default=0.5, ge=0.0, le=1.0)
    similarity_boost: float = Field(default=0.75, ge=0.0, le=1.0)
    style: float = Field(default=0.0, ge=0.0, le=1.0)
    use_speaker_boost: bool = Field(default=True)

    def voice_settings(self) -> dict:
        return {
            "stability": self.stability,
            "similarity_boost": self.similarity_boost,
            "style": self.style,
            "use_speaker_boost": self.use_speaker_boost,
        }


class SpeechSynthesisConfig(BaseModel):
    """
    音声合成（ElevenLabs stream-input WebSocket）設定

    Attributes:
        url: WebSocket URLテンプレート（{voice_id} を置換）
        output_format: 出力フォーマット（mp3_44100_128 など）
        request_timeout: 1回の合成全体のタイムアウト（秒）
        voice: デフォルトのボイス設定
    """
    url: str = Field(
        default="wss://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream-input",
        description="stream-input WebSocket URL",
    )
    output_format: str = Field(default="mp3_44100_128", description="出力フォーマット")
    request_timeout: float = Field(default=30.0, gt=0, description="合成タイムアウト（秒）")
    voice: VoiceProfile = Field(default_factory=VoiceProfile, description="ボイス設定")


class LessonConfig(BaseModel):
    """
    レッスン進行設定

    Attributes:
        synthesis_failure_policy: 音声合成失敗時の扱い
            - "fail_turn": ターン全体を失敗として扱う
            - "text_only": テキスト（キャプション）のみで続行する
    """
    synthesis_failure_policy: Literal["fail_turn", "text_only"] = Field(
        default="fail_turn", description="音声合成失敗時のポリシー"
    )


class AppConfig(BaseSettings):
    """
    アプリケーション全体設定

    環境変数と .env ファイルから読み込まれます。APIキーは任意項目で、
    未設定の場合はセッション開始・合成時に AuthMissing として報告されます。

    Attributes:
        gemini_api_key: Gemini APIキー
        elevenlabs_api_key: ElevenLabs APIキー
        audio: 音声設定
        conversation: 対話バックエンド設定
        synthesis: 音声合成設定
        lesson: レッスン進行設定
        log_dir: ログ出力ディレクトリ
        log_level: ログレベル名

    Examples:
        >>> from voice_lesson.config_models import AppConfig
        >>> config = AppConfig()
        >>> print(config.conversation.model)
        gemini-2.0-flash
        >>> print(config.audio.chunk_interval_ms)
        100
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    # APIキー
    gemini_api_key: Optional[str] = Field(default=None, description="Gemini APIキー")
    elevenlabs_api_key: Optional[str] = Field(default=None, description="ElevenLabs APIキー")

    # ネストされた設定
    audio: AudioConfig = Field(default_factory=AudioConfig, description="音声設定")
    conversation: ConversationAPIConfig = Field(default_factory=ConversationAPIConfig, description="対話API設定")
    synthesis: SpeechSynthesisConfig = Field(default_factory=SpeechSynthesisConfig, description="音声合成設定")
    lesson: LessonConfig = Field(default_factory=LessonConfig, description="レッスン設定")

    # アプリケーション設定
    log_dir: str = Field(default="logs", description="ログ出力ディレクトリ")
    log_level: str = Field(default="INFO", description="ログレベル")

    def __init__(self, **data):
        super().__init__(**data)
        # 従来のフラットな環境変数（INPUT_DEVICE_INDEX など）も受け付ける
        self._load_audio_config_from_env()

    @property
    def has_gemini_key(self) -> bool:
        return usable_api_key(self.gemini_api_key) is not None

    @property
    def has_elevenlabs_key(self) -> bool:
        return usable_api_key(self.elevenlabs_api_key) is not None

    def _load_audio_config_from_env(self):
        """環境変数から音声デバイス設定を読み込み"""
        for env_name, attr in (("INPUT_DEVICE_INDEX", "input_device_index"),
                               ("OUTPUT_DEVICE_INDEX", "output_device_index")):
            raw = os.getenv(env_name)
            if not raw:
                continue
            try:
                setattr(self.audio, attr, int(raw))
            except ValueError:
                logger.warning(f"Ignoring non-integer {env_name}={raw!r}")

        if os.getenv("INPUT_DEVICE_NAME"):
            self.audio.input_device_name = os.getenv("INPUT_DEVICE_NAME")

        if os.getenv("OUTPUT_DEVICE_NAME"):
            self.audio.output_device_name = os.getenv("OUTPUT_DEVICE_NAME")
