"""
データモデル - 音声ターンで受け渡される値オブジェクト

キャプチャ層、対話クライアント、音声合成クライアント、状態マシンの間で
受け渡されるデータを、イミュータブルなdataclassとして定義します。
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple


@dataclass(frozen=True)
class AudioBlob:
    """
    バイナリ音声データとそのMIMEタイプ

    Attributes:
        data (bytes): エンコード済み音声バイト列
        mime_type (str): MIMEタイプ（例: "audio/ogg;codecs=opus", "audio/mpeg"）
    """
    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def base_mime_type(self) -> str:
        """コーデックパラメータを除いたMIMEタイプ（"audio/ogg;codecs=opus" -> "audio/ogg"）"""
        return self.mime_type.split(";", 1)[0].strip().lower()

    def __repr__(self):
        return f"AudioBlob(mime_type={self.mime_type!r}, size={self.size})"


class FinishReason(Enum):
    """
    生成停止理由

    バックエンド固有の値（Geminiの MAX_TOKENS など）はクライアント側で
    この列挙に正規化されます。
    """
    STOP = "STOP"
    TOOL_CALL = "TOOL_CALL"
    LENGTH = "LENGTH"
    SAFETY = "SAFETY"
    OTHER = "OTHER"


@dataclass(frozen=True)
class ToolCall:
    """
    バックエンドが発行したツール（関数）呼び出し

    argsは読み取り専用マッピングとして保持され、オーケストレーターは
    内容を変更せずにそのまま転送します。
    """
    name: str
    args: Mapping = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "args", MappingProxyType(dict(self.args)))

    def __eq__(self, other):
        if not isinstance(other, ToolCall):
            return NotImplemented
        return self.name == other.name and dict(self.args) == dict(other.args)

    def __hash__(self):
        return hash((self.name, tuple(sorted(self.args))))


@dataclass(frozen=True)
class DialogueResponse:
    """対話バックエンドの正規化済み応答（テキスト・ツール呼び出し・停止理由）"""
    text: str
    tool_calls: Tuple[ToolCall, ...] = ()
    finish_reason: FinishReason = FinishReason.STOP


@dataclass(frozen=True)
class TurnResult:
    """
    1ターン分の処理結果

    Attributes:
        text (str): アシスタントの応答テキスト（空文字列の場合あり）
        audio_blob (AudioBlob): 合成音声（テキストが空、または合成失敗時はNone）
        tool_calls (tuple[ToolCall]): バックエンドの順序どおりのツール呼び出し
        finish_reason (FinishReason): 停止理由
        synthesis_error (SynthesisFailure): text_onlyポリシーで合成に失敗した場合のエラー
    """
    text: str
    audio_blob: Optional[AudioBlob]
    tool_calls: Tuple[ToolCall, ...]
    finish_reason: FinishReason
    synthesis_error: Optional[Exception] = None

    @property
    def has_audio(self) -> bool:
        return self.audio_blob is not None and self.audio_blob.size > 0


@dataclass(frozen=True)
class Hint:
    """画面に表示するヒント（ターン結果に付随するが状態遷移には影響しない）"""
    text: str
    trigger: str = "show_hint"


@dataclass(frozen=True)
class LessonCompletion:
    """レッスン完了シグナル（finish_lessonツール呼び出しから生成）"""
    success: bool
    message: str = ""
