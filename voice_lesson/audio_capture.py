"""
音声キャプチャ - プッシュ・トゥ・トークの録音セッション管理

CaptureBackend（マイクデバイスの抽象）から一定間隔でエンコード済みチャンクを受け取り、
録音停止時に1つのAudioBlobへまとめます。

録音状態:
- idle: 録音していない
- starting: 権限確認・ストリーム起動中
- recording: チャンク受信中
- stopped: 停止済み（blobを保持）
"""

import logging
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence

from .errors import CaptureError, PermissionDenied, UnsupportedEnvironment
from .models import AudioBlob

logger = logging.getLogger(__name__)

MIME_TYPE_PREFERENCE = (
    "audio/webm;codecs=opus",
    "audio/webm",
    "audio/ogg;codecs=opus",
    "audio/ogg",
    "audio/mp4",
)

DEFAULT_CHUNK_INTERVAL_MS = 100


# ================================================================================
# バックエンドインターフェース
# ================================================================================

class CaptureStream(Protocol):
    """起動済みの録音ストリーム"""

    track_count: int

    async def stop(self) -> None:
        """残りのデータをon_chunkへ流し切ってからデバイスを解放"""
        ...

    def release(self) -> None:
        """フラッシュせずに即座にデバイスを解放（冪等）"""
        ...


class CaptureBackend(Protocol):
    """マイクデバイスの抽象（audio.MicrophoneBackend が実装）"""

    def is_supported(self) -> bool:
        ...

    def is_type_supported(self, mime_type: str) -> bool:
        ...

    async def request_permission(self) -> bool:
        ...

    async def open_stream(self, mime_type: str, timeslice_ms: int,
                          on_chunk: Callable[[bytes], None]) -> CaptureStream:
        ...


class RecordingStatus(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPED = "stopped"


def negotiate_mime_type(backend: CaptureBackend,
                        preference: Sequence[str] = MIME_TYPE_PREFERENCE) -> Optional[str]:
    """優先順位リストから最初に対応しているMIMEタイプを選ぶ"""
    for mime_type in preference:
        if backend.is_type_supported(mime_type):
            return mime_type
    return None


class AudioCaptureSession:
    """
    録音セッション

    同時に録音できるのは1つだけです。start()/stop()の重複呼び出しは無視されます。
    dispose()後に届いたチャンクや権限確認結果は破棄されます。

    Attributes:
        status (RecordingStatus): 現在の録音状態
        mime_type (str): start()時に決定したMIMEタイプ
        blob (AudioBlob): 直近のstop()で生成された音声（clear_blob()で破棄）
    """

    def __init__(self, backend: CaptureBackend,
                 chunk_interval_ms: int = DEFAULT_CHUNK_INTERVAL_MS,
                 mime_type_preference: Sequence[str] = MIME_TYPE_PREFERENCE):
        self.logger = logging.getLogger(__name__)
        self.backend = backend
        self.chunk_interval_ms = chunk_interval_ms
        self.mime_type_preference = tuple(mime_type_preference)

        self.status = RecordingStatus.IDLE
        self.mime_type: Optional[str] = None
        self.blob: Optional[AudioBlob] = None

        self._chunks: List[bytes] = []
        self._stream: Optional[CaptureStream] = None
        self._permission: Optional[bool] = None
        self._alive = True

    @property
    def is_recording(self) -> bool:
        return self.status == RecordingStatus.RECORDING

    @property
    def is_disposed(self) -> bool:
        return not self._alive

    # ================================================================================
    # 録音制御
    # ================================================================================

    async def start(self):
        """
        録音を開始

        初回のみマイク権限を確認し（結果はキャッシュ）、MIMEタイプを決定して
        ストリームを開きます。録音中・起動中の呼び出しは何もしません。

        Raises:
            PermissionDenied: 権限が拒否された
            DeviceUnavailable: デバイスが見つからない・使用中
            UnsupportedEnvironment: 録音APIまたは対応フォーマットがない
        """
        if not self._alive:
            self.logger.warning("start() called on a disposed capture session")
            return
        if self.status in (RecordingStatus.STARTING, RecordingStatus.RECORDING):
            self.logger.debug(f"start() ignored (status={self.status.value})")
            return

        self.status = RecordingStatus.STARTING
        self._chunks = []
        self.blob = None

        try:
            if not self.backend.is_supported():
                raise UnsupportedEnvironment("Audio recording is not supported in this environment")

            if self._permission is None:
                granted = await self.backend.request_permission()
                if not self._alive:
                    return
                self._permission = bool(granted)
            if not self._permission:
                raise PermissionDenied("Microphone permission denied")

            mime_type = negotiate_mime_type(self.backend, self.mime_type_preference)
            if mime_type is None:
                raise UnsupportedEnvironment(
                    f"None of the preferred audio formats are supported: {list(self.mime_type_preference)}"
                )

            stream = await self.backend.open_stream(mime_type, self.chunk_interval_ms, self._on_chunk)
            if not self._alive:
                # 起動中にdispose()された
                stream.release()
                return

            self._stream = stream
            self.mime_type = mime_type
            self.status = RecordingStatus.RECORDING
            self.logger.info(f"Recording started (mime_type={mime_type}, tracks={stream.track_count})")

        except CaptureError as e:
            self.logger.error(f"Failed to start recording: {e.code} - {e}")
            self._release_stream()
            self.status = RecordingStatus.IDLE
            raise

    async def stop(self) -> Optional[AudioBlob]:
        """
        録音を停止してblobを生成

        Returns:
            AudioBlob: チャンクを連結した音声（何も録音されていなければNone）
        """
        if self.status != RecordingStatus.RECORDING or self._stream is None:
            self.logger.debug(f"stop() ignored (status={self.status.value})")
            return None

        stream = self._stream
        try:
            await stream.stop()
        except Exception as e:
            # 失敗した録音は破棄し、次のstart()を受け付ける
            self.logger.error(f"Failed to stop recording: {e}")
            self.status = RecordingStatus.IDLE
            self._chunks = []
            raise
        finally:
            self._stream = None
            stream.release()

        if not self._alive:
            return None

        self.status = RecordingStatus.STOPPED
        data = b"".join(self._chunks)
        self._chunks = []

        if not data:
            self.logger.info("Recording stopped with no audio captured")
            self.blob = None
            return None

        self.blob = AudioBlob(data=data, mime_type=self.mime_type)
        self.logger.info(f"Recording stopped: {self.blob.size} bytes ({self.mime_type})")
        return self.blob

    def clear_blob(self):
        """消費済みのblobを破棄"""
        self.blob = None

    def dispose(self):
        """全トラックを解放し、以降の遅延結果を破棄する（冪等）"""
        if not self._alive:
            return
        self._alive = False
        self._release_stream()
        self._chunks = []
        self.blob = None
        self.status = RecordingStatus.IDLE
        self.logger.info("Capture session disposed")

    # ================================================================================
    # 内部処理
    # ================================================================================

    def _on_chunk(self, data: bytes):
        if not self._alive or not data:
            return
        if self.status not in (RecordingStatus.STARTING, RecordingStatus.RECORDING):
            return
        self._chunks.append(bytes(data))
        self.logger.debug(f"Captured chunk: {len(data)} bytes")

    def _release_stream(self):
        if self._stream is not None:
            try:
                self._stream.release()
            finally:
                self._stream = None

