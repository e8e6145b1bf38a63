"""
オーディオ入出力（PortAudio）

PyAudioを使用したマイク録音と合成音声の再生を提供します。
オプション依存（pip install "voice-lesson[audio]"）のため、
voice_lessonパッケージのインポート時には読み込まれません。

録音フロー:
    マイク(48kHz, モノラル, PCM16) → soundfileでOGG（Opus/Vorbis）にストリーミングエンコード
    → chunk_interval_msごとにエンコード済みバイト列をon_chunkへ渡す
再生フロー:
    合成音声（MP3など）→ soundfileでデコード → ハードウェアレートへ変換
    → モノラル/ステレオ変換 → 出力ストリームに書き込み

並行処理の責務:
- 録音はasyncioタスクでget_read_available()をポーリングして読み取ります
- 再生はブロッキング書き込みのため、executor（別スレッド）で実行します
- 再生停止はthreading.Eventでチャンク単位に中断します
"""

import asyncio
import errno
import io
import logging
import threading
import time
from typing import Callable, Optional

import numpy as np
import pyaudio
import soundfile as sf

from .config_models import AudioConfig
from .errors import DeviceUnavailable, PermissionDenied, PlaybackError, UnsupportedEnvironment
from .models import AudioBlob

logger = logging.getLogger(__name__)

# PortAudioエラーコード
PA_INVALID_DEVICE = -9996
PA_DEVICE_UNAVAILABLE = -9985

# 録音MIMEタイプ → soundfileの(format, subtype)
# webm/mp4コンテナはlibsndfileで書き出せないため対象外
CAPTURE_FORMATS = {
    "audio/ogg;codecs=opus": ("OGG", "OPUS"),
    "audio/ogg": ("OGG", "VORBIS"),
}

# rateパラメータのない audio/pcm の既定サンプルレート
PCM_SAMPLE_RATE = 44100


def pcm_sample_rate(mime_type: str) -> int:
    """"audio/pcm;rate=16000" のrateパラメータを取り出す（なければPCM_SAMPLE_RATE）"""
    for param in mime_type.split(";")[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "rate" and value.strip().isdigit():
            return int(value.strip())
    return PCM_SAMPLE_RATE


def _portaudio_error_code(error: OSError) -> Optional[int]:
    """PyAudioのOSError(message, code)からPortAudioエラーコードを取り出す"""
    for arg in error.args:
        if isinstance(arg, int) and arg < 0:
            return arg
    return None


def map_device_error(error: OSError, device_index=None):
    """
    デバイスオープン失敗をキャプチャエラーに変換

    Returns:
        CaptureError: PermissionDenied / DeviceUnavailable
    """
    code = _portaudio_error_code(error)
    text = str(error).lower()
    if getattr(error, "errno", None) == errno.EACCES or "permission" in text:
        return PermissionDenied(f"Microphone access denied: {error}", original_error=error)
    if code == PA_DEVICE_UNAVAILABLE or "unavailable" in text or "busy" in text:
        return DeviceUnavailable(
            f"Microphone is in use (device={device_index}): {error}",
            code="DEVICE_IN_USE",
            original_error=error,
        )
    return DeviceUnavailable(f"Microphone not available (device={device_index}): {error}", original_error=error)


def find_device_index(p: pyaudio.PyAudio, name: str, input: bool = True) -> Optional[int]:
    """デバイス名（部分一致、大文字小文字無視）からデバイスインデックスを検索"""
    key = "maxInputChannels" if input else "maxOutputChannels"
    for i in range(p.get_device_count()):
        info = p.get_device_info_by_index(i)
        if info.get(key, 0) > 0 and name.lower() in str(info.get("name", "")).lower():
            return i
    return None


def resample(frames: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """
    線形補間によるサンプルレート変換

    Args:
        frames (np.ndarray): shape=(フレーム数, チャンネル数) のint16配列
        src_rate (int): 変換元サンプルレート
        dst_rate (int): 変換先サンプルレート

    Returns:
        np.ndarray: 変換後のint16配列
    """
    if src_rate == dst_rate or len(frames) == 0:
        return frames
    n_out = int(round(len(frames) * dst_rate / src_rate))
    src_pos = np.arange(len(frames))
    dst_pos = np.linspace(0, len(frames) - 1, n_out)
    channels = [np.interp(dst_pos, src_pos, frames[:, ch]) for ch in range(frames.shape[1])]
    return np.stack(channels, axis=1).round().astype(np.int16)


def match_channels(frames: np.ndarray, channels: int) -> np.ndarray:
    """モノラル→ステレオ複製、または多チャンネル→先頭チャンネル切り出し"""
    current = frames.shape[1]
    if current == channels:
        return frames
    if current == 1:
        return np.repeat(frames, channels, axis=1)
    if channels == 1:
        return frames.mean(axis=1, keepdims=True).astype(np.int16)
    return frames[:, :channels]


# ================================================================================
# 録音
# ================================================================================

class _ChunkSink(io.RawIOBase):
    """soundfileの書き込み先。drain()で前回以降に書かれたバイト列を取り出す"""

    def __init__(self):
        self._buffer = io.BytesIO()
        self._drained = 0

    def writable(self):
        return True

    def seekable(self):
        return True

    def readable(self):
        return True

    def write(self, data):
        return self._buffer.write(data)

    def read(self, size=-1):
        return self._buffer.read(size)

    def seek(self, offset, whence=io.SEEK_SET):
        return self._buffer.seek(offset, whence)

    def tell(self):
        return self._buffer.tell()

    def drain(self) -> bytes:
        data = self._buffer.getvalue()
        chunk = data[self._drained:]
        self._drained = len(data)
        return chunk


class MicrophoneStream:
    """
    録音中のマイクストリーム

    Attributes:
        track_count (int): 開いている入力トラック数（解放後は0）
    """

    def __init__(self, stream, writer: sf.SoundFile, sink: _ChunkSink, channels: int,
                 frames_per_read: int, timeslice_ms: int, on_chunk: Callable[[bytes], None]):
        self._stream = stream
        self._writer = writer
        self._sink = sink
        self._channels = channels
        self._frames_per_read = frames_per_read
        self._timeslice = timeslice_ms / 1000.0
        self._on_chunk = on_chunk
        self._running = True
        self._task: Optional[asyncio.Task] = None
        self.track_count = 1
        self.logger = logging.getLogger(__name__)

    def start(self):
        self._task = asyncio.ensure_future(self._record_loop())

    async def _record_loop(self):
        """入力ストリームから読み取り、timeslice_msごとにエンコード済みチャンクを配信"""
        last_emit = time.monotonic()
        while self._running:
            if self._stream.get_read_available() >= self._frames_per_read:
                self._read_and_encode(self._frames_per_read)
            else:
                await asyncio.sleep(0.01)

            now = time.monotonic()
            if now - last_emit >= self._timeslice:
                self._emit()
                last_emit = now

    def _read_and_encode(self, frames: int):
        pcm = self._stream.read(frames, exception_on_overflow=False)
        samples = np.frombuffer(pcm, dtype=np.int16).reshape(-1, self._channels)
        self._writer.write(samples)

    def _emit(self):
        data = self._sink.drain()
        if data:
            self._on_chunk(data)

    async def stop(self):
        """
        残りの音声を読み取り、エンコーダーを閉じて最終チャンクを配信

        Raises:
            DeviceUnavailable: 録音中にデバイスが失われた（抜去など）
        """
        if self._stream is None:
            return
        self._running = False
        try:
            if self._task is not None:
                task, self._task = self._task, None
                await task

            available = self._stream.get_read_available()
            if available > 0:
                self._read_and_encode(available)
            self._writer.close()
            self._emit()
        except OSError as e:
            self.logger.error(f"Input stream failed while recording: {e}")
            raise map_device_error(e) from e
        finally:
            self.release()

    def release(self):
        """デバイスを即座に解放（冪等）"""
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except OSError as e:
                self.logger.warning(f"Error closing input stream: {e}")
            self._stream = None
        if not self._writer.closed:
            try:
                self._writer.close()
            except (RuntimeError, sf.SoundFileError) as e:
                self.logger.debug(f"Encoder closed with error during release: {e}")
        self.track_count = 0


class MicrophoneBackend:
    """
    PortAudioマイクのキャプチャバックエンド

    Attributes:
        config (AudioConfig): デバイス・サンプルレート設定
        p (pyaudio.PyAudio): PyAudioインスタンス
    """

    def __init__(self, config: Optional[AudioConfig] = None, p: Optional[pyaudio.PyAudio] = None):
        self.config = config or AudioConfig()
        self._owns_p = p is None
        self.p = p or pyaudio.PyAudio()
        self.logger = logging.getLogger(__name__)

    def is_supported(self) -> bool:
        return self.p.get_host_api_count() > 0

    def is_type_supported(self, mime_type: str) -> bool:
        fmt = CAPTURE_FORMATS.get(mime_type.lower())
        if fmt is None:
            return False
        container, subtype = fmt
        return subtype in sf.available_subtypes(container)

    async def request_permission(self) -> bool:
        """
        デスクトップ環境では事前の権限ダイアログがないためTrueを返す

        Note:
            OS側でアクセスが拒否された場合は、open_stream()時にPermissionDeniedになります。
        """
        return True

    def resolve_input_device(self) -> Optional[int]:
        if self.config.input_device_index is not None:
            return self.config.input_device_index
        if self.config.input_device_name:
            index = find_device_index(self.p, self.config.input_device_name, input=True)
            if index is None:
                self.logger.warning(f"Input device '{self.config.input_device_name}' not found; using default")
            return index
        return None

    async def open_stream(self, mime_type: str, timeslice_ms: int,
                          on_chunk: Callable[[bytes], None]) -> MicrophoneStream:
        """
        マイクを開いてエンコード済みチャンクの配信を開始

        Raises:
            UnsupportedEnvironment: 対応外のMIMEタイプ
            PermissionDenied, DeviceUnavailable: デバイスを開けない
        """
        fmt = CAPTURE_FORMATS.get(mime_type.lower())
        if fmt is None:
            raise UnsupportedEnvironment(f"Cannot encode {mime_type} on this device")

        device_index = self.resolve_input_device()
        channels = self.config.input_channels
        rate = self.config.hardware_sample_rate
        frames_per_read = max(1, rate * timeslice_ms // 1000 // 4)

        self.logger.info(
            f"Opening input stream: device={device_index}, ch={channels}, rate={rate}Hz, format={mime_type}"
        )
        loop = asyncio.get_running_loop()
        try:
            stream = await loop.run_in_executor(None, lambda: self.p.open(
                format=pyaudio.paInt16,
                channels=channels,
                rate=rate,
                input=True,
                frames_per_buffer=frames_per_read,
                input_device_index=device_index,
            ))
        except OSError as e:
            self.logger.error(f"Failed to open input stream (device={device_index}): {e}")
            raise map_device_error(e, device_index) from e

        sink = _ChunkSink()
        container, subtype = fmt
        try:
            writer = sf.SoundFile(sink, mode="w", samplerate=rate, channels=channels,
                                  format=container, subtype=subtype)
        except (RuntimeError, sf.SoundFileError) as e:
            stream.close()
            raise UnsupportedEnvironment(f"Encoder for {mime_type} unavailable: {e}", original_error=e) from e

        mic = MicrophoneStream(stream, writer, sink, channels, frames_per_read, timeslice_ms, on_chunk)
        mic.start()
        return mic

    def terminate(self):
        if self._owns_p:
            self.p.terminate()


# ================================================================================
# 再生
# ================================================================================

class AudioPlayer:
    """
    合成音声の再生

    play()は再生完了まで待機します。stop()で再生中の音声をチャンク単位で中断します。
    """

    def __init__(self, config: Optional[AudioConfig] = None, p: Optional[pyaudio.PyAudio] = None,
                 frames_per_write: int = 1024):
        self.config = config or AudioConfig()
        self._owns_p = p is None
        self.p = p or pyaudio.PyAudio()
        self.frames_per_write = frames_per_write
        self._stop_event = threading.Event()
        self.logger = logging.getLogger(__name__)

    def decode(self, blob: AudioBlob):
        """
        音声をPCM16フレームにデコード

        Returns:
            tuple: (shape=(フレーム数, チャンネル数)のint16配列, サンプルレート)

        Raises:
            PlaybackError: デコードできない形式
        """
        if blob.base_mime_type == "audio/pcm":
            try:
                frames = np.frombuffer(blob.data, dtype=np.int16).reshape(-1, 1)
            except ValueError as e:
                raise PlaybackError(f"Malformed PCM audio ({blob.size} bytes): {e}", original_error=e) from e
            return frames, pcm_sample_rate(blob.mime_type)
        try:
            frames, rate = sf.read(io.BytesIO(blob.data), dtype="int16", always_2d=True)
        except (RuntimeError, sf.SoundFileError) as e:
            raise PlaybackError(f"Cannot decode {blob.mime_type} audio: {e}", original_error=e) from e
        return frames, rate

    async def play(self, blob: AudioBlob):
        """
        音声を再生（完了またはstop()まで待機）

        Raises:
            PlaybackError: デコード失敗、出力デバイスを開けない
        """
        frames, rate = self.decode(blob)
        frames = resample(frames, rate, self.config.hardware_sample_rate)
        frames = match_channels(frames, self.config.output_channels)

        self._stop_event.clear()
        loop = asyncio.get_running_loop()
        self.logger.debug(f"Playing {len(frames)} frames ({blob.mime_type}, {rate}Hz)")
        await loop.run_in_executor(None, self._write_frames, frames)

    def _write_frames(self, frames: np.ndarray):
        try:
            stream = self.p.open(
                format=pyaudio.paInt16,
                channels=self.config.output_channels,
                rate=self.config.hardware_sample_rate,
                output=True,
                output_device_index=self.config.output_device_index,
                frames_per_buffer=self.frames_per_write * 4,
            )
        except OSError as e:
            self.logger.error(f"Failed to open output stream (device={self.config.output_device_index}): {e}")
            raise PlaybackError(f"Audio output device not available: {e}", original_error=e) from e

        try:
            for start in range(0, len(frames), self.frames_per_write):
                if self._stop_event.is_set():
                    self.logger.debug("Playback interrupted")
                    break
                stream.write(frames[start:start + self.frames_per_write].tobytes())
        except OSError as e:
            raise PlaybackError(f"Audio write error: {e}", original_error=e) from e
        finally:
            stream.stop_stream()
            stream.close()

    def stop(self):
        self._stop_event.set()

    def terminate(self):
        self.stop()
        if self._owns_p:
            self.p.terminate()
