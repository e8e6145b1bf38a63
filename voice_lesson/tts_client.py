"""
ElevenLabs音声合成クライアント

ElevenLabs の stream-input WebSocket API でテキストを音声に変換します。
合成呼び出しごとに独立した接続を開き、ボイス設定・テキスト・終端マーカーを送信して、
Base64の音声フレームを isFinal まで受信します。

送信イベント:
    {"text": " ", "voice_settings": {...}}   初期化（ボイス設定）
    {"text": "Hola, ..."}                    合成テキスト
    {"text": ""}                             終端マーカー
受信イベント:
    {"audio": "<base64>", "isFinal": false}
    {"isFinal": true}
"""

import asyncio
import json
import logging
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from .codec import decode_audio
from .config_models import SpeechSynthesisConfig, VoiceProfile, usable_api_key
from .errors import (
    AuthMissing,
    InvalidBackendResponse,
    NetworkError,
    RateLimited,
    SynthesisFailure,
)
from .models import AudioBlob

logger = logging.getLogger(__name__)


def output_mime_type(output_format: str) -> str:
    """
    ElevenLabsのoutput_format（mp3_44100_128など）をMIMEタイプに変換

    ヘッダーのないPCMはサンプルレートをrateパラメータで運ぶ（pcm_16000 → "audio/pcm;rate=16000"）
    """
    codec, _, rest = output_format.lower().partition("_")
    rate = rest.split("_", 1)[0]
    if codec == "pcm" and rate.isdigit():
        return f"audio/pcm;rate={rate}"
    return {
        "mp3": "audio/mpeg",
        "pcm": "audio/pcm",
        "ulaw": "audio/basic",
        "opus": "audio/ogg;codecs=opus",
    }.get(codec, "application/octet-stream")


_RATE_LIMIT_TOKENS = ("quota", "rate limit", "rate_limit", "too many requests")
_AUTH_TOKENS = ("api key", "api_key", "unauthorized", "authentication")


def _classify_server_error(text: str):
    lowered = text.lower()
    if any(token in lowered for token in _RATE_LIMIT_TOKENS):
        return RateLimited
    if any(token in lowered for token in _AUTH_TOKENS):
        return AuthMissing
    return None


class ElevenLabsSynthesisClient:
    """
    ElevenLabs stream-input クライアント

    Attributes:
        config (SpeechSynthesisConfig): URL・出力フォーマット・タイムアウト・デフォルトボイス
        api_key (str): ElevenLabs APIキー（未設定時はNone）
    """

    def __init__(self, api_key: Optional[str], config: Optional[SpeechSynthesisConfig] = None,
                 connect=None):
        """
        Args:
            api_key (str): ElevenLabs APIキー
            config (SpeechSynthesisConfig, optional): 合成設定
            connect (callable, optional): websockets.connect 互換の接続関数（テスト用）
        """
        self.config = config or SpeechSynthesisConfig()
        self.api_key = usable_api_key(api_key)
        self._connect = connect or websockets.connect
        self.logger = logging.getLogger(__name__)

    def build_url(self, profile: VoiceProfile) -> str:
        base = self.config.url.format(voice_id=profile.voice_id)
        return f"{base}?model_id={profile.model_id}&output_format={self.config.output_format}"

    async def synthesize(self, text: str, voice_profile: Optional[VoiceProfile] = None) -> AudioBlob:
        """
        テキストを音声に変換

        Args:
            text (str): 合成するテキスト
            voice_profile (VoiceProfile, optional): ボイス設定（省略時は設定ファイルの値）

        Returns:
            AudioBlob: 合成音声（mp3出力の場合は audio/mpeg）

        Raises:
            SynthesisFailure: 空テキスト（通信なし）、サーバーエラー、音声なし
            AuthMissing: APIキー未設定、認証拒否
            RateLimited: レート制限・クォータ超過
            NetworkError: 接続失敗・タイムアウト
        """
        if not text or not text.strip():
            raise SynthesisFailure("No text provided for speech synthesis")
        if self.api_key is None:
            raise AuthMissing("ElevenLabs API key is not configured")

        profile = voice_profile or self.config.voice
        self.logger.debug(f"Synthesizing {len(text)} chars (voice={profile.voice_id}, model={profile.model_id})")

        try:
            audio = await asyncio.wait_for(self._stream(text, profile), timeout=self.config.request_timeout)
        except asyncio.TimeoutError as e:
            self.logger.error(f"Speech synthesis timed out after {self.config.request_timeout}s")
            raise NetworkError("Speech synthesis timed out", original_error=e) from e

        blob = AudioBlob(data=audio, mime_type=output_mime_type(self.config.output_format))
        self.logger.info(f"Speech synthesized: {blob.size} bytes ({blob.mime_type})")
        return blob

    async def _stream(self, text: str, profile: VoiceProfile) -> bytes:
        headers = {"xi-api-key": self.api_key}
        chunks = []
        try:
            async with self._connect(self.build_url(profile), additional_headers=headers) as ws:
                await ws.send(json.dumps({"text": " ", "voice_settings": profile.voice_settings()}))
                await ws.send(json.dumps({"text": text.strip() + " "}))
                await ws.send(json.dumps({"text": ""}))

                async for message in ws:
                    event = self._parse_event(message)
                    audio = event.get("audio")
                    if audio:
                        chunks.append(decode_audio(audio))
                    if event.get("isFinal"):
                        break

        except InvalidStatus as e:
            status = e.response.status_code
            self.logger.error(f"ElevenLabs handshake rejected: HTTP {status}")
            if status in (401, 403):
                raise AuthMissing(f"Speech synthesis rejected credentials (HTTP {status})", original_error=e) from e
            if status == 429:
                raise RateLimited("Speech synthesis rate limit exceeded", original_error=e) from e
            if status >= 500:
                raise NetworkError(f"Speech synthesis unavailable (HTTP {status})", original_error=e) from e
            raise SynthesisFailure(f"Speech synthesis request rejected (HTTP {status})", original_error=e) from e
        except ConnectionClosed as e:
            reason = e.rcvd.reason if e.rcvd is not None else ""
            self.logger.error(f"ElevenLabs connection closed unexpectedly: {reason or e}")
            kind = _classify_server_error(reason)
            if kind is not None:
                raise kind(f"Speech synthesis connection closed: {reason}", original_error=e) from e
            raise NetworkError(f"Speech synthesis connection lost: {reason or e}", original_error=e) from e
        except InvalidBackendResponse as e:
            raise SynthesisFailure(f"Invalid audio frame from speech synthesis: {e}", original_error=e) from e
        except (OSError, WebSocketException) as e:
            self.logger.error(f"ElevenLabs connection failed: {e}")
            raise NetworkError(f"Speech synthesis connection failed: {e}", original_error=e) from e

        if not chunks:
            raise SynthesisFailure("Speech synthesis returned no audio")
        return b"".join(chunks)

    def _parse_event(self, message) -> dict:
        try:
            event = json.loads(message)
        except (TypeError, ValueError) as e:
            raise SynthesisFailure("Speech synthesis sent a malformed message", original_error=e) from e
        if not isinstance(event, dict):
            raise SynthesisFailure("Speech synthesis sent a malformed message")

        error = event.get("error")
        if not error and "audio" not in event and "message" in event:
            error = event["message"]
        if error:
            detail = str(event.get("message") or error)
            self.logger.error(f"ElevenLabs error: {detail}")
            kind = _classify_server_error(f"{error} {detail}") or SynthesisFailure
            raise kind(f"Speech synthesis error: {detail}")
        return event
