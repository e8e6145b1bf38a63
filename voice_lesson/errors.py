"""
エラー分類 - 音声レッスンパイプライン全体で使用する例外

音声キャプチャ、対話バックエンド、音声合成、状態マシンの各層で発生する
失敗を、安定したエラーコードとユーザー向けメッセージを持つ例外として表現します。
下位層の生の例外（httpx、websockets、PyAudioなど）はここで定義した種別に
ラップされ、オーケストレーターの境界を越えて伝播することはありません。

エラー種別:
- キャプチャ層: PermissionDenied, DeviceUnavailable, UnsupportedEnvironment
- ペイロード検証: UnsupportedAudioFormat, PayloadTooLarge
- バックエンド: AuthMissing, RateLimited, NetworkError, InvalidBackendResponse
- 合成/セッション: SynthesisFailure, SessionNotInitialized
- 再生: PlaybackError
"""


class LessonError(Exception):
    """
    音声レッスンの全エラーの基底クラス

    Attributes:
        code (str): 安定したエラーコード（ログ・UI分岐用）
        original_error (Exception): ラップ元の例外（存在する場合）
        user_message (str): ユーザーに表示して安全なメッセージ
    """

    code = "UNKNOWN_ERROR"
    default_user_message = "An unexpected error occurred. Please try again."

    def __init__(self, message, code=None, original_error=None):
        super().__init__(message)
        if code is not None:
            self.code = code
        self.original_error = original_error
        self.user_message = USER_MESSAGES.get(self.code, self.default_user_message)

    def __repr__(self):
        return f"{type(self).__name__}(code={self.code!r}, message={str(self)!r})"


# ================================================================================
# キャプチャ層
# ================================================================================

class CaptureError(LessonError):
    """マイク取得・録音に関するエラーの基底クラス"""


class PermissionDenied(CaptureError):
    """マイクへのアクセスが拒否された"""
    code = "PERMISSION_DENIED"


class DeviceUnavailable(CaptureError):
    """
    マイクデバイスが利用できない

    codeは DEVICE_NOT_FOUND（デバイスなし）または
    DEVICE_IN_USE（他プロセスが使用中）のどちらかになります。
    """
    code = "DEVICE_NOT_FOUND"


class UnsupportedEnvironment(CaptureError):
    """録音APIまたは対応エンコーディングが存在しない環境"""
    code = "NOT_SUPPORTED"


# ================================================================================
# ペイロード検証（ネットワーク送信前のローカル検証）
# ================================================================================

class UnsupportedAudioFormat(LessonError):
    code = "AUDIO_FORMAT_ERROR"


class PayloadTooLarge(LessonError):
    code = "AUDIO_SIZE_ERROR"


# ================================================================================
# バックエンド呼び出し
# ================================================================================

class AuthMissing(LessonError):
    """APIキー未設定、またはバックエンドが認証を拒否した（セッション終了扱い）"""
    code = "API_KEY_MISSING"


class RateLimited(LessonError):
    """レート制限・クォータ超過（セッション終了扱い）"""
    code = "RATE_LIMIT"


class NetworkError(LessonError):
    """通信失敗・タイムアウト（一時的、新しいターンで回復）"""
    code = "NETWORK_ERROR"


class InvalidBackendResponse(LessonError):
    code = "INVALID_RESPONSE"


class InvalidToolCall(InvalidBackendResponse):
    """宣言済みツールスキーマに一致しないツール呼び出し"""
    code = "FUNCTION_CALL_ERROR"


class SynthesisFailure(LessonError):
    """
    音声合成の失敗

    Attributes:
        partial_result: 合成前に得られていたターン結果（テキスト・ツール呼び出し）。
            キャプション表示用に呼び出し側が利用できます。
    """
    code = "TTS_ERROR"

    def __init__(self, message, code=None, original_error=None, partial_result=None):
        super().__init__(message, code=code, original_error=original_error)
        self.partial_result = partial_result


class SessionNotInitialized(LessonError):
    code = "SESSION_NOT_INITIALIZED"


class PlaybackError(LessonError):
    code = "PLAYBACK_ERROR"


USER_MESSAGES = {
    "PERMISSION_DENIED": "Microphone access denied. Please allow microphone access and try again.",
    "DEVICE_NOT_FOUND": "No microphone found. Please connect a microphone and try again.",
    "DEVICE_IN_USE": "The microphone is being used by another application.",
    "NOT_SUPPORTED": "Audio recording is not supported on this device.",
    "AUDIO_FORMAT_ERROR": "The audio format is not supported. Please use a different recording format.",
    "AUDIO_SIZE_ERROR": "The recording is too long. Please record a shorter message.",
    "API_KEY_MISSING": "The voice service is not configured. Please check your API keys.",
    "RATE_LIMIT": "Too many requests. Please wait a moment and restart the lesson.",
    "NETWORK_ERROR": "Unable to connect to the voice service. Please check your connection and try again.",
    "INVALID_RESPONSE": "Received an invalid response from the voice service.",
    "FUNCTION_CALL_ERROR": "Error processing an instruction from the tutor.",
    "TTS_ERROR": "Unable to generate the tutor's voice. Please try again.",
    "SESSION_NOT_INITIALIZED": "The lesson has not started yet. Please restart the lesson.",
    "PLAYBACK_ERROR": "Failed to play the audio response.",
}
