"""
Gemini対話クライアント

Gemini generateContent REST API に録音音声を送信し、ペルソナとしての応答テキストと
ツール（関数）呼び出しを取得します。音声認識・対話生成・ツール呼び出しは
バックエンド側で一括して行われます。

リクエストフロー:
    start_session(): ペルソナ指示とツールスキーマを保持するセッションを作成（ローカル）
    send_audio_turn(): 音声をローカル検証 → Base64化 → POST → 応答を正規化
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import httpx

from .codec import encode_audio
from .config_models import ConversationAPIConfig, usable_api_key
from .errors import (
    AuthMissing,
    InvalidBackendResponse,
    NetworkError,
    PayloadTooLarge,
    RateLimited,
    SessionNotInitialized,
    UnsupportedAudioFormat,
)
from .models import AudioBlob, DialogueResponse, FinishReason, ToolCall

logger = logging.getLogger(__name__)

# Gemini固有のfinishReasonの正規化
_FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.SAFETY,
    "RECITATION": FinishReason.SAFETY,
    "BLOCKLIST": FinishReason.SAFETY,
    "PROHIBITED_CONTENT": FinishReason.SAFETY,
    "SPII": FinishReason.SAFETY,
    "IMAGE_SAFETY": FinishReason.SAFETY,
}


def normalize_finish_reason(raw: Optional[str], has_tool_calls: bool = False) -> FinishReason:
    """
    GeminiのfinishReasonをFinishReasonへ変換

    未指定はSTOP扱い。STOPでツール呼び出しを含む場合はTOOL_CALLになります。
    """
    reason = _FINISH_REASONS.get((raw or "STOP").upper(), FinishReason.OTHER)
    if reason is FinishReason.STOP and has_tool_calls:
        return FinishReason.TOOL_CALL
    return reason


def _has_function_response(content: dict) -> bool:
    return any("functionResponse" in part for part in content.get("parts", ()))


def trim_history(history: List[dict], max_turns: int) -> List[dict]:
    """
    履歴を直近max_turns組（user/model）に切り詰める

    先頭に残るユーザーターンの functionResponse は、対応する functionCall が
    切り捨てられているため取り除きます。
    """
    if max_turns <= 0:
        return []
    if len(history) <= 2 * max_turns:
        return list(history)
    kept = history[-2 * max_turns:]
    first = kept[0]
    if _has_function_response(first):
        parts = [part for part in first["parts"] if "functionResponse" not in part]
        kept[0] = {**first, "parts": parts}
    return kept


@dataclass
class ConversationSession:
    """
    対話セッション

    ペルソナ指示とツールスキーマはセッション作成時に固定されます。
    ターンは厳密に逐次で、成功したターンのみ履歴に追加されます。

    Attributes:
        session_id (str): セッション識別子
        persona_instruction (str): システム指示
        tool_schema (tuple): 関数宣言リスト
        history (list): 送信済みのcontents（user/modelの交互）
        active (bool): Falseの場合、再初期化が必要
    """
    persona_instruction: str
    tool_schema: tuple
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    history: List[dict] = field(default_factory=list)
    active: bool = True
    turn_count: int = 0
    # 直前のモデル応答のツール呼び出し（次のユーザーターンでfunctionResponseとして応答する）
    pending_tool_calls: List[ToolCall] = field(default_factory=list)


class GeminiConversationClient:
    """
    Gemini generateContent クライアント

    Attributes:
        config (ConversationAPIConfig): モデル・生成設定・音声制約
        api_key (str): Gemini APIキー（未設定時はNone）
    """

    def __init__(self, api_key: Optional[str], config: Optional[ConversationAPIConfig] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            api_key (str): Gemini APIキー（プレースホルダー値は未設定扱い）
            config (ConversationAPIConfig, optional): API設定
            http_client (httpx.AsyncClient, optional): 共有するHTTPクライアント（テストではMockTransportを注入）
        """
        self.config = config or ConversationAPIConfig()
        self.api_key = usable_api_key(api_key)
        self._http = http_client
        self._owns_http = http_client is None
        self.logger = logging.getLogger(__name__)

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/models/{self.config.model}:generateContent"

    # ================================================================================
    # セッション管理
    # ================================================================================

    def start_session(self, persona_instruction: str, tool_schema: Sequence[dict]) -> ConversationSession:
        """
        対話セッションを作成

        Raises:
            AuthMissing: APIキーが設定されていない場合
        """
        if self.api_key is None:
            raise AuthMissing("Gemini API key is not configured")
        session = ConversationSession(
            persona_instruction=persona_instruction,
            tool_schema=tuple(tool_schema),
        )
        self.logger.info(f"Conversation session started: {session.session_id} (model={self.config.model})")
        return session

    def end_session(self, session: Optional[ConversationSession]):
        """セッションを無効化（冪等）"""
        if session is None or not session.active:
            return
        session.active = False
        session.pending_tool_calls = []
        self.logger.info(f"Conversation session ended: {session.session_id} ({session.turn_count} turns)")

    async def aclose(self):
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    # ================================================================================
    # ターン送信
    # ================================================================================

    def validate_audio(self, blob: AudioBlob):
        """
        送信前のローカル検証

        Raises:
            UnsupportedAudioFormat: 対応外のMIMEタイプ
            PayloadTooLarge: サイズ上限超過
        """
        supported = {m.lower() for m in self.config.supported_audio_formats}
        if blob.mime_type.lower() not in supported and blob.base_mime_type not in supported:
            raise UnsupportedAudioFormat(
                f"Unsupported audio format: {blob.mime_type} "
                f"(supported: {', '.join(self.config.supported_audio_formats)})"
            )
        if blob.size > self.config.max_audio_size_bytes:
            raise PayloadTooLarge(
                f"Audio file too large: {blob.size / 1024 / 1024:.2f}MB "
                f"(max {self.config.max_audio_size_mb}MB)"
            )

    async def send_audio_turn(self, session: ConversationSession, blob: AudioBlob) -> DialogueResponse:
        """
        録音音声を1ターンとして送信

        Args:
            session (ConversationSession): start_session()で作成したセッション
            blob (AudioBlob): 録音音声

        Returns:
            DialogueResponse: テキスト・ツール呼び出し・停止理由

        Raises:
            SessionNotInitialized: セッションがない、または無効化済み
            UnsupportedAudioFormat, PayloadTooLarge: ローカル検証エラー（通信なし）
            AuthMissing: APIキー未設定、HTTP 401/403
            RateLimited: HTTP 429
            NetworkError: 通信失敗、タイムアウト、HTTP 5xx
            InvalidBackendResponse: 不正なJSON、候補なし、その他の4xx
        """
        if session is None or not session.active:
            raise SessionNotInitialized("Conversation session is not initialized")
        if self.api_key is None:
            raise AuthMissing("Gemini API key is not configured")

        self.validate_audio(blob)

        user_turn = self._build_user_turn(session, blob)
        history = self._fit_history(session, user_turn)
        body = json.dumps(self._build_request(session, history, user_turn))
        self.logger.debug(
            f"Sending audio turn: session={session.session_id} turn={session.turn_count + 1} "
            f"bytes={blob.size} mime={blob.mime_type} request={len(body)} history={len(history)}"
        )

        try:
            data = await self._post(body)
        except (AuthMissing, RateLimited) as e:
            # 認証・レート制限はセッション終了扱い
            self.logger.error(f"Session {session.session_id} deactivated: {e.code}")
            self.end_session(session)
            raise

        response, model_content = self._parse_response(data)

        session.history = trim_history(history + [user_turn, model_content], self.config.max_history_turns)
        session.pending_tool_calls = list(response.tool_calls)
        session.turn_count += 1

        self.logger.info(
            f"Turn {session.turn_count} complete: {len(response.text)} chars, "
            f"{len(response.tool_calls)} tool call(s), finish={response.finish_reason.value}"
        )
        return response

    # ================================================================================
    # リクエスト構築
    # ================================================================================

    def _build_user_turn(self, session: ConversationSession, blob: AudioBlob) -> dict:
        parts = []
        for call in session.pending_tool_calls:
            parts.append({
                "functionResponse": {
                    "name": call.name,
                    "response": {"result": "ok"},
                }
            })
        parts.append({
            "inlineData": {
                # codecsパラメータはバックエンドが受け付けないため除く
                "mimeType": blob.base_mime_type,
                "data": encode_audio(blob.data),
            }
        })
        return {"role": "user", "parts": parts}

    def _fit_history(self, session: ConversationSession, user_turn: dict) -> List[dict]:
        """
        リクエスト全体がサイズ上限に収まるよう、古い履歴を組単位で落とす

        Raises:
            PayloadTooLarge: 履歴なしでも上限を超える場合（通信なし）
        """
        limit = self.config.max_request_size_bytes
        base = len(json.dumps(self._build_request(session, [], user_turn)))
        if base > limit:
            raise PayloadTooLarge(
                f"Request too large: {base / 1024 / 1024:.2f}MB after encoding "
                f"(max {self.config.max_request_size_mb}MB)"
            )

        history = session.history
        # contents配列の区切り ", " の分を含める
        sizes = [len(json.dumps(content)) + 2 for content in history]
        total = base + sum(sizes)
        dropped = 0
        while total > limit and dropped < len(history):
            total -= sizes[dropped] + sizes[dropped + 1]
            dropped += 2
        if dropped == 0:
            return history

        self.logger.info(
            f"Dropping {dropped // 2} oldest turn(s) from session {session.session_id} to fit request size limit"
        )
        return trim_history(history, (len(history) - dropped) // 2)

    def _build_request(self, session: ConversationSession, history: List[dict], user_turn: dict) -> dict:
        payload = {
            "systemInstruction": {"parts": [{"text": session.persona_instruction}]},
            "contents": history + [user_turn],
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_output_tokens,
            },
        }
        if session.tool_schema:
            payload["tools"] = [{"functionDeclarations": list(session.tool_schema)}]
        return payload

    async def _post(self, body: str) -> dict:
        if self._http is None:
            self._http = httpx.AsyncClient()
            self._owns_http = True

        headers = {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        }
        try:
            response = await self._http.post(
                self.endpoint,
                headers=headers,
                content=body,
                timeout=self.config.request_timeout,
            )
        except httpx.TimeoutException as e:
            self.logger.error(f"Gemini request timed out after {self.config.request_timeout}s")
            raise NetworkError("Dialogue request timed out", original_error=e) from e
        except httpx.TransportError as e:
            self.logger.error(f"Gemini transport error: {e}")
            raise NetworkError(f"Dialogue request failed: {e}", original_error=e) from e

        self._raise_for_status(response)

        try:
            return response.json()
        except ValueError as e:
            self.logger.error(f"Gemini returned non-JSON body ({len(response.content)} bytes)")
            raise InvalidBackendResponse("Backend returned invalid JSON", original_error=e) from e

    def _raise_for_status(self, response: httpx.Response):
        status = response.status_code
        if status < 400:
            return

        message = _error_message(response)
        self.logger.error(f"Gemini request failed: HTTP {status} - {message}")

        if status in (401, 403):
            raise AuthMissing(f"Backend rejected credentials (HTTP {status}): {message}")
        if status == 429:
            raise RateLimited(f"Backend rate limit exceeded: {message}")
        if status >= 500:
            raise NetworkError(f"Backend unavailable (HTTP {status}): {message}")
        raise InvalidBackendResponse(f"Backend rejected request (HTTP {status}): {message}")

    # ================================================================================
    # 応答解析
    # ================================================================================

    def _parse_response(self, data) -> tuple:
        """generateContent応答をDialogueResponseとモデルターン（履歴用）に変換"""
        if not isinstance(data, dict):
            raise InvalidBackendResponse("Backend response is not a JSON object")

        candidates = data.get("candidates")
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise InvalidBackendResponse(f"Prompt blocked by backend: {block_reason}")
            raise InvalidBackendResponse("No response candidates from backend")

        candidate = candidates[0]
        if not isinstance(candidate, dict):
            raise InvalidBackendResponse("Malformed response candidate")

        content = candidate.get("content") or {}
        parts = content.get("parts") or []

        texts = []
        tool_calls = []
        for part in parts:
            if not isinstance(part, dict):
                raise InvalidBackendResponse("Malformed content part")
            if "text" in part:
                texts.append(part["text"])
            elif "functionCall" in part:
                call = part["functionCall"] or {}
                name = call.get("name")
                args = call.get("args") or {}
                if not isinstance(name, str) or not isinstance(args, dict):
                    raise InvalidBackendResponse(f"Malformed function call: {call!r}")
                tool_calls.append(ToolCall(name=name, args=args))

        text = "".join(texts).strip()
        response = DialogueResponse(
            text=text,
            tool_calls=tuple(tool_calls),
            finish_reason=normalize_finish_reason(candidate.get("finishReason"), bool(tool_calls)),
        )
        # 空のpartsは履歴として受け付けられない
        model_content = {"role": "model", "parts": parts or [{"text": ""}]}
        return response, model_content


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return str(body)[:200]
