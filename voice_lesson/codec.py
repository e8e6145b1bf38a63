"""
音声ペイロードの転送用エンコード

バイナリ音声をJSONリクエストに埋め込むためのBase64変換を提供します。
"""

import base64
import binascii
import logging

from .errors import InvalidBackendResponse

logger = logging.getLogger(__name__)


def encode_audio(data: bytes) -> str:
    """
    音声バイト列をBase64文字列に変換

    Args:
        data (bytes): 音声データ（空でも可）

    Returns:
        str: パディング付き標準Base64文字列（data URLプレフィックスなし）
    """
    return base64.b64encode(data).decode("ascii")


def decode_audio(payload: str) -> bytes:
    """
    Base64文字列を音声バイト列に戻す

    Args:
        payload (str): Base64文字列

    Returns:
        bytes: デコード済み音声データ

    Raises:
        InvalidBackendResponse: Base64として不正な場合
    """
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        logger.error(f"Failed to decode base64 audio payload: {e}")
        raise InvalidBackendResponse("Audio payload is not valid base64", original_error=e) from e
