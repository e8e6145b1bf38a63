"""ロギング設定

voice_lessonアプリケーション全体のロギング設定を管理します。
ファイル出力とコンソール出力の両方に対応し、日次ローテーションを行います。
"""

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Union

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_FILE_NAME = "voice_lesson.log"


def resolve_level(level: Union[int, str]) -> int:
    """"DEBUG" などのレベル名、または数値レベルを数値に変換（不明な名前はINFO）"""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(log_dir: str = "logs", level: Union[int, str] = logging.INFO):
    """
    ロギング設定を初期化

    ファイルハンドラー（日次ローテーション）とコンソールハンドラーを設定します。

    Args:
        log_dir: ログファイル出力ディレクトリ（デフォルト: "logs"）
        level: ログレベル（数値、または "INFO" などの名前）

    Returns:
        ルートロガー

    Examples:
        >>> from voice_lesson.logging_config import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Lesson runner started")

    Note:
        - ログファイルは毎日0時にローテーションされ、過去7日分が保持されます
        - 音声ペイロードの中身はログに出力せず、サイズのみをDEBUGで記録します
    """
    level = resolve_level(level)
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    # ファイルハンドラー（日次ローテーション、7日分保持）
    file_handler = TimedRotatingFileHandler(
        log_path / LOG_FILE_NAME,
        when='midnight',
        backupCount=7,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # 既存のハンドラーを閉じてから差し替える（重複出力防止）
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # websockets/httpx のフレーム単位ログは冗長なので抑制
    for noisy in ("websockets", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    root_logger.info(f"Logging initialized (log_dir={log_dir}, level={logging.getLevelName(level)})")

    return root_logger
