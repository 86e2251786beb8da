"""Structured logging configuration."""

from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from contextlib import AbstractContextManager

LATEST_LOG_NAME = "latest.log"
ERROR_LOG_NAME = "error.log"

_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# 子プロセスやイベントループ由来の冗長なロガー
_NOISY_LOGGERS = ("asyncio",)


def _parse_level(value: str, fallback: str) -> int:
    name = value.upper()
    if name not in _LEVEL_NAMES:
        print(
            f"Warning: Invalid log level '{value}', defaulting to {fallback}",
            file=sys.stderr,
        )
        name = fallback
    return logging.getLevelNamesMapping()[name]


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _daily_file_handler(
    path: Path, *, level: int, keep_days: int, formatter: logging.Formatter
) -> logging.Handler:
    handler = TimedRotatingFileHandler(
        path, when="midnight", backupCount=keep_days, encoding="utf-8"
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    log_backup_count: int = 7,
    console_level: str = "ERROR",
) -> None:
    """
    構造化ロギングを設定する.

    ログはすべてJSON行で、次の出力先に振り分けられる:
    - stderr: console_level 以上
    - <log_dir>/latest.log: log_level 以上
    - <log_dir>/error.log: WARNING以上

    stdout はホストとのプロトコル専用なのでログには使わない。
    ログディレクトリを作れない場合は stderr のみで続行する.

    Args:
        log_level: latest.log のログレベル（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: ログ出力ディレクトリ
        log_backup_count: ローテーション後に残す日数
        console_level: stderr に出すログレベル
    """
    file_level = _parse_level(log_level, "INFO")
    stderr_level = _parse_level(console_level, "ERROR")

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(stderr_level)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    directory = Path(log_dir)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(
            f"Warning: Failed to create log directory '{log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        return

    root.addHandler(
        _daily_file_handler(
            directory / LATEST_LOG_NAME,
            level=file_level,
            keep_days=log_backup_count,
            formatter=formatter,
        )
    )
    root.addHandler(
        _daily_file_handler(
            directory / ERROR_LOG_NAME,
            level=logging.WARNING,
            keep_days=log_backup_count,
            formatter=formatter,
        )
    )


def log_context(**values: Any) -> AbstractContextManager[None]:
    """
    ブロック内のログにコンテキスト値を付与する.

    asyncio のタスクはコンテキストをコピーして動くため、
    ブロック内で作成されたタスクのログにも同じ値が付く。

    Example:
        with log_context(session_id=session.id, agent=session.agent):
            await bridge.prompt(text)

    Args:
        **values: 付与するキーと値

    Returns:
        with 文で使うコンテキストマネージャー
    """
    return structlog.contextvars.bound_contextvars(**values)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    構造化ロガーを取得する.

    Args:
        name: ロガー名（通常は __name__ を指定）

    Returns:
        構造化ロガー
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]
