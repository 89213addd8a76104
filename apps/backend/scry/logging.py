"""Structured logging setup for the scheduler service.

structlog を JSON 出力で初期化し、ログへ渡されたフィールドのうち認証情報に
見えるものをマスクする。エンジンの各コンポーネントは `get_logger` で
生成したロガーをコンストラクタ引数として受け取る。
"""

from typing import Any

import logging
import structlog
from structlog import contextvars as structlog_contextvars
from .config import settings


# ユーザーIDヘッダやゲートウェイ由来のヘッダをそのまま出力しないためのキー名断片
_SENSITIVE_KEY_PARTS = ("api_key", "token", "secret", "authorization", "password", "cookie")
_REDACTED = "***"
_TRACE_FIELDS = ("trace", "spanId", "trace_sampled")


def _redact(raw: object) -> str:
    """短い値は全体を、長い値は両端4文字を残して伏せる。"""

    text = "" if raw is None else str(raw).strip()
    if len(text) <= 8:
        return _REDACTED
    return f"{text[:4]}…{text[-4:]}"


def _looks_sensitive(key: object) -> bool:
    name = str(key).lower()
    return any(part in name for part in _SENSITIVE_KEY_PARTS)


def _scrub(value: Any, key: object | None = None) -> Any:
    if isinstance(value, dict):
        return {inner_key: _scrub(inner, inner_key) for inner_key, inner in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(inner, key) for inner in value]
    if key is not None and _looks_sensitive(key):
        return _redact(value)
    return value


def _sanitize_event_dict(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Mask values whose key names look like credentials (nested dicts included)."""

    return {key: _scrub(value, key) for key, value in event_dict.items()}


def _merge_trace_context(
    _logger: structlog.types.WrappedLogger,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Copy Cloud Trace fields bound by the access-log middleware into every event.

    なぜ: 採点や出題のログをリクエストログと同じトレースで検索できるようにする。
    """

    bound = structlog_contextvars.get_contextvars()
    for field in _TRACE_FIELDS:
        if field in bound:
            event_dict.setdefault(field, bound[field])
    return event_dict


def _resolve_log_level(raw_level: str | None) -> int:
    level = logging.getLevelName(str(raw_level or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging() -> None:
    """Configure stdlib logging and structlog to emit one JSON object per line.

    `LOG_LEVEL` でルートロガーのレベルを切り替える（未知の値は INFO）。
    """
    # JSON 行の前に "INFO:root:" のような stdlib のプレフィックスを付けない
    logging.basicConfig(
        level=_resolve_log_level(settings.log_level),
        format="%(message)s",
        handlers=[logging.StreamHandler()],
        force=True,
    )
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog_contextvars.merge_contextvars,
            _merge_trace_context,
            _sanitize_event_dict,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def get_logger(component: str | None = None, **initial_values: Any) -> Any:
    """Return a structlog logger bound to ``component``.

    テストでは `structlog.testing.capture_logs` でイベントを検証できる。
    """

    bound = structlog.get_logger()
    if component:
        initial_values = {"component": component, **initial_values}
    if initial_values:
        bound = bound.bind(**initial_values)
    return bound


logger = structlog.get_logger()
