from __future__ import annotations

import re
import time
import uuid
from typing import Any

from fastapi import Request
from google.api_core import exceptions as gexc
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp
from structlog import contextvars as structlog_contextvars

from .logging import get_logger
from .metrics import MetricsRegistry

__all__ = [
    "AccessLogAndMetricsMiddleware",
    "RequestIDMiddleware",
]

_UNMATCHED_ROUTE = "<unmatched>"
REQUEST_ID_HEADER = "X-Request-ID"
# 上流（ゲートウェイやクライアント）が付与した ID はこの形式のときだけ引き継ぐ
_INBOUND_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{8,128}$")
# "<32桁の16進トレースID>/<10進スパンID>;o=<0|1>"
_CLOUD_TRACE = re.compile(
    r"^\s*(?P<trace>[0-9a-fA-F]{32})/(?P<span>[^;]*)(?P<options>(?:;.*)?)$"
)
_MAX_SPAN_ID = 2**64


def _parse_cloud_trace_header(raw_header: str | None, project_id: str | None) -> dict[str, object]:
    """Translate `X-Cloud-Trace-Context` into the Cloud Logging trace fields.

    プロジェクトIDが無い、またはヘッダ形式が不正な場合は空 dict を返し、
    ログにトレース項目を付けない。スパンIDが不正でもトレース自体は残す。
    """

    if not raw_header or not project_id:
        return {}
    match = _CLOUD_TRACE.match(raw_header)
    if match is None:
        return {}

    options = dict(
        part.strip().partition("=")[::2] for part in match.group("options").split(";") if part.strip()
    )
    fields: dict[str, object] = {
        "trace": f"projects/{project_id}/traces/{match.group('trace')}",
        "trace_sampled": options.get("o", "").strip() == "1",
    }
    span = match.group("span").strip()
    if span.isdigit() and int(span) < _MAX_SPAN_ID:
        fields["spanId"] = str(int(span))
    return fields


def _route_template(request: Request) -> str:
    """Return the full matched route template (e.g. ``/api/items/{item_id}/archive``).

    メトリクスのキーをルート定義単位にまとめ、アイテムIDごとにキーが
    増え続けないようにする。FastAPI のバージョンによって ``route.path`` は
    ルーター内のローカルなパス（``/next`` や ``""``）になるため、実際の
    リクエストパスの末尾をテンプレートのセグメントで置き換えて組み立てる。
    """

    route = request.scope.get("route")
    template = getattr(route, "path", None)
    if route is None or template is None:
        return _UNMATCHED_ROUTE
    local = [segment for segment in str(template).split("/") if segment]
    actual = [segment for segment in request.url.path.split("/") if segment]
    prefix = actual[: max(0, len(actual) - len(local))]
    return "/" + "/".join(prefix + local)


def _is_timeout(status_code: int, error: BaseException | None) -> bool:
    if status_code == 504:
        return True
    return isinstance(error, (TimeoutError, gexc.DeadlineExceeded))


def _ensure_request_id(request: Request) -> str:
    existing = getattr(request.state, "request_id", None)
    if existing:
        return str(existing)
    inbound = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    request_id = inbound if _INBOUND_REQUEST_ID.match(inbound) else uuid.uuid4().hex
    request.state.request_id = request_id
    return request_id


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag every request with an ID and echo it back as ``X-Request-ID``.

    エラーエンベロープの request_id とアクセスログが同じ値を指すよう、
    `request.state.request_id` に保存する。
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:  # type: ignore[override]
        request_id = _ensure_request_id(request)
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class AccessLogAndMetricsMiddleware(BaseHTTPMiddleware):
    """One `request_complete` log line and one metrics sample per request.

    なぜ: 高頻度でポーリングされる due-count/next の遅延とエラー有無を
    ルート単位で把握し、運用時のトラブルシュートを即座に行えるようにする。
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        registry: MetricsRegistry,
        gcp_project_id: str | None = None,
        logger: Any | None = None,
    ) -> None:
        super().__init__(app)
        self._registry = registry
        self._gcp_project_id = gcp_project_id
        self._logger = logger or get_logger("access_log")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:  # type: ignore[override]
        started = time.perf_counter()
        request_id = _ensure_request_id(request)
        trace_fields = _parse_cloud_trace_header(
            request.headers.get("x-cloud-trace-context"), self._gcp_project_id
        )
        structlog_contextvars.bind_contextvars(**trace_fields)
        outcome: dict[str, Any] = {"status_code": 500, "error_type": None}
        error: BaseException | None = None
        try:
            response = await call_next(request)
            outcome["status_code"] = response.status_code
            return response
        except Exception as exc:
            outcome["error_type"] = type(exc).__name__
            error = exc
            raise
        finally:
            self._finish(request, request_id, started, outcome, error)
            structlog_contextvars.unbind_contextvars(*trace_fields)

    def _finish(
        self,
        request: Request,
        request_id: str,
        started: float,
        outcome: dict[str, Any],
        error: BaseException | None,
    ) -> None:
        latency_ms = (time.perf_counter() - started) * 1000
        failed = outcome["error_type"] is not None or outcome["status_code"] >= 500
        timed_out = _is_timeout(outcome["status_code"], error)
        self._registry.record(
            _route_template(request),
            latency_ms,
            method=request.method,
            status_code=outcome["status_code"],
            is_error=failed,
            is_timeout=timed_out,
        )
        # 5xx と未処理例外は severity=ERROR で出す
        emit = self._logger.error if failed else self._logger.info
        emit(
            "request_complete",
            path=request.url.path,
            method=request.method,
            latency_ms=latency_ms,
            is_error=failed,
            is_timeout=timed_out,
            request_id=request_id,
            client_ip=request.client.host if request.client else "unknown",
            user_agent=request.headers.get("user-agent", "-"),
            **outcome,
        )
