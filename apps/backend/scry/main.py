from __future__ import annotations

import inspect
from typing import Any

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import Settings, settings
from .errors import register_exception_handlers
from .logging import configure_logging, get_logger, logger
from .metrics import MetricsRegistry
from .middleware import AccessLogAndMetricsMiddleware, RequestIDMiddleware
from .models.common import Clock, system_clock
from .routers import health, items, review
from .services import SchedulerServices
from .store import get_store
from .store.firestore_store import AppFirestoreStore


# uvicorn のバージョンによって信頼済みプロキシ引数の名前が異なる
_PROXY_ALLOWLIST_KWARG = next(
    (
        name
        for name in ("forwarded_allow_ips", "trusted_hosts")
        if name in inspect.signature(ProxyHeadersMiddleware.__init__).parameters
    ),
    "trusted_hosts",
)


def _cors_options(config: Settings) -> dict[str, Any]:
    """Explicit origins allow credentials; the wildcard fallback never does."""

    origins = list(config.allowed_cors_origins)
    return {
        "allow_origins": origins or ["*"],
        "allow_credentials": bool(origins),
        "allow_methods": ["*"],
        "allow_headers": ["*"],
    }


def _proxy_options(config: Settings) -> dict[str, Any]:
    proxies = [value for value in config.trusted_proxy_ips if value] or ["127.0.0.1"]
    return {_PROXY_ALLOWLIST_KWARG: ",".join(proxies)}


def create_app(
    *,
    store: AppFirestoreStore | None = None,
    clock: Clock = system_clock,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    ストアと時計は引数で差し替えられる。未指定ならアプリ共有の Firestore
    ストアとシステム時刻を使う。
    """
    configure_logging()
    app = FastAPI(title="Scry Scheduler API", version="0.1.0")

    app.state.metrics = MetricsRegistry(window_size=settings.metrics_window_size)
    app.state.services = SchedulerServices.build(store or get_store(), settings, clock=clock)

    # 後から追加したものほど外側で動く。実行順は
    # ProxyHeaders → AccessLog → RequestID → CORS → ルーター。
    # ProxyHeaders を最外周に置き、アクセスログが実クライアント IP を記録できるようにする。
    app.add_middleware(CORSMiddleware, **_cors_options(settings))
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        AccessLogAndMetricsMiddleware,
        registry=app.state.metrics,
        gcp_project_id=settings.gcp_project_id,
        logger=get_logger("access_log"),
    )
    app.add_middleware(ProxyHeadersMiddleware, **_proxy_options(settings))

    register_exception_handlers(app)
    app.include_router(review.router, prefix="/api/review")
    app.include_router(items.router, prefix="/api/items")
    app.include_router(health.router)

    logger.info(
        "app_created",
        environment=settings.environment,
        desired_retention=settings.scheduler_desired_retention,
        maximum_interval_days=settings.scheduler_maximum_interval_days,
    )
    return app
