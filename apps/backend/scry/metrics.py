from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Deque, Dict


@dataclass
class RouteStats:
    latencies_ms: Deque[float]
    total: int = 0
    errors: int = 0
    timeouts: int = 0
    by_method: Counter = field(default_factory=Counter)
    by_status_class: Counter = field(default_factory=Counter)


def _status_class(status_code: int | None) -> str:
    if status_code is None:
        return "unknown"
    return f"{int(status_code) // 100}xx"


class MetricsRegistry:
    """In-memory request metrics owned by one application instance.

    - キーはルートテンプレート（例: ``/api/items/{item_id}/archive``）。
      アイテムIDごとにキーが増えないため、保持するキー数はルート数で頭打ちになる。
    - ルートごとに直近 ``window_size`` 件のレイテンシから p50/p95 を計算する。
    - errors は 5xx と未処理例外、timeouts はストアの期限切れ（504）を数える。
    モジュール単位の共有インスタンスは持たず、`create_app` が生成して
    `app.state.metrics` に保持する。
    """

    def __init__(self, window_size: int = 200) -> None:
        self._window_size = max(1, int(window_size))
        self._lock = threading.Lock()
        self._routes: Dict[str, RouteStats] = {}

    def _stats_for(self, route: str) -> RouteStats:
        stats = self._routes.get(route)
        if stats is None:
            stats = RouteStats(latencies_ms=deque(maxlen=self._window_size))
            self._routes[route] = stats
        return stats

    def record(
        self,
        route: str,
        latency_ms: float,
        *,
        method: str = "GET",
        status_code: int | None = 200,
        is_error: bool = False,
        is_timeout: bool = False,
    ) -> None:
        with self._lock:
            stats = self._stats_for(route)
            stats.latencies_ms.append(max(0.0, float(latency_ms)))
            stats.total += 1
            stats.by_method[method.upper()] += 1
            stats.by_status_class[_status_class(status_code)] += 1
            if is_error:
                stats.errors += 1
            if is_timeout:
                stats.timeouts += 1

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            result: Dict[str, Dict[str, object]] = {}
            for route, stats in sorted(self._routes.items()):
                window = list(stats.latencies_ms)
                result[route] = {
                    "p50_ms": round(calculate_percentile(window, 0.50), 2),
                    "p95_ms": round(calculate_p95(window), 2),
                    "count": stats.total,
                    "errors": stats.errors,
                    "timeouts": stats.timeouts,
                    "methods": dict(stats.by_method),
                    "status_classes": dict(stats.by_status_class),
                }
            return result


def calculate_percentile(values: list[float], quantile: float) -> float:
    """Nearest-rank (floor) percentile; 0.0 for an empty window."""

    if not values:
        return 0.0
    ordered = sorted(values)
    rank = int(min(1.0, max(0.0, quantile)) * (len(ordered) - 1))
    return ordered[rank]


def calculate_p95(values: list[float]) -> float:
    return calculate_percentile(values, 0.95)
