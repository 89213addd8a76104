"""Freshness score for never-reviewed items.

作成からの経過時間で指数的に減衰する「新しさ」スコア。時刻のずれで
経過時間が負になっても例外にせず 1.0 を返す。
"""

from __future__ import annotations

import math
import sys

from ..models.common import MS_PER_HOUR


FRESHNESS_DECAY_HOURS = 24.0
# exp の下位桁あふれで 0 にならないよう、最小の正の正規化浮動小数点数で下支えする
_FRESHNESS_FLOOR = sys.float_info.min


def freshness(hours_since_creation: float | None) -> float:
    """Return ``exp(-max(0, hours) / 24)`` in (0, 1].

    NaN や None は経過時間ゼロとみなし 1.0 を返す。
    """

    try:
        hours = float(hours_since_creation)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 1.0
    if math.isnan(hours) or hours <= 0:
        return 1.0
    return max(math.exp(-hours / FRESHNESS_DECAY_HOURS), _FRESHNESS_FLOOR)


def hours_since(created_at_ms: int, now_ms: int) -> float:
    """Hours between creation and ``now_ms``; may be negative under clock skew."""

    return (now_ms - created_at_ms) / MS_PER_HOUR
