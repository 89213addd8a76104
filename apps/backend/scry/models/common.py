from __future__ import annotations

import math
import time
from collections.abc import Callable
from enum import Enum, IntEnum
from typing import Any


MS_PER_MINUTE = 60_000
MS_PER_HOUR = 3_600_000
MS_PER_DAY = 86_400_000

# サーバー側の基準時刻を返す関数。テストでは固定値を返す関数を注入する。
Clock = Callable[[], int]


class Grade(IntEnum):
    """Four-level review outcome."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4

    @property
    def is_lapse(self) -> bool:
        return self is Grade.AGAIN


class Lifecycle(str, Enum):
    """Scheduling phase of an item."""

    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"


def system_clock() -> int:
    """Current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def finite_or(value: Any, default: float) -> float:
    """Return ``value`` as a finite float, or ``default`` when it is missing/NaN/inf."""

    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def coerce_epoch_ms(value: Any) -> int | None:
    """Normalise a stored timestamp into epoch milliseconds.

    Firestore から読み出した値は int/float/None が混在し得るため、
    比較可能な int へ揃える。解釈できない値は None を返す。
    """

    if value is None or isinstance(value, bool):
        return None
    number = finite_or(value, math.nan)
    if math.isnan(number):
        return None
    return int(number)


def normalize_non_negative_int(value: Any) -> int:
    """与えられた値を非負整数に正規化する。

    学習進捗カウンタ（reps/lapses/attempt_count など）は負値や文字列が
    混入すると再計算が破綻するため、読み出し時にゼロ以上へ矯正する。"""

    if isinstance(value, float) and not math.isfinite(value):
        return 0
    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return 0
    return ivalue if ivalue >= 0 else 0
