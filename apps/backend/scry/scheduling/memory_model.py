"""Memory state model: stability/difficulty/retrievability updates per grade.

忘却曲線 ``R = exp(-t / (9S))`` を前提に、評価（Again/Hard/Good/Easy）ごとに
安定度 S と難易度 D を更新し、目標想起率を満たす次回出題時刻を決める。

なぜ: 出題ループの中核で例外が出ると復習そのものが止まるため、この
モジュールの関数は入力の NaN/負値/時刻の逆転をすべて数値的に丸め込み、
決して例外を送出しない（``parse_grade`` を除く）。
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Any

from ..config import DEFAULT_SCHEDULER_WEIGHTS, Settings
from ..errors import InvalidInput
from ..models.common import MS_PER_DAY, Grade, Lifecycle, coerce_epoch_ms, finite_or
from ..models.memory import Interaction, MemoryState


MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0
MAX_STABILITY_DAYS = 36500.0
# 失念後の安定度は直前の値のこの割合を上限とし、必ず減少させる
LAPSE_STABILITY_CAP = 0.5
DEFAULT_REPLAY_LIMIT = 50
_MIN_STEP_MS = 1_000

_GRADE_ALIASES = {
    "again": Grade.AGAIN,
    "hard": Grade.HARD,
    "good": Grade.GOOD,
    "easy": Grade.EASY,
}


@dataclass(frozen=True)
class SchedulerParams:
    desired_retention: float = 0.9
    maximum_interval_days: float = 365.0
    minimum_interval_days: float = 10.0 / 1440.0
    relearning_step_days: float = 10.0 / 1440.0
    graduation_reps: int = 2
    weights: tuple[float, ...] = DEFAULT_SCHEDULER_WEIGHTS
    replay_limit: int = DEFAULT_REPLAY_LIMIT

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerParams":
        return cls(
            desired_retention=settings.scheduler_desired_retention,
            maximum_interval_days=settings.scheduler_maximum_interval_days,
            minimum_interval_days=settings.scheduler_minimum_interval_minutes / 1440.0,
            relearning_step_days=settings.scheduler_relearning_step_minutes / 1440.0,
            graduation_reps=settings.scheduler_graduation_reps,
            weights=tuple(settings.scheduler_weights),
            replay_limit=settings.scheduler_replay_limit,
        )


DEFAULT_PARAMS = SchedulerParams()


def parse_grade(value: Any) -> Grade:
    """Parse a grade from an enum, 1-4 integer or name such as ``"good"``."""

    if isinstance(value, Grade):
        return value
    if isinstance(value, bool):
        raise InvalidInput("grade must be one of again/hard/good/easy or 1-4", details={"grade": value})
    if isinstance(value, str):
        cleaned = value.strip().lower()
        if cleaned in _GRADE_ALIASES:
            return _GRADE_ALIASES[cleaned]
        if cleaned.isdigit():
            value = int(cleaned)
    if isinstance(value, int):
        try:
            return Grade(value)
        except ValueError:
            pass
    raise InvalidInput("grade must be one of again/hard/good/easy or 1-4", details={"grade": value})


def grade_from_correctness(is_correct: bool) -> Grade:
    """Map a binary answer to a grade: correct → Good, incorrect → Again."""

    return Grade.GOOD if is_correct else Grade.AGAIN


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def _weight(params: SchedulerParams, index: int) -> float:
    weights = params.weights if len(params.weights) > index else DEFAULT_SCHEDULER_WEIGHTS
    return finite_or(weights[index], DEFAULT_SCHEDULER_WEIGHTS[index])


def elapsed_days_since(anchor_ms: int | None, now_ms: int) -> float:
    """Days from ``anchor_ms`` to ``now_ms``; clock skew clamps to zero."""

    if anchor_ms is None:
        return 0.0
    return max(0.0, (now_ms - anchor_ms) / MS_PER_DAY)


def retrievability(elapsed_days: float, stability: float) -> float:
    """Recall probability after ``elapsed_days`` for an item of ``stability``."""

    elapsed = max(0.0, finite_or(elapsed_days, 0.0))
    stability = finite_or(stability, 0.0)
    if stability <= 0:
        return 1.0
    return _clamp(math.exp(-elapsed / (9.0 * stability)), 0.0, 1.0)


def initial_difficulty(grade: Grade, params: SchedulerParams = DEFAULT_PARAMS) -> float:
    raw = _weight(params, 4) - _safe_exp(_weight(params, 5) * (int(grade) - 1)) + 1.0
    return _clamp(finite_or(raw, MAX_DIFFICULTY), MIN_DIFFICULTY, MAX_DIFFICULTY)


def initial_stability(grade: Grade, params: SchedulerParams = DEFAULT_PARAMS) -> float:
    return _clamp(_weight(params, int(grade) - 1), 0.01, MAX_STABILITY_DAYS)


def next_difficulty(difficulty: float, grade: Grade, params: SchedulerParams = DEFAULT_PARAMS) -> float:
    """Grade-weighted difficulty step with linear damping and mean reversion.

    Again は難易度を上げ、Easy は下げる。上限付近では (10 - D) / 9 で
    変化量を減衰させ、初期値 D0(Easy) へ w7 の重みで引き戻す。
    """

    current = _clamp(finite_or(difficulty, MAX_DIFFICULTY), MIN_DIFFICULTY, MAX_DIFFICULTY)
    delta = -_weight(params, 6) * (int(grade) - 3)
    damped = current + delta * (MAX_DIFFICULTY - current) / 9.0
    reversion = _weight(params, 7)
    reverted = reversion * initial_difficulty(Grade.EASY, params) + (1.0 - reversion) * damped
    return _clamp(finite_or(reverted, current), MIN_DIFFICULTY, MAX_DIFFICULTY)


def _safe_exp(exponent: float) -> float:
    try:
        return math.exp(exponent)
    except OverflowError:
        return math.inf


def _recall_stability(
    stability: float,
    difficulty: float,
    recall: float,
    grade: Grade,
    params: SchedulerParams,
) -> float:
    if grade is Grade.HARD:
        modifier = _weight(params, 15)
    elif grade is Grade.EASY:
        modifier = _weight(params, 16)
    else:
        modifier = 1.0
    recall_gain = _safe_exp(_weight(params, 10) * (1.0 - recall)) - 1.0
    if recall_gain <= 0 or modifier <= 0:
        return min(MAX_STABILITY_DAYS, stability)
    try:
        growth = (
            _safe_exp(_weight(params, 8))
            * (11.0 - difficulty)
            * math.pow(stability, -_weight(params, 9))
            * recall_gain
            * modifier
        )
    except OverflowError:
        growth = math.inf
    # 係数が極端でも inf/NaN を返さず、上限で頭打ちにする
    if math.isnan(growth):
        return min(MAX_STABILITY_DAYS, stability)
    candidate = stability * (1.0 + max(0.0, growth))
    return min(MAX_STABILITY_DAYS, max(stability, candidate))


def _lapse_stability(
    stability: float,
    difficulty: float,
    recall: float,
    params: SchedulerParams,
) -> float:
    ceiling = stability * LAPSE_STABILITY_CAP
    try:
        forgotten = (
            _weight(params, 11)
            * math.pow(difficulty, -_weight(params, 12))
            * (math.pow(stability + 1.0, _weight(params, 13)) - 1.0)
            * math.exp(_weight(params, 14) * (1.0 - recall))
        )
    except OverflowError:
        return ceiling
    if not math.isfinite(forgotten) or forgotten <= 0:
        return ceiling
    return min(forgotten, ceiling)


def interval_days(stability: float, params: SchedulerParams = DEFAULT_PARAMS) -> float:
    """Days until recall probability falls to the desired retention."""

    retention = _clamp(finite_or(params.desired_retention, 0.9), 1e-6, 1.0 - 1e-6)
    raw = -9.0 * max(0.0, finite_or(stability, 0.0)) * math.log(retention)
    upper = max(params.minimum_interval_days, params.maximum_interval_days)
    return _clamp(finite_or(raw, upper), params.minimum_interval_days, upper)


def _next_lifecycle(
    previous: Lifecycle, grade: Grade, streak: int, params: SchedulerParams
) -> Lifecycle:
    if grade.is_lapse:
        return Lifecycle.RELEARNING
    if previous in (Lifecycle.NEW, Lifecycle.LEARNING):
        return Lifecycle.REVIEW if streak >= params.graduation_reps else Lifecycle.LEARNING
    return Lifecycle.REVIEW


def advance(
    state: MemoryState,
    grade: Grade,
    now_ms: int,
    *,
    created_at: int | None = None,
    params: SchedulerParams = DEFAULT_PARAMS,
) -> MemoryState:
    """Return the memory state after grading the item at ``now_ms``.

    - 未復習アイテムの経過日数は作成時刻（未指定なら ``next_review_at``）から測る。
    - Again は安定度を直前値より必ず下げ、relearning として短い再学習間隔を置く。
    - 戻り値の ``next_review_at`` は常に ``now_ms`` 以上。
    """

    now = coerce_epoch_ms(now_ms)
    if now is None:
        now = state.last_reviewed_at or state.next_review_at
    anchor = state.last_reviewed_at
    if anchor is None:
        anchor = coerce_epoch_ms(created_at)
    if anchor is None:
        anchor = state.next_review_at
    elapsed = elapsed_days_since(anchor, now)

    previous_stability = _clamp(finite_or(state.stability, 0.0), 0.0, MAX_STABILITY_DAYS)
    reviewed_before = previous_stability > 0
    recall = retrievability(elapsed, previous_stability)

    if reviewed_before and state.difficulty >= MIN_DIFFICULTY:
        previous_difficulty = _clamp(finite_or(state.difficulty, MAX_DIFFICULTY), MIN_DIFFICULTY, MAX_DIFFICULTY)
        difficulty = next_difficulty(previous_difficulty, grade, params)
    else:
        previous_difficulty = initial_difficulty(grade, params)
        difficulty = previous_difficulty

    lapses = max(0, state.lapses)
    if not reviewed_before:
        stability = initial_stability(grade, params)
    elif grade.is_lapse:
        stability = _lapse_stability(previous_stability, previous_difficulty, recall, params)
    else:
        stability = _recall_stability(previous_stability, previous_difficulty, recall, grade, params)

    if grade.is_lapse:
        lapses += 1
        streak = 0
        days = max(0.0, finite_or(params.relearning_step_days, 10.0 / 1440.0))
    else:
        streak = max(0, state.streak) + 1
        days = interval_days(stability, params)

    step_ms = max(_MIN_STEP_MS, int(round(days * MS_PER_DAY)))
    return replace(
        state,
        stability=stability,
        difficulty=difficulty,
        last_reviewed_at=now,
        next_review_at=now + step_ms,
        elapsed_days=elapsed,
        retrievability=recall,
        scheduled_days=days,
        reps=max(0, state.reps) + 1,
        lapses=lapses,
        streak=streak,
        lifecycle=_next_lifecycle(state.lifecycle, grade, streak, params),
    )


def current_retrievability(state: MemoryState, now_ms: int) -> float | None:
    """Recall probability right now; ``None`` for never-reviewed items."""

    if state.reps == 0 or state.stability <= 0:
        return None
    return retrievability(elapsed_days_since(state.last_reviewed_at, now_ms), state.stability)


def is_due(state: MemoryState, now_ms: int) -> bool:
    return state.next_review_at <= now_ms


def replay(
    initial: MemoryState,
    interactions: Iterable[Interaction],
    *,
    created_at: int | None = None,
    params: SchedulerParams = DEFAULT_PARAMS,
    limit: int | None = None,
) -> tuple[MemoryState, int]:
    """Rebuild a memory state by re-grading interactions in chronological order.

    直近 ``limit`` 件だけを古い順に適用する。戻り値は (再計算後の状態, 適用件数)。
    """

    window = params.replay_limit if limit is None else limit
    ordered = sorted(interactions, key=lambda interaction: (interaction.attempted_at, interaction.id))
    if window >= 0:
        ordered = ordered[-window:] if window else []
    state = initial
    for interaction in ordered:
        state = advance(
            state,
            interaction.grade,
            interaction.attempted_at,
            created_at=created_at,
            params=params,
        )
    return state, len(ordered)


__all__ = [
    "DEFAULT_PARAMS",
    "LAPSE_STABILITY_CAP",
    "MAX_DIFFICULTY",
    "MAX_STABILITY_DAYS",
    "MIN_DIFFICULTY",
    "SchedulerParams",
    "advance",
    "current_retrievability",
    "elapsed_days_since",
    "grade_from_correctness",
    "initial_difficulty",
    "initial_stability",
    "interval_days",
    "is_due",
    "next_difficulty",
    "parse_grade",
    "replay",
    "retrievability",
]
