from .due_queue import CardStats, DueCount, DueQueueBuilder, NextItem
from .freshness import freshness, hours_since
from .memory_model import (
    DEFAULT_PARAMS,
    SchedulerParams,
    advance,
    current_retrievability,
    grade_from_correctness,
    is_due,
    parse_grade,
    replay,
)
from .phrasing_policy import PhrasingSelection, select_phrasing
from .recorder import ReviewOutcome, ReviewRecorder, build_interaction_context

__all__ = [
    "CardStats",
    "DEFAULT_PARAMS",
    "DueCount",
    "DueQueueBuilder",
    "NextItem",
    "PhrasingSelection",
    "ReviewOutcome",
    "ReviewRecorder",
    "SchedulerParams",
    "advance",
    "build_interaction_context",
    "current_retrievability",
    "freshness",
    "grade_from_correctness",
    "hours_since",
    "is_due",
    "parse_grade",
    "replay",
    "select_phrasing",
]
