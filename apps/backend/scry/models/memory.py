"""Domain records for schedulable items and their review history.

Firestore ドキュメントとの相互変換もここで行う。記憶状態のフィールドは
範囲クエリ（`next_review_at` など）に使うため、アイテムドキュメントの
トップレベルへフラットに保存する。
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from .common import (
    Grade,
    Lifecycle,
    coerce_epoch_ms,
    finite_or,
    normalize_non_negative_int,
)


_QUALITY_KEYS = ("thin_score", "conflict_score", "quality_score")


def _lifecycle_from(raw: Any, reps: int) -> Lifecycle:
    if reps == 0:
        return Lifecycle.NEW
    try:
        lifecycle = Lifecycle(str(raw))
    except ValueError:
        return Lifecycle.REVIEW
    # reps > 0 なのに new のまま保存されているデータは learning として扱う
    return Lifecycle.LEARNING if lifecycle is Lifecycle.NEW else lifecycle


def _optional_id(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    number = finite_or(value, -1.0)
    return number if number >= 0 else None


@dataclass(frozen=True)
class MemoryState:
    stability: float = 0.0
    difficulty: float = 0.0
    last_reviewed_at: int | None = None
    next_review_at: int = 0
    elapsed_days: float | None = None
    retrievability: float | None = None
    scheduled_days: float = 0.0
    reps: int = 0
    lapses: int = 0
    streak: int = 0
    lifecycle: Lifecycle = Lifecycle.NEW

    @classmethod
    def new(cls, created_at: int) -> "MemoryState":
        """Initial state for a freshly generated item (due immediately)."""

        return cls(next_review_at=int(created_at))

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> "MemoryState":
        reps = normalize_non_negative_int(data.get("reps"))
        created_at = coerce_epoch_ms(data.get("created_at")) or 0
        next_review_at = coerce_epoch_ms(data.get("next_review_at"))
        return cls(
            stability=max(0.0, finite_or(data.get("stability"), 0.0)),
            difficulty=max(0.0, finite_or(data.get("difficulty"), 0.0)),
            last_reviewed_at=coerce_epoch_ms(data.get("last_reviewed_at")),
            next_review_at=created_at if next_review_at is None else next_review_at,
            elapsed_days=_optional_float(data.get("elapsed_days")),
            retrievability=_optional_float(data.get("retrievability")),
            scheduled_days=max(0.0, finite_or(data.get("scheduled_days"), 0.0)),
            reps=reps,
            lapses=normalize_non_negative_int(data.get("lapses")),
            streak=normalize_non_negative_int(data.get("streak")),
            lifecycle=_lifecycle_from(data.get("lifecycle"), reps),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "stability": self.stability,
            "difficulty": self.difficulty,
            "last_reviewed_at": self.last_reviewed_at,
            "next_review_at": self.next_review_at,
            "elapsed_days": self.elapsed_days,
            "retrievability": self.retrievability,
            "scheduled_days": self.scheduled_days,
            "reps": self.reps,
            "lapses": self.lapses,
            "streak": self.streak,
            "lifecycle": self.lifecycle.value,
        }


@dataclass(frozen=True)
class SchedulableItem:
    id: str
    user_id: str
    title: str
    memory: MemoryState
    created_at: int
    updated_at: int
    description: str | None = None
    quality: dict[str, float] = field(default_factory=dict)
    attempt_count: int = 0
    correct_count: int = 0
    last_attempted_at: int | None = None
    archived_at: int | None = None
    deleted_at: int | None = None
    canonical_phrasing_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.archived_at is None and self.deleted_at is None

    @classmethod
    def from_snapshot(cls, doc_id: str, data: Mapping[str, Any]) -> "SchedulableItem":
        created_at = coerce_epoch_ms(data.get("created_at")) or 0
        raw_quality = data.get("quality")
        quality: dict[str, float] = {}
        if isinstance(raw_quality, Mapping):
            for key in _QUALITY_KEYS:
                if key in raw_quality:
                    quality[key] = finite_or(raw_quality.get(key), 0.0)
        return cls(
            id=doc_id,
            user_id=str(data.get("user_id") or ""),
            title=str(data.get("title") or ""),
            description=data.get("description"),
            memory=MemoryState.from_document(data),
            created_at=created_at,
            updated_at=coerce_epoch_ms(data.get("updated_at")) or created_at,
            quality=quality,
            attempt_count=normalize_non_negative_int(data.get("attempt_count")),
            correct_count=normalize_non_negative_int(data.get("correct_count")),
            last_attempted_at=coerce_epoch_ms(data.get("last_attempted_at")),
            archived_at=coerce_epoch_ms(data.get("archived_at")),
            deleted_at=coerce_epoch_ms(data.get("deleted_at")),
            canonical_phrasing_id=_optional_id(data.get("canonical_phrasing_id")),
        )

    def to_document(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "user_id": self.user_id,
            "title": self.title,
            "canonical_phrasing_id": self.canonical_phrasing_id,
            "description": self.description,
            "quality": dict(self.quality),
            "attempt_count": self.attempt_count,
            "correct_count": self.correct_count,
            "last_attempted_at": self.last_attempted_at,
            "archived_at": self.archived_at,
            "deleted_at": self.deleted_at,
            # 複合インデックスで等価条件を使えるよう、可視性は bool でも保持する
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        payload.update(self.memory.to_document())
        return payload

    def with_memory(self, memory: MemoryState, **changes: Any) -> "SchedulableItem":
        return replace(self, memory=memory, **changes)


@dataclass(frozen=True)
class Phrasing:
    """One way of asking about an item (問い方のバリエーション).

    記憶状態はアイテム側にだけ持ち、ここには出題回数などの補助カウンタだけを置く。
    """

    id: str
    user_id: str
    item_id: str
    question: str
    created_at: int
    updated_at: int
    answer: str | None = None
    explanation: str | None = None
    attempt_count: int = 0
    correct_count: int = 0
    last_attempted_at: int | None = None
    archived_at: int | None = None
    deleted_at: int | None = None

    @property
    def is_active(self) -> bool:
        return self.archived_at is None and self.deleted_at is None

    @classmethod
    def from_snapshot(cls, doc_id: str, data: Mapping[str, Any]) -> "Phrasing":
        created_at = coerce_epoch_ms(data.get("created_at")) or 0
        return cls(
            id=doc_id,
            user_id=str(data.get("user_id") or ""),
            item_id=str(data.get("item_id") or ""),
            question=str(data.get("question") or ""),
            answer=data.get("answer") if isinstance(data.get("answer"), str) else None,
            explanation=data.get("explanation") if isinstance(data.get("explanation"), str) else None,
            created_at=created_at,
            updated_at=coerce_epoch_ms(data.get("updated_at")) or created_at,
            attempt_count=normalize_non_negative_int(data.get("attempt_count")),
            correct_count=normalize_non_negative_int(data.get("correct_count")),
            last_attempted_at=coerce_epoch_ms(data.get("last_attempted_at")),
            archived_at=coerce_epoch_ms(data.get("archived_at")),
            deleted_at=coerce_epoch_ms(data.get("deleted_at")),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "item_id": self.item_id,
            "question": self.question,
            "answer": self.answer,
            "explanation": self.explanation,
            "attempt_count": self.attempt_count,
            "correct_count": self.correct_count,
            "last_attempted_at": self.last_attempted_at,
            "archived_at": self.archived_at,
            "deleted_at": self.deleted_at,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def record_attempt(self, *, is_correct: bool, now_ms: int) -> "Phrasing":
        return replace(
            self,
            attempt_count=self.attempt_count + 1,
            correct_count=self.correct_count + (1 if is_correct else 0),
            last_attempted_at=now_ms,
        )


@dataclass(frozen=True)
class Interaction:
    """Immutable record of one graded answer."""

    id: str
    user_id: str
    item_id: str
    answer: str
    is_correct: bool
    grade: Grade
    attempted_at: int
    time_spent_ms: int | None = None
    context: dict[str, Any] | None = None
    state_after: MemoryState | None = None
    phrasing_id: str | None = None

    @classmethod
    def from_snapshot(cls, doc_id: str, data: Mapping[str, Any]) -> "Interaction":
        is_correct = bool(data.get("is_correct"))
        try:
            grade = Grade(int(data.get("grade")))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            grade = Grade.GOOD if is_correct else Grade.AGAIN
        time_spent = data.get("time_spent_ms")
        raw_context = data.get("context")
        raw_state = data.get("state_after")
        return cls(
            id=doc_id,
            user_id=str(data.get("user_id") or ""),
            item_id=str(data.get("item_id") or ""),
            answer=str(data.get("answer") or ""),
            is_correct=is_correct,
            grade=grade,
            attempted_at=coerce_epoch_ms(data.get("attempted_at")) or 0,
            time_spent_ms=None if time_spent is None else normalize_non_negative_int(time_spent),
            context=dict(raw_context) if isinstance(raw_context, Mapping) else None,
            state_after=MemoryState.from_document(raw_state) if isinstance(raw_state, Mapping) else None,
            phrasing_id=_optional_id(data.get("phrasing_id")),
        )

    def to_document(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "user_id": self.user_id,
            "item_id": self.item_id,
            "answer": self.answer,
            "is_correct": self.is_correct,
            "grade": int(self.grade),
            "attempted_at": self.attempted_at,
        }
        if self.phrasing_id is not None:
            payload["phrasing_id"] = self.phrasing_id
        if self.time_spent_ms is not None:
            payload["time_spent_ms"] = self.time_spent_ms
        if self.context:
            payload["context"] = dict(self.context)
        if self.state_after is not None:
            payload["state_after"] = self.state_after.to_document()
        return payload
