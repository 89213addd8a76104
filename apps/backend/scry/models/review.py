from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .common import Lifecycle
from .memory import Interaction, MemoryState, Phrasing, SchedulableItem


class MemoryStateView(BaseModel):
    """Memory state as exposed over the API (timestamps in epoch ms)."""

    stability: float
    difficulty: float
    last_reviewed_at: int | None = None
    next_review_at: int
    elapsed_days: float | None = None
    retrievability: float | None = None
    scheduled_days: float
    reps: int
    lapses: int
    lifecycle: Lifecycle

    @classmethod
    def from_state(cls, state: MemoryState) -> "MemoryStateView":
        return cls(
            stability=state.stability,
            difficulty=state.difficulty,
            last_reviewed_at=state.last_reviewed_at,
            next_review_at=state.next_review_at,
            elapsed_days=state.elapsed_days,
            retrievability=state.retrievability,
            scheduled_days=state.scheduled_days,
            reps=state.reps,
            lapses=state.lapses,
            lifecycle=state.lifecycle,
        )


class ItemView(BaseModel):
    """A schedulable item (concept) with its embedded memory state."""

    id: str
    title: str
    description: str | None = None
    created_at: int
    is_active: bool
    archived_at: int | None = None
    deleted_at: int | None = None
    attempt_count: int = 0
    correct_count: int = 0
    last_attempted_at: int | None = None
    quality: dict[str, float] = Field(default_factory=dict)
    canonical_phrasing_id: str | None = None
    memory: MemoryStateView

    @classmethod
    def from_item(cls, item: SchedulableItem) -> "ItemView":
        return cls(
            id=item.id,
            title=item.title,
            description=item.description,
            created_at=item.created_at,
            is_active=item.is_active,
            archived_at=item.archived_at,
            deleted_at=item.deleted_at,
            attempt_count=item.attempt_count,
            correct_count=item.correct_count,
            last_attempted_at=item.last_attempted_at,
            quality=dict(item.quality),
            canonical_phrasing_id=item.canonical_phrasing_id,
            memory=MemoryStateView.from_state(item.memory),
        )


class DueCountResponse(BaseModel):
    """件数表示ウィジェット用の集計（server_time は表示専用の基準時刻）。"""

    due_now: int
    new_count: int
    total_reviewable: int
    server_time: int


class CardStatsResponse(BaseModel):
    total_cards: int
    new_count: int
    learning_count: int
    mature_count: int
    next_review_time: int | None = None
    server_time: int


class ReviewGradeRequest(BaseModel):
    """Request model for submitting a graded answer.

    - grade: again/hard/good/easy または 1-4
    - is_correct: grade を省略した場合の二値採点（正解=good, 不正解=again）
    時刻はサーバー側で決めるため、クライアントからは受け取らない。
    """

    model_config = ConfigDict(extra="ignore")

    item_id: str = Field(min_length=1, max_length=256)
    grade: int | str | None = None
    is_correct: bool | None = None
    answer: str = Field(default="", max_length=10_000)
    time_spent_ms: int | None = Field(default=None, ge=0)
    session_id: str | None = Field(default=None, max_length=128)
    is_retry: bool | None = None
    phrasing_id: str | None = Field(default=None, min_length=1, max_length=256)

    @model_validator(mode="after")
    def _require_grade_or_correctness(self) -> "ReviewGradeRequest":
        if self.grade is None and self.is_correct is None:
            raise ValueError("either grade or is_correct is required")
        return self


class ReviewGradeResponse(BaseModel):
    item_id: str
    interaction_id: str
    state: MemoryStateView
    previous_lifecycle: Lifecycle | None = None
    server_time: int
    replayed: bool = False
    phrasing_id: str | None = None


class ItemCreateRequest(BaseModel):
    """生成パイプラインがアイテムを登録するためのリクエスト。"""

    title: str = Field(min_length=1, max_length=2_000)
    description: str | None = Field(default=None, max_length=10_000)
    item_id: str | None = Field(default=None, min_length=1, max_length=256)
    quality: dict[str, float] | None = None


class InteractionView(BaseModel):
    id: str
    item_id: str
    answer: str
    is_correct: bool
    grade: int
    attempted_at: int
    time_spent_ms: int | None = None
    context: dict[str, Any] | None = None
    phrasing_id: str | None = None

    @classmethod
    def from_interaction(cls, interaction: Interaction) -> "InteractionView":
        return cls(
            id=interaction.id,
            item_id=interaction.item_id,
            answer=interaction.answer,
            is_correct=interaction.is_correct,
            grade=int(interaction.grade),
            attempted_at=interaction.attempted_at,
            time_spent_ms=interaction.time_spent_ms,
            context=interaction.context,
            phrasing_id=interaction.phrasing_id,
        )


class InteractionListResponse(BaseModel):
    items: list[InteractionView]


class PhrasingView(BaseModel):
    id: str
    item_id: str
    question: str
    answer: str | None = None
    explanation: str | None = None
    created_at: int
    is_active: bool
    archived_at: int | None = None
    attempt_count: int = 0
    correct_count: int = 0
    last_attempted_at: int | None = None

    @classmethod
    def from_phrasing(cls, phrasing: Phrasing) -> "PhrasingView":
        return cls(
            id=phrasing.id,
            item_id=phrasing.item_id,
            question=phrasing.question,
            answer=phrasing.answer,
            explanation=phrasing.explanation,
            created_at=phrasing.created_at,
            is_active=phrasing.is_active,
            archived_at=phrasing.archived_at,
            attempt_count=phrasing.attempt_count,
            correct_count=phrasing.correct_count,
            last_attempted_at=phrasing.last_attempted_at,
        )


class PhrasingListResponse(BaseModel):
    items: list[PhrasingView]


class PhrasingCreateRequest(BaseModel):
    """生成パイプラインがアイテムに問い方を追加するためのリクエスト。"""

    question: str = Field(min_length=1, max_length=10_000)
    answer: str | None = Field(default=None, max_length=10_000)
    explanation: str | None = Field(default=None, max_length=10_000)
    phrasing_id: str | None = Field(default=None, min_length=1, max_length=256)


class CanonicalPhrasingRequest(BaseModel):
    """phrasing_id=None で canonical 指定を解除する。"""

    phrasing_id: str | None = Field(default=None, min_length=1, max_length=256)


class NextItemResponse(BaseModel):
    """次に出題するアイテム。候補が無い場合は item=None（エラーではない）。

    - phrasing: 出題する問い方。問い方が無いアイテムでは None（アイテム自体を出題）
    - recent_interactions: 直近の解答履歴（新しい順、最大10件）
    - success_rate: アイテム単位の正答率（未解答なら None）
    """

    item: ItemView | None = None
    server_time: int
    selection_reason: str
    freshness: float | None = None
    retrievability: float | None = None
    phrasing: PhrasingView | None = None
    phrasing_selection_reason: str = "none"
    recent_interactions: list[InteractionView] = Field(default_factory=list)
    success_rate: float | None = None
