"""Due queue: pick the next item to present and count what is due.

各呼び出しはサーバー時刻を基準に毎回計算し直し、結果をキャッシュしない。
アイテムの選択は `limit 1` か count 集計だけで行い、選んだ1件に対してのみ
問い方（最大50件）と直近の解答履歴（最大10件）を読む。ユーザーの
アイテム総数に比例するコストを持たない。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from ..logging import get_logger
from ..models.common import Clock, Lifecycle, system_clock
from ..models.memory import Interaction, Phrasing, SchedulableItem
from ..store.common import validate_document_id
from .freshness import freshness, hours_since
from .memory_model import current_retrievability
from .phrasing_policy import REASON_NONE, select_phrasing


# next_item に添える直近の解答履歴の件数
RECENT_INTERACTIONS_LIMIT = 10


class DueQueueStore(Protocol):
    def count_active(self, user_id: str, filters: Any = ()) -> int: ...

    def count_by_lifecycle(self, user_id: str, lifecycle: Lifecycle) -> int: ...

    def find_most_overdue(self, user_id: str, now_ms: int) -> SchedulableItem | None: ...

    def find_oldest_new_created_since(self, user_id: str, now_ms: int) -> SchedulableItem | None: ...

    def find_newest_new(self, user_id: str) -> SchedulableItem | None: ...

    def find_next_scheduled(self, user_id: str, now_ms: int) -> SchedulableItem | None: ...

    def list_active_phrasings(self, user_id: str, item_id: str) -> list[Phrasing]: ...

    def list_interactions(self, user_id: str, item_id: str, *, limit: int = 10) -> list[Interaction]: ...


@dataclass(frozen=True)
class DueCount:
    due_now: int
    new_count: int
    total_reviewable: int
    server_time: int


@dataclass(frozen=True)
class NextItem:
    item: SchedulableItem | None
    server_time: int
    selection_reason: str
    freshness: float | None = None
    retrievability: float | None = None
    phrasing: Phrasing | None = None
    phrasing_selection_reason: str = REASON_NONE
    recent_interactions: tuple[Interaction, ...] = ()

    @property
    def success_rate(self) -> float | None:
        if self.item is None or self.item.attempt_count == 0:
            return None
        return self.item.correct_count / self.item.attempt_count


@dataclass(frozen=True)
class CardStats:
    total_cards: int
    new_count: int
    learning_count: int
    mature_count: int
    next_review_time: int | None
    server_time: int


class DueQueueBuilder:
    """Read side of the scheduler.

    - next_item: 期限切れ → 未復習（新しさ順）→ なし、の順で1件だけ選び、
      その問い方を canonical → least-seen の順で決める。
    - due_count / card_stats: count 集計のみで件数を返す。
    乱数による並べ替えは行わないため、書き込みがなければ同じ結果を返す。
    """

    def __init__(
        self,
        store: DueQueueStore,
        *,
        clock: Clock = system_clock,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._logger = logger or get_logger("due_queue")

    def _now(self, now_ms: int | None) -> int:
        return self._clock() if now_ms is None else int(now_ms)

    def due_count(self, user_id: str, now_ms: int | None = None) -> DueCount:
        owner = validate_document_id(user_id, field_name="user_id")
        now = self._now(now_ms)
        due_now = self._store.count_active(owner, [("next_review_at", "<=", now)])
        new_count = self._store.count_active(owner, [("reps", "==", 0)])
        # 未復習だが作成時刻が未来（時計ずれ）のものは due に含まれないため別に数える
        new_not_yet_due = self._store.count_active(
            owner, [("reps", "==", 0), ("next_review_at", ">", now)]
        )
        result = DueCount(
            due_now=due_now,
            new_count=new_count,
            total_reviewable=due_now + new_not_yet_due,
            server_time=now,
        )
        self._logger.debug(
            "due_count_computed",
            user_id=owner,
            due_now=result.due_now,
            new_count=result.new_count,
            total_reviewable=result.total_reviewable,
            server_time=now,
        )
        return result

    def next_item(self, user_id: str, now_ms: int | None = None) -> NextItem:
        owner = validate_document_id(user_id, field_name="user_id")
        now = self._now(now_ms)

        item = self._store.find_most_overdue(owner, now)
        reason = "due"
        if item is None:
            # 作成時刻が now 以降の未復習アイテムは新しさが 1.0 で同率のため最古を採る。
            # それが無ければ最も新しく作られた未復習アイテムが最も新しさが高い。
            item = self._store.find_oldest_new_created_since(owner, now)
            if item is None:
                item = self._store.find_newest_new(owner)
            reason = "new"
        if item is None:
            self._logger.debug("next_item_selected", user_id=owner, reason="none", server_time=now)
            return NextItem(item=None, server_time=now, selection_reason="none")

        score: float | None = None
        recall: float | None = None
        if item.memory.reps == 0:
            score = freshness(hours_since(item.created_at, now))
        else:
            recall = current_retrievability(item.memory, now)
        # 問い方が1件も無いアイテムはアイテム自体を出題する（phrasing=None）
        selection = select_phrasing(
            self._store.list_active_phrasings(owner, item.id),
            canonical_id=item.canonical_phrasing_id,
        )
        recent = self._store.list_interactions(owner, item.id, limit=RECENT_INTERACTIONS_LIMIT)
        self._logger.debug(
            "next_item_selected",
            user_id=owner,
            item_id=item.id,
            reason=reason,
            lifecycle=item.memory.lifecycle.value,
            freshness=score,
            retrievability=recall,
            phrasing_id=selection.phrasing.id if selection.phrasing is not None else None,
            phrasing_reason=selection.reason,
            server_time=now,
        )
        return NextItem(
            item=item,
            server_time=now,
            selection_reason=reason,
            freshness=score,
            retrievability=recall,
            phrasing=selection.phrasing,
            phrasing_selection_reason=selection.reason,
            recent_interactions=tuple(recent),
        )

    def card_stats(self, user_id: str, now_ms: int | None = None) -> CardStats:
        owner = validate_document_id(user_id, field_name="user_id")
        now = self._now(now_ms)
        learning = self._store.count_by_lifecycle(owner, Lifecycle.LEARNING)
        relearning = self._store.count_by_lifecycle(owner, Lifecycle.RELEARNING)
        upcoming = self._store.find_next_scheduled(owner, now)
        return CardStats(
            total_cards=self._store.count_active(owner),
            new_count=self._store.count_by_lifecycle(owner, Lifecycle.NEW),
            learning_count=learning + relearning,
            mature_count=self._store.count_by_lifecycle(owner, Lifecycle.REVIEW),
            next_review_time=upcoming.memory.next_review_at if upcoming is not None else None,
            server_time=now,
        )
