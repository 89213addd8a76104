"""Review recorder: the only writer of memory state.

1回の採点につき、1件のアイテムの記憶状態更新と1件の解答履歴の追記を
同一トランザクションで行う。
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from ..errors import InvalidInput, NotFound, PermissionDenied
from ..logging import get_logger
from ..models.common import Clock, Grade, Lifecycle, system_clock
from ..models.memory import Interaction, MemoryState, Phrasing, SchedulableItem
from ..store.common import derive_interaction_id, validate_document_id
from ..store.firestore_store import ReviewBuilder, ReviewWrite
from .memory_model import DEFAULT_PARAMS, SchedulerParams, advance, parse_grade


MAX_ANSWER_LENGTH = 10_000
MAX_TIME_SPENT_MS = 24 * 60 * 60 * 1000


class ReviewStore(Protocol):
    def apply_review(
        self,
        *,
        item_id: str,
        interaction_id: str,
        build: ReviewBuilder,
        check_existing: bool = False,
        phrasing_id: str | None = None,
    ) -> ReviewWrite: ...


@dataclass(frozen=True)
class ReviewOutcome:
    item_id: str
    interaction_id: str
    state: MemoryState
    previous_lifecycle: Lifecycle | None
    server_time: int
    replayed: bool = False
    phrasing_id: str | None = None


def build_interaction_context(
    *,
    session_id: str | None = None,
    is_retry: bool | None = None,
    state: MemoryState | None = None,
) -> dict[str, Any] | None:
    """解答履歴に添える最小限のコンテキストを組み立てる。

    値が意味を持つキーだけを残し、空なら None を返す。
    """

    context: dict[str, Any] = {}
    if session_id:
        context["session_id"] = session_id
    if is_retry is not None:
        context["is_retry"] = bool(is_retry)
    if state is not None:
        context["scheduled_days"] = state.scheduled_days
        context["next_review_at"] = state.next_review_at
        context["lifecycle"] = state.lifecycle.value
    return context or None


def _validate_time_spent(time_spent_ms: Any) -> int | None:
    if time_spent_ms is None:
        return None
    if isinstance(time_spent_ms, bool) or not isinstance(time_spent_ms, int):
        raise InvalidInput("time_spent_ms must be an integer", details={"field": "time_spent_ms"})
    if time_spent_ms < 0 or time_spent_ms > MAX_TIME_SPENT_MS:
        raise InvalidInput(
            "time_spent_ms is out of range",
            details={"field": "time_spent_ms", "limit": MAX_TIME_SPENT_MS},
        )
    return time_spent_ms


class ReviewRecorder:
    """Apply a graded answer to one item atomically.

    - 入力（ID/評価/解答）の検証はトランザクション開始前に行う。
    - 存在・可視性（NotFound）と所有者（PermissionDenied）はトランザクション内で
      読み出した値に対して判定し、失敗時は何も書き込まない。
    - ``request_id`` を渡した場合のみ重複送信を検出し、最初の結果を返す。
      渡さない場合は受理した呼び出しをすべて独立した採点として扱う。
    - ``phrasing_id`` を渡すと、その問い方の出題回数も同じトランザクションで更新する。
    """

    def __init__(
        self,
        store: ReviewStore,
        *,
        clock: Clock = system_clock,
        params: SchedulerParams = DEFAULT_PARAMS,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._params = params
        self._logger = logger or get_logger("review_recorder")

    def record_review(
        self,
        user_id: str,
        item_id: str,
        grade: Grade | int | str,
        answer: str,
        time_spent_ms: int | None = None,
        now_ms: int | None = None,
        *,
        session_id: str | None = None,
        is_retry: bool | None = None,
        request_id: str | None = None,
        phrasing_id: str | None = None,
    ) -> ReviewOutcome:
        try:
            owner = validate_document_id(user_id, field_name="user_id")
            target = validate_document_id(item_id, field_name="item_id")
            asked = (
                validate_document_id(phrasing_id, field_name="phrasing_id")
                if phrasing_id is not None
                else None
            )
            parsed_grade = parse_grade(grade)
            if not isinstance(answer, str):
                raise InvalidInput("answer must be a string", details={"field": "answer"})
            if len(answer) > MAX_ANSWER_LENGTH:
                raise InvalidInput(
                    "answer is too long",
                    details={"field": "answer", "limit": MAX_ANSWER_LENGTH},
                )
            spent = _validate_time_spent(time_spent_ms)
            idempotency_key = (
                validate_document_id(request_id, field_name="request_id")
                if request_id is not None
                else None
            )
        except InvalidInput as exc:
            self._logger.info("review_rejected", reason=exc.code, message=exc.message, item_id=item_id)
            raise

        now = self._clock() if now_ms is None else int(now_ms)
        interaction_id = (
            derive_interaction_id(owner, target, idempotency_key)
            if idempotency_key is not None
            else uuid.uuid4().hex
        )
        previous: dict[str, Lifecycle] = {}

        def _build(
            current: SchedulableItem | None, phrasing: Phrasing | None
        ) -> tuple[SchedulableItem, Phrasing | None, Interaction]:
            if current is None:
                raise NotFound("item not found", details={"item_id": target})
            if current.user_id != owner:
                raise PermissionDenied("item belongs to another user", details={"item_id": target})
            if not current.is_active:
                raise NotFound("item is archived or deleted", details={"item_id": target})
            if asked is not None:
                # 出題後にアーカイブされた問い方への解答は受け付ける
                details = {"item_id": target, "phrasing_id": asked}
                if phrasing is None or phrasing.deleted_at is not None:
                    raise NotFound("phrasing not found", details=details)
                if phrasing.user_id != owner:
                    raise PermissionDenied("phrasing belongs to another user", details=details)
                if phrasing.item_id != target:
                    raise NotFound("phrasing not found for this item", details=details)

            previous["lifecycle"] = current.memory.lifecycle
            state = advance(
                current.memory,
                parsed_grade,
                now,
                created_at=current.created_at,
                params=self._params,
            )
            is_correct = not parsed_grade.is_lapse
            updated = current.with_memory(
                state,
                attempt_count=current.attempt_count + 1,
                correct_count=current.correct_count + (1 if is_correct else 0),
                last_attempted_at=now,
                updated_at=now,
            )
            interaction = Interaction(
                id=interaction_id,
                user_id=owner,
                item_id=target,
                answer=answer,
                is_correct=is_correct,
                grade=parsed_grade,
                attempted_at=now,
                time_spent_ms=spent,
                context=build_interaction_context(
                    session_id=session_id, is_retry=is_retry, state=state
                ),
                state_after=state,
                phrasing_id=asked,
            )
            attempted = (
                phrasing.record_attempt(is_correct=is_correct, now_ms=now)
                if phrasing is not None
                else None
            )
            return updated, attempted, interaction

        try:
            written = self._store.apply_review(
                item_id=target,
                interaction_id=interaction_id,
                build=_build,
                check_existing=idempotency_key is not None,
                phrasing_id=asked,
            )
        except (NotFound, PermissionDenied) as exc:
            self._logger.info(
                "review_rejected",
                reason=exc.code,
                message=exc.message,
                item_id=target,
                user_id=owner,
            )
            raise

        state = written.item.memory
        if written.replayed:
            self._logger.info(
                "review_replayed",
                item_id=target,
                user_id=owner,
                interaction_id=written.interaction.id,
            )
            return ReviewOutcome(
                item_id=target,
                interaction_id=written.interaction.id,
                state=state,
                previous_lifecycle=None,
                server_time=now,
                replayed=True,
                phrasing_id=written.interaction.phrasing_id,
            )

        self._logger.info(
            "review_recorded",
            item_id=target,
            user_id=owner,
            interaction_id=written.interaction.id,
            phrasing_id=asked,
            grade=parsed_grade.name.lower(),
            reps=state.reps,
            lapses=state.lapses,
            lifecycle=state.lifecycle.value,
            stability=state.stability,
            next_review_at=state.next_review_at,
        )
        return ReviewOutcome(
            item_id=target,
            interaction_id=written.interaction.id,
            state=state,
            previous_lifecycle=previous.get("lifecycle"),
            phrasing_id=asked,
            server_time=now,
        )
