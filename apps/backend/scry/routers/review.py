from fastapi import APIRouter, Depends, Header

from ..auth import get_current_user_id
from ..models.review import (
    CardStatsResponse,
    DueCountResponse,
    InteractionView,
    ItemView,
    MemoryStateView,
    NextItemResponse,
    PhrasingView,
    ReviewGradeRequest,
    ReviewGradeResponse,
)
from ..scheduling.memory_model import grade_from_correctness
from ..services import SchedulerServices, get_services

router = APIRouter(tags=["review"])


@router.get("/due-count", response_model=DueCountResponse, summary="出題待ち件数を取得")
def review_due_count(
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> DueCountResponse:
    """Return how many items are due now, using server time only.

    ポーリング前提のため、件数は集計クエリだけで求める。
    """
    result = services.due_queue.due_count(user_id)
    return DueCountResponse(
        due_now=result.due_now,
        new_count=result.new_count,
        total_reviewable=result.total_reviewable,
        server_time=result.server_time,
    )


@router.get("/next", response_model=NextItemResponse, summary="次に出題するアイテムを取得")
def review_next(
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> NextItemResponse:
    """Return the single best item to present now, or ``item: null``.

    選んだアイテムの問い方と直近の解答履歴も合わせて返す。
    """
    result = services.due_queue.next_item(user_id)
    return NextItemResponse(
        item=ItemView.from_item(result.item) if result.item is not None else None,
        server_time=result.server_time,
        selection_reason=result.selection_reason,
        freshness=result.freshness,
        retrievability=result.retrievability,
        phrasing=PhrasingView.from_phrasing(result.phrasing) if result.phrasing is not None else None,
        phrasing_selection_reason=result.phrasing_selection_reason,
        recent_interactions=[
            InteractionView.from_interaction(interaction) for interaction in result.recent_interactions
        ],
        success_rate=result.success_rate,
    )


@router.post("/grade", response_model=ReviewGradeResponse, summary="採点して記憶状態を更新")
def review_grade(
    req: ReviewGradeRequest,
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> ReviewGradeResponse:
    """Grade one item and return its updated memory state.

    - `Idempotency-Key` を付けた再送は二重に採点せず、最初の結果を返す。
    - キーなしの呼び出しはそれぞれ独立した採点として扱う。
    """
    grade = req.grade if req.grade is not None else grade_from_correctness(bool(req.is_correct))
    outcome = services.recorder.record_review(
        user_id,
        req.item_id,
        grade,
        req.answer,
        req.time_spent_ms,
        session_id=req.session_id,
        is_retry=req.is_retry,
        request_id=idempotency_key,
        phrasing_id=req.phrasing_id,
    )
    return ReviewGradeResponse(
        item_id=outcome.item_id,
        interaction_id=outcome.interaction_id,
        state=MemoryStateView.from_state(outcome.state),
        previous_lifecycle=outcome.previous_lifecycle,
        server_time=outcome.server_time,
        replayed=outcome.replayed,
        phrasing_id=outcome.phrasing_id,
    )


@router.get("/stats", response_model=CardStatsResponse, summary="ライフサイクル別の件数統計")
def review_stats(
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> CardStatsResponse:
    stats = services.due_queue.card_stats(user_id)
    return CardStatsResponse(
        total_cards=stats.total_cards,
        new_count=stats.new_count,
        learning_count=stats.learning_count,
        mature_count=stats.mature_count,
        next_review_time=stats.next_review_time,
        server_time=stats.server_time,
    )
