from fastapi import APIRouter, Depends, Query, status

from ..auth import get_current_user_id
from ..models.review import (
    CanonicalPhrasingRequest,
    InteractionListResponse,
    InteractionView,
    ItemCreateRequest,
    ItemView,
    PhrasingCreateRequest,
    PhrasingListResponse,
    PhrasingView,
)
from ..services import SchedulerServices, get_services

router = APIRouter(tags=["items"])


@router.post(
    "",
    response_model=ItemView,
    status_code=status.HTTP_201_CREATED,
    summary="アイテムを登録（未復習・即時出題可能な状態）",
)
def create_item(
    req: ItemCreateRequest,
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> ItemView:
    """Register a generated item with a fresh memory state (``next_review_at = created_at``)."""
    item = services.store.create_item(
        user_id=user_id,
        title=req.title,
        description=req.description,
        item_id=req.item_id,
        quality=req.quality,
        now_ms=services.clock(),
    )
    return ItemView.from_item(item)


@router.post("/{item_id}/archive", response_model=ItemView, summary="アイテムをアーカイブ")
def archive_item(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> ItemView:
    return ItemView.from_item(services.store.archive_item(user_id, item_id, now_ms=services.clock()))


@router.post("/{item_id}/unarchive", response_model=ItemView, summary="アーカイブを解除")
def unarchive_item(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> ItemView:
    return ItemView.from_item(services.store.unarchive_item(user_id, item_id, now_ms=services.clock()))


@router.post("/{item_id}/delete", response_model=ItemView, summary="アイテムを論理削除")
def delete_item(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> ItemView:
    """Soft-delete: the item leaves the due queue, its interactions stay untouched."""
    return ItemView.from_item(services.store.soft_delete_item(user_id, item_id, now_ms=services.clock()))


@router.post("/{item_id}/restore", response_model=ItemView, summary="論理削除から復元")
def restore_item(
    item_id: str,
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> ItemView:
    return ItemView.from_item(services.store.restore_item(user_id, item_id, now_ms=services.clock()))


@router.get(
    "/{item_id}/interactions",
    response_model=InteractionListResponse,
    summary="アイテムの解答履歴（新しい順）",
)
def list_interactions(
    item_id: str,
    limit: int = Query(default=10, ge=1, le=50),
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> InteractionListResponse:
    item = services.store.get_owned_item(user_id, item_id)
    interactions = services.store.list_interactions(user_id, item.id, limit=limit)
    return InteractionListResponse(
        items=[InteractionView.from_interaction(interaction) for interaction in interactions]
    )


@router.post(
    "/{item_id}/phrasings",
    response_model=PhrasingView,
    status_code=status.HTTP_201_CREATED,
    summary="アイテムに問い方を追加",
)
def create_phrasing(
    item_id: str,
    req: PhrasingCreateRequest,
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> PhrasingView:
    phrasing = services.store.create_phrasing(
        user_id=user_id,
        item_id=item_id,
        question=req.question,
        answer=req.answer,
        explanation=req.explanation,
        phrasing_id=req.phrasing_id,
        now_ms=services.clock(),
    )
    return PhrasingView.from_phrasing(phrasing)


@router.get(
    "/{item_id}/phrasings",
    response_model=PhrasingListResponse,
    summary="アイテムの問い方一覧（作成順）",
)
def list_phrasings(
    item_id: str,
    include_archived: bool = Query(default=False),
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> PhrasingListResponse:
    item = services.store.get_owned_item(user_id, item_id)
    phrasings = services.store.list_phrasings(user_id, item.id, include_archived=include_archived)
    return PhrasingListResponse(items=[PhrasingView.from_phrasing(phrasing) for phrasing in phrasings])


@router.post(
    "/{item_id}/phrasings/{phrasing_id}/archive",
    response_model=PhrasingView,
    summary="問い方をアーカイブ（canonical 指定も解除）",
)
def archive_phrasing(
    item_id: str,
    phrasing_id: str,
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> PhrasingView:
    phrasing = services.store.archive_phrasing(user_id, item_id, phrasing_id, now_ms=services.clock())
    return PhrasingView.from_phrasing(phrasing)


@router.put(
    "/{item_id}/canonical-phrasing",
    response_model=ItemView,
    summary="優先して出題する問い方を指定",
)
def set_canonical_phrasing(
    item_id: str,
    req: CanonicalPhrasingRequest,
    user_id: str = Depends(get_current_user_id),
    services: SchedulerServices = Depends(get_services),
) -> ItemView:
    """Pin the phrasing shown first; ``phrasing_id: null`` clears the pin."""
    item = services.store.set_canonical_phrasing(
        user_id, item_id, req.phrasing_id, now_ms=services.clock()
    )
    return ItemView.from_item(item)
