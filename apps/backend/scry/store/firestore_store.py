from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any

from google.api_core import exceptions as gexc
from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore

from ..errors import InvalidInput, NotFound, PermissionDenied, SchedulerError
from ..logging import get_logger
from ..models.common import Lifecycle, system_clock
from ..models.memory import Interaction, MemoryState, Phrasing, SchedulableItem
from .common import (
    coerce_firestore_snapshot,
    extract_count_from_aggregation,
    validate_document_id,
)


ITEMS_COLLECTION = "concepts"
INTERACTIONS_COLLECTION = "interactions"
PHRASINGS_COLLECTION = "phrasings"

# 1アイテムあたりに読み込む問い方の上限
MAX_PHRASINGS_PER_ITEM = 50

QueryFilter = tuple[str, str, Any]


@dataclass(frozen=True)
class ReviewWrite:
    """Result of one review transaction."""

    item: SchedulableItem
    interaction: Interaction
    replayed: bool = False
    phrasing: Phrasing | None = None


# (読み出したアイテム or None, 読み出した問い方 or None)
#   -> (更新後アイテム, 更新後の問い方 or None, 追記する解答履歴)
ReviewBuilder = Callable[
    [SchedulableItem | None, Phrasing | None],
    tuple[SchedulableItem, Phrasing | None, Interaction],
]


def _first_snapshot(query: Any) -> Any | None:
    return next(iter(query.stream()), None)


def _rollback_quietly(transaction: Any, logger: Any, *, operation: str) -> None:
    try:
        transaction._rollback()
    except (ValueError, gexc.GoogleAPIError) as exc:  # pragma: no cover - rollback best-effort
        logger.warning(
            "firestore_rollback_failed",
            operation=operation,
            error=str(exc),
            error_class=exc.__class__.__name__,
        )


class FirestoreBaseStore:
    """Firestore クライアント共通のヘルパー。"""

    def __init__(self, client: firestore.Client, *, logger: Any | None = None):
        self._client = client
        self._logger = logger or get_logger("firestore_store")

    def _run_transaction(self, operation: str, body: Callable[[Any], Any]) -> Any:
        """Run ``body(transaction)`` and commit; roll back on any failure.

        ``body`` は読み取りをすべて済ませてから書き込みを積むこと。
        SchedulerError はログを出さずにそのまま伝播する。
        """

        transaction = self._client.transaction()
        transaction._begin()
        try:
            result = body(transaction)
            transaction._commit()
            return result
        except SchedulerError:
            _rollback_quietly(transaction, self._logger, operation=operation)
            raise
        except (ValueError, gexc.GoogleAPIError) as exc:
            _rollback_quietly(transaction, self._logger, operation=operation)
            self._logger.warning(
                "firestore_transaction_failed",
                operation=operation,
                error=str(exc),
                error_class=exc.__class__.__name__,
            )
            raise


class FirestoreItemStore(FirestoreBaseStore):
    """Schedulable items (``concepts`` collection) and their index-bounded queries.

    すべての一覧系クエリは `user_id`/`is_active` の等価条件と単一フィールドの
    範囲条件に `limit` か集計（count）を組み合わせた形に限定する。ユーザーの
    アイテム総数に比例して読み出し件数が増える走査は行わない。
    """

    def __init__(self, client: firestore.Client, *, logger: Any | None = None):
        super().__init__(client, logger=logger)
        self._items = self._client.collection(ITEMS_COLLECTION)

    # --- lifecycle (生成パイプライン側の契約) ---
    def create_item(
        self,
        *,
        user_id: str,
        title: str,
        description: str | None = None,
        now_ms: int | None = None,
        item_id: str | None = None,
        quality: dict[str, float] | None = None,
    ) -> SchedulableItem:
        owner = validate_document_id(user_id, field_name="user_id")
        doc_id = (
            validate_document_id(item_id, field_name="item_id")
            if item_id is not None
            else uuid.uuid4().hex
        )
        cleaned_title = str(title or "").strip()
        if not cleaned_title:
            raise InvalidInput("title must not be empty", details={"field": "title"})
        created_at = system_clock() if now_ms is None else int(now_ms)
        item = SchedulableItem(
            id=doc_id,
            user_id=owner,
            title=cleaned_title,
            description=description,
            memory=MemoryState.new(created_at),
            created_at=created_at,
            updated_at=created_at,
            quality=dict(quality or {}),
        )
        try:
            self._items.document(doc_id).create(item.to_document())
        except AlreadyExists as exc:
            raise InvalidInput("item already exists", details={"item_id": doc_id}) from exc
        self._logger.info("item_created", item_id=doc_id, user_id=owner)
        return item

    def get_item(self, item_id: str) -> SchedulableItem | None:
        doc_id = validate_document_id(item_id, field_name="item_id")
        snapshot = self._items.document(doc_id).get()
        if not snapshot.exists:
            return None
        return SchedulableItem.from_snapshot(snapshot.id, snapshot.to_dict() or {})

    def get_owned_item(self, user_id: str, item_id: str) -> SchedulableItem:
        """所有者確認つきでアイテムを取得する（可視性は問わない）。"""

        item = self.get_item(item_id)
        if item is None:
            raise NotFound("item not found", details={"item_id": item_id})
        if item.user_id != user_id:
            raise PermissionDenied("item belongs to another user", details={"item_id": item_id})
        return item

    def _set_visibility(
        self,
        user_id: str,
        item_id: str,
        *,
        now_ms: int | None,
        changes: Callable[[SchedulableItem, int], dict[str, int | None]],
        event: str,
    ) -> SchedulableItem:
        item = self.get_owned_item(user_id, item_id)
        now = system_clock() if now_ms is None else int(now_ms)
        markers = changes(item, now)
        archived_at = markers.get("archived_at", item.archived_at)
        deleted_at = markers.get("deleted_at", item.deleted_at)
        payload: dict[str, Any] = {
            **markers,
            "is_active": archived_at is None and deleted_at is None,
            "updated_at": now,
        }
        self._items.document(item.id).update(payload)
        self._logger.info(event, item_id=item.id, user_id=user_id, is_active=payload["is_active"])
        return SchedulableItem.from_snapshot(item.id, {**item.to_document(), **payload})

    def archive_item(self, user_id: str, item_id: str, *, now_ms: int | None = None) -> SchedulableItem:
        return self._set_visibility(
            user_id,
            item_id,
            now_ms=now_ms,
            changes=lambda item, now: {"archived_at": item.archived_at or now},
            event="item_archived",
        )

    def unarchive_item(self, user_id: str, item_id: str, *, now_ms: int | None = None) -> SchedulableItem:
        return self._set_visibility(
            user_id,
            item_id,
            now_ms=now_ms,
            changes=lambda item, now: {"archived_at": None},
            event="item_unarchived",
        )

    def soft_delete_item(self, user_id: str, item_id: str, *, now_ms: int | None = None) -> SchedulableItem:
        return self._set_visibility(
            user_id,
            item_id,
            now_ms=now_ms,
            changes=lambda item, now: {"deleted_at": item.deleted_at or now},
            event="item_deleted",
        )

    def restore_item(self, user_id: str, item_id: str, *, now_ms: int | None = None) -> SchedulableItem:
        return self._set_visibility(
            user_id,
            item_id,
            now_ms=now_ms,
            changes=lambda item, now: {"deleted_at": None},
            event="item_restored",
        )

    # --- due queue queries ---
    def _active_query(self, user_id: str, filters: Sequence[QueryFilter] = ()) -> Any:
        query = self._items.where("user_id", "==", user_id).where("is_active", "==", True)
        for field_path, op_string, value in filters:
            query = query.where(field_path, op_string, value)
        return query

    def count_active(self, user_id: str, filters: Sequence[QueryFilter] = ()) -> int:
        """Count active items matching ``filters`` with a server-side aggregation."""

        aggregation = self._active_query(user_id, filters).count(alias="count").get()
        return extract_count_from_aggregation(aggregation)

    def _first_item(self, query: Any) -> SchedulableItem | None:
        snapshot = _first_snapshot(query.limit(1))
        if snapshot is None:
            return None
        return SchedulableItem.from_snapshot(snapshot.id, snapshot.to_dict() or {})

    def find_most_overdue(self, user_id: str, now_ms: int) -> SchedulableItem | None:
        """Smallest ``next_review_at <= now``; ties go to the lowest stability."""

        query = (
            self._active_query(user_id, [("next_review_at", "<=", now_ms)])
            .order_by("next_review_at")
            .order_by("stability")
        )
        return self._first_item(query)

    def find_oldest_new_created_since(self, user_id: str, now_ms: int) -> SchedulableItem | None:
        """未復習かつ作成時刻が ``now`` 以降（時計ずれ）のうち最古の1件。"""

        query = self._active_query(
            user_id, [("reps", "==", 0), ("created_at", ">=", now_ms)]
        ).order_by("created_at")
        return self._first_item(query)

    def find_newest_new(self, user_id: str) -> SchedulableItem | None:
        query = self._active_query(user_id, [("reps", "==", 0)]).order_by(
            "created_at", direction=firestore.Query.DESCENDING
        )
        return self._first_item(query)

    def find_next_scheduled(self, user_id: str, now_ms: int) -> SchedulableItem | None:
        query = self._active_query(user_id, [("next_review_at", ">", now_ms)]).order_by(
            "next_review_at"
        )
        return self._first_item(query)


def _owned_item_from(snapshot: Any, user_id: str, item_id: str) -> SchedulableItem:
    if snapshot is None or not snapshot.exists:
        raise NotFound("item not found", details={"item_id": item_id})
    item = SchedulableItem.from_snapshot(snapshot.id, snapshot.to_dict() or {})
    if item.user_id != user_id:
        raise PermissionDenied("item belongs to another user", details={"item_id": item_id})
    return item


def _owned_phrasing_from(snapshot: Any, user_id: str, item_id: str, phrasing_id: str) -> Phrasing:
    """所有者とアイテムの一致を確認した問い方を返す（アーカイブ済みも返す）。"""

    details = {"item_id": item_id, "phrasing_id": phrasing_id}
    if snapshot is None or not snapshot.exists:
        raise NotFound("phrasing not found", details=details)
    phrasing = Phrasing.from_snapshot(snapshot.id, snapshot.to_dict() or {})
    if phrasing.user_id != user_id:
        raise PermissionDenied("phrasing belongs to another user", details=details)
    if phrasing.item_id != item_id or phrasing.deleted_at is not None:
        raise NotFound("phrasing not found for this item", details=details)
    return phrasing


class FirestorePhrasingStore(FirestoreBaseStore):
    """Alternative phrasings of an item (``phrasings`` collection).

    記憶状態はアイテムにだけ持つため、ここで扱うのは本文・可視性・
    出題回数の補助カウンタと、アイテム側の canonical 指定だけ。
    """

    def __init__(self, client: firestore.Client, *, logger: Any | None = None):
        super().__init__(client, logger=logger)
        self._items = self._client.collection(ITEMS_COLLECTION)
        self._phrasings = self._client.collection(PHRASINGS_COLLECTION)

    def create_phrasing(
        self,
        *,
        user_id: str,
        item_id: str,
        question: str,
        answer: str | None = None,
        explanation: str | None = None,
        now_ms: int | None = None,
        phrasing_id: str | None = None,
    ) -> Phrasing:
        owner = validate_document_id(user_id, field_name="user_id")
        target = validate_document_id(item_id, field_name="item_id")
        doc_id = (
            validate_document_id(phrasing_id, field_name="phrasing_id")
            if phrasing_id is not None
            else uuid.uuid4().hex
        )
        cleaned_question = str(question or "").strip()
        if not cleaned_question:
            raise InvalidInput("question must not be empty", details={"field": "question"})
        _owned_item_from(self._items.document(target).get(), owner, target)

        created_at = system_clock() if now_ms is None else int(now_ms)
        phrasing = Phrasing(
            id=doc_id,
            user_id=owner,
            item_id=target,
            question=cleaned_question,
            answer=answer,
            explanation=explanation,
            created_at=created_at,
            updated_at=created_at,
        )
        try:
            self._phrasings.document(doc_id).create(phrasing.to_document())
        except AlreadyExists as exc:
            raise InvalidInput("phrasing already exists", details={"phrasing_id": doc_id}) from exc
        self._logger.info("phrasing_created", item_id=target, phrasing_id=doc_id, user_id=owner)
        return phrasing

    def list_for_item(
        self,
        user_id: str,
        item_id: str,
        *,
        include_archived: bool = False,
        limit: int = MAX_PHRASINGS_PER_ITEM,
    ) -> list[Phrasing]:
        """作成順に最大 ``limit`` 件を返す。既定ではアクティブなものだけ。"""

        query = self._phrasings.where("user_id", "==", user_id).where("item_id", "==", item_id)
        if not include_archived:
            query = query.where("is_active", "==", True)
        query = query.order_by("created_at").limit(max(0, min(int(limit), MAX_PHRASINGS_PER_ITEM)))
        return [Phrasing.from_snapshot(snapshot.id, snapshot.to_dict() or {}) for snapshot in query.stream()]

    def archive_phrasing(
        self,
        user_id: str,
        item_id: str,
        phrasing_id: str,
        *,
        now_ms: int | None = None,
    ) -> Phrasing:
        """Archive a phrasing and drop it as the item's canonical choice.

        既にアーカイブ済みなら何も書かずにそのまま返す。
        """

        owner = validate_document_id(user_id, field_name="user_id")
        target = validate_document_id(item_id, field_name="item_id")
        doc_id = validate_document_id(phrasing_id, field_name="phrasing_id")
        now = system_clock() if now_ms is None else int(now_ms)
        item_ref = self._items.document(target)
        phrasing_ref = self._phrasings.document(doc_id)

        def _archive(transaction: Any) -> tuple[Phrasing, bool]:
            item = _owned_item_from(coerce_firestore_snapshot(transaction.get(item_ref)), owner, target)
            phrasing = _owned_phrasing_from(
                coerce_firestore_snapshot(transaction.get(phrasing_ref)), owner, target, doc_id
            )
            if phrasing.archived_at is not None:
                return phrasing, False
            archived = replace(phrasing, archived_at=now, updated_at=now)
            transaction.update(
                phrasing_ref, {"archived_at": now, "is_active": archived.is_active, "updated_at": now}
            )
            cleared = item.canonical_phrasing_id == doc_id
            if cleared:
                transaction.update(item_ref, {"canonical_phrasing_id": None, "updated_at": now})
            return archived, cleared

        archived, cleared = self._run_transaction("archive_phrasing", _archive)
        self._logger.info(
            "phrasing_archived",
            item_id=target,
            phrasing_id=doc_id,
            user_id=owner,
            canonical_cleared=cleared,
        )
        return archived

    def set_canonical_phrasing(
        self,
        user_id: str,
        item_id: str,
        phrasing_id: str | None,
        *,
        now_ms: int | None = None,
    ) -> SchedulableItem:
        """Pin (or with ``None`` unpin) the phrasing shown first for an item."""

        owner = validate_document_id(user_id, field_name="user_id")
        target = validate_document_id(item_id, field_name="item_id")
        doc_id = (
            validate_document_id(phrasing_id, field_name="phrasing_id")
            if phrasing_id is not None
            else None
        )
        now = system_clock() if now_ms is None else int(now_ms)
        item_ref = self._items.document(target)

        def _pin(transaction: Any) -> SchedulableItem:
            item = _owned_item_from(coerce_firestore_snapshot(transaction.get(item_ref)), owner, target)
            if doc_id is not None:
                phrasing = _owned_phrasing_from(
                    coerce_firestore_snapshot(transaction.get(self._phrasings.document(doc_id))),
                    owner,
                    target,
                    doc_id,
                )
                if phrasing.archived_at is not None:
                    raise InvalidInput(
                        "archived phrasings cannot be canonical",
                        details={"item_id": target, "phrasing_id": doc_id},
                    )
            transaction.update(item_ref, {"canonical_phrasing_id": doc_id, "updated_at": now})
            return replace(item, canonical_phrasing_id=doc_id, updated_at=now)

        item = self._run_transaction("set_canonical_phrasing", _pin)
        self._logger.info("canonical_phrasing_set", item_id=target, phrasing_id=doc_id, user_id=owner)
        return item


class FirestoreInteractionStore(FirestoreBaseStore):
    """Append-only review history (``interactions`` collection)."""

    def __init__(self, client: firestore.Client, *, logger: Any | None = None):
        super().__init__(client, logger=logger)
        self._interactions = self._client.collection(INTERACTIONS_COLLECTION)

    def list_for_item(self, user_id: str, item_id: str, *, limit: int = 10) -> list[Interaction]:
        """新しい順に最大 ``limit`` 件の解答履歴を返す。"""

        query = (
            self._interactions.where("user_id", "==", user_id)
            .where("item_id", "==", item_id)
            .order_by("attempted_at", direction=firestore.Query.DESCENDING)
            .limit(max(0, int(limit)))
        )
        return [
            Interaction.from_snapshot(snapshot.id, snapshot.to_dict() or {})
            for snapshot in query.stream()
        ]


class FirestoreReviewStore(FirestoreBaseStore):
    """Single-item review transaction spanning an item, its phrasing and a new interaction."""

    def __init__(self, client: firestore.Client, *, logger: Any | None = None):
        super().__init__(client, logger=logger)
        self._items = self._client.collection(ITEMS_COLLECTION)
        self._interactions = self._client.collection(INTERACTIONS_COLLECTION)
        self._phrasings = self._client.collection(PHRASINGS_COLLECTION)

    def apply_review(
        self,
        *,
        item_id: str,
        interaction_id: str,
        build: ReviewBuilder,
        check_existing: bool = False,
        phrasing_id: str | None = None,
    ) -> ReviewWrite:
        """Read the item (and phrasing), apply ``build`` and write atomically.

        - すべての読み取りは書き込みより前にトランザクション内で行う
          （Firestore のトランザクション制約）。
        - ``check_existing`` が真で同じ解答履歴IDが既に存在する場合は、
          何も書かずに既存の結果を ``replayed=True`` で返す。同じキーの
          同時送信でコミット時に AlreadyExists になった場合も同様に返す。
        - ``build`` が送出した SchedulerError はロールバック後にそのまま伝播する。
        - 失敗時は部分的な書き込みを残さない（フォールバックの非トランザクション
          書き込みは行わない）。
        """

        item_ref = self._items.document(item_id)
        interaction_ref = self._interactions.document(interaction_id)
        phrasing_ref = self._phrasings.document(phrasing_id) if phrasing_id is not None else None
        transaction = self._client.transaction()
        try:
            transaction._begin()
        except (ValueError, gexc.GoogleAPIError) as exc:
            self._logger.warning(
                "firestore_review_transaction_failed",
                item_id=item_id,
                error=str(exc),
                error_class=exc.__class__.__name__,
                stage="begin",
            )
            raise

        try:
            if check_existing:
                existing = coerce_firestore_snapshot(transaction.get(interaction_ref))
                if existing is not None and existing.exists:
                    item_snapshot = coerce_firestore_snapshot(transaction.get(item_ref))
                    _rollback_quietly(transaction, self._logger, operation="review_replay")
                    return self._replayed(existing, item_snapshot)

            snapshot = coerce_firestore_snapshot(transaction.get(item_ref))
            current = (
                SchedulableItem.from_snapshot(snapshot.id, snapshot.to_dict() or {})
                if snapshot is not None and snapshot.exists
                else None
            )
            phrasing: Phrasing | None = None
            if phrasing_ref is not None:
                phrasing_snapshot = coerce_firestore_snapshot(transaction.get(phrasing_ref))
                if phrasing_snapshot is not None and phrasing_snapshot.exists:
                    phrasing = Phrasing.from_snapshot(
                        phrasing_snapshot.id, phrasing_snapshot.to_dict() or {}
                    )
            updated, updated_phrasing, interaction = build(current, phrasing)
            transaction.update(item_ref, _review_update_payload(updated))
            if phrasing_ref is not None and updated_phrasing is not None:
                transaction.update(phrasing_ref, _phrasing_counter_payload(updated_phrasing))
            transaction.create(interaction_ref, interaction.to_document())
            transaction._commit()
            return ReviewWrite(item=updated, interaction=interaction, phrasing=updated_phrasing)
        except SchedulerError:
            _rollback_quietly(transaction, self._logger, operation="review")
            raise
        except AlreadyExists as exc:
            _rollback_quietly(transaction, self._logger, operation="review")
            if not check_existing:
                self._log_failure(item_id, exc)
                raise
            # 同じキーの送信が先にコミットされた: その結果を返す
            self._logger.info(
                "firestore_review_conflict_replayed",
                item_id=item_id,
                interaction_id=interaction_id,
            )
            existing = coerce_firestore_snapshot(interaction_ref.get())
            if existing is None or not existing.exists:
                self._log_failure(item_id, exc)
                raise
            return self._replayed(existing, coerce_firestore_snapshot(item_ref.get()))
        except (ValueError, gexc.GoogleAPIError) as exc:
            _rollback_quietly(transaction, self._logger, operation="review")
            self._log_failure(item_id, exc)
            raise

    def _log_failure(self, item_id: str, exc: Exception) -> None:
        self._logger.warning(
            "firestore_review_transaction_failed",
            item_id=item_id,
            error=str(exc),
            error_class=exc.__class__.__name__,
            stage="body",
        )

    @staticmethod
    def _replayed(interaction_snapshot: Any, item_snapshot: Any | None) -> ReviewWrite:
        interaction = Interaction.from_snapshot(
            interaction_snapshot.id, interaction_snapshot.to_dict() or {}
        )
        if item_snapshot is None or not item_snapshot.exists:
            raise NotFound("item not found", details={"item_id": interaction.item_id})
        item = SchedulableItem.from_snapshot(item_snapshot.id, item_snapshot.to_dict() or {})
        if interaction.state_after is not None:
            item = item.with_memory(interaction.state_after)
        return ReviewWrite(item=item, interaction=interaction, replayed=True)


def _review_update_payload(item: SchedulableItem) -> dict[str, Any]:
    """採点で変化するフィールドだけを更新する（可視性や本文には触れない）。"""

    payload = item.memory.to_document()
    payload.update(
        {
            "attempt_count": item.attempt_count,
            "correct_count": item.correct_count,
            "last_attempted_at": item.last_attempted_at,
            "updated_at": item.updated_at,
        }
    )
    return payload


def _phrasing_counter_payload(phrasing: Phrasing) -> dict[str, Any]:
    return {
        "attempt_count": phrasing.attempt_count,
        "correct_count": phrasing.correct_count,
        "last_attempted_at": phrasing.last_attempted_at,
    }


class AppFirestoreStore:
    """スケジューラが利用する Firestore ストアのファサード。"""

    def __init__(self, *, client: firestore.Client | None = None, logger: Any | None = None) -> None:
        if client is None:
            client = firestore.Client()
        self._client = client
        self.items = FirestoreItemStore(client, logger=logger)
        self.interactions = FirestoreInteractionStore(client, logger=logger)
        self.phrasings = FirestorePhrasingStore(client, logger=logger)
        self.reviews = FirestoreReviewStore(client, logger=logger)

    # --- items ---
    def create_item(self, **kwargs: Any) -> SchedulableItem:
        return self.items.create_item(**kwargs)

    def get_item(self, item_id: str) -> SchedulableItem | None:
        return self.items.get_item(item_id)

    def get_owned_item(self, user_id: str, item_id: str) -> SchedulableItem:
        return self.items.get_owned_item(user_id, item_id)

    def archive_item(self, user_id: str, item_id: str, *, now_ms: int | None = None) -> SchedulableItem:
        return self.items.archive_item(user_id, item_id, now_ms=now_ms)

    def unarchive_item(self, user_id: str, item_id: str, *, now_ms: int | None = None) -> SchedulableItem:
        return self.items.unarchive_item(user_id, item_id, now_ms=now_ms)

    def soft_delete_item(self, user_id: str, item_id: str, *, now_ms: int | None = None) -> SchedulableItem:
        return self.items.soft_delete_item(user_id, item_id, now_ms=now_ms)

    def restore_item(self, user_id: str, item_id: str, *, now_ms: int | None = None) -> SchedulableItem:
        return self.items.restore_item(user_id, item_id, now_ms=now_ms)

    # --- due queue ---
    def count_active(self, user_id: str, filters: Sequence[QueryFilter] = ()) -> int:
        return self.items.count_active(user_id, filters)

    def count_by_lifecycle(self, user_id: str, lifecycle: Lifecycle) -> int:
        return self.items.count_active(user_id, [("lifecycle", "==", lifecycle.value)])

    def find_most_overdue(self, user_id: str, now_ms: int) -> SchedulableItem | None:
        return self.items.find_most_overdue(user_id, now_ms)

    def find_oldest_new_created_since(self, user_id: str, now_ms: int) -> SchedulableItem | None:
        return self.items.find_oldest_new_created_since(user_id, now_ms)

    def find_newest_new(self, user_id: str) -> SchedulableItem | None:
        return self.items.find_newest_new(user_id)

    def find_next_scheduled(self, user_id: str, now_ms: int) -> SchedulableItem | None:
        return self.items.find_next_scheduled(user_id, now_ms)

    # --- reviews ---
    def apply_review(self, **kwargs: Any) -> ReviewWrite:
        return self.reviews.apply_review(**kwargs)

    def list_interactions(self, user_id: str, item_id: str, *, limit: int = 10) -> list[Interaction]:
        return self.interactions.list_for_item(user_id, item_id, limit=limit)

    # --- phrasings ---
    def create_phrasing(self, **kwargs: Any) -> Phrasing:
        return self.phrasings.create_phrasing(**kwargs)

    def list_phrasings(
        self,
        user_id: str,
        item_id: str,
        *,
        include_archived: bool = False,
        limit: int = MAX_PHRASINGS_PER_ITEM,
    ) -> list[Phrasing]:
        return self.phrasings.list_for_item(
            user_id, item_id, include_archived=include_archived, limit=limit
        )

    def list_active_phrasings(self, user_id: str, item_id: str) -> list[Phrasing]:
        return self.phrasings.list_for_item(user_id, item_id)

    def archive_phrasing(
        self, user_id: str, item_id: str, phrasing_id: str, *, now_ms: int | None = None
    ) -> Phrasing:
        return self.phrasings.archive_phrasing(user_id, item_id, phrasing_id, now_ms=now_ms)

    def set_canonical_phrasing(
        self, user_id: str, item_id: str, phrasing_id: str | None, *, now_ms: int | None = None
    ) -> SchedulableItem:
        return self.phrasings.set_canonical_phrasing(user_id, item_id, phrasing_id, now_ms=now_ms)
