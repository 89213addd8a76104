from __future__ import annotations

import json
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[2]
FIRESTORE_INDEXES_PATH = REPO_ROOT / "firestore.indexes.json"


def _index_fields(collection: str) -> list[list[tuple[str, str]]]:
  firestore_indexes = json.loads(FIRESTORE_INDEXES_PATH.read_text(encoding="utf-8"))
  return [
    [(field["fieldPath"], field["order"]) for field in index["fields"]]
    for index in firestore_indexes.get("indexes", [])
    if index.get("collectionGroup") == collection
  ]


def test_indexes_declare_query_scope() -> None:
  firestore_indexes = json.loads(FIRESTORE_INDEXES_PATH.read_text(encoding="utf-8"))
  for index in firestore_indexes["indexes"]:
    assert index.get("queryScope") == "COLLECTION", "composite indexes must set queryScope explicitly"


def test_due_queue_queries_are_backed_by_composite_indexes() -> None:
  concepts = _index_fields("concepts")
  visible = [("user_id", "ASCENDING"), ("is_active", "ASCENDING")]
  # 期限切れの最古1件（同時刻は安定度の低い順）
  assert visible + [("next_review_at", "ASCENDING"), ("stability", "ASCENDING")] in concepts
  # due_count と次回出題予定
  assert visible + [("next_review_at", "ASCENDING")] in concepts
  # 未復習かつ未到来の件数
  assert visible + [("reps", "ASCENDING"), ("next_review_at", "ASCENDING")] in concepts
  # 未復習アイテムの作成時刻順（昇順/降順）
  assert visible + [("reps", "ASCENDING"), ("created_at", "ASCENDING")] in concepts
  assert visible + [("reps", "ASCENDING"), ("created_at", "DESCENDING")] in concepts


def test_interaction_history_query_is_indexed() -> None:
  interactions = _index_fields("interactions")
  assert [
    ("user_id", "ASCENDING"),
    ("item_id", "ASCENDING"),
    ("attempted_at", "DESCENDING"),
  ] in interactions


def test_phrasing_listing_queries_are_indexed() -> None:
  phrasings = _index_fields("phrasings")
  owned = [("user_id", "ASCENDING"), ("item_id", "ASCENDING")]
  # 出題用（アクティブのみ）と管理画面用（アーカイブ込み）の作成順一覧
  assert owned + [("is_active", "ASCENDING"), ("created_at", "ASCENDING")] in phrasings
  assert owned + [("created_at", "ASCENDING")] in phrasings
