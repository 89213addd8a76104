"""出題キュー（次の1件の選択と件数集計）を検証するテスト群。"""

from __future__ import annotations

import math

import pytest
from structlog.testing import capture_logs

from scry.errors import InvalidInput
from scry.models.common import MS_PER_DAY, MS_PER_HOUR, MS_PER_MINUTE, Lifecycle
from scry.scheduling.due_queue import DueQueueBuilder
from scry.scheduling.recorder import ReviewRecorder
from scry.store.firestore_store import ITEMS_COLLECTION

from tests.conftest import T0


@pytest.fixture
def queue(store, clock) -> DueQueueBuilder:
    return DueQueueBuilder(store, clock=clock)


@pytest.fixture
def recorder(store, clock) -> ReviewRecorder:
    return ReviewRecorder(store, clock=clock)


def _patch_item(fake_client, item_id: str, **fields) -> None:
    """テスト用に保存済みアイテムの記憶状態を直接書き換える。"""

    fake_client._data[ITEMS_COLLECTION][item_id].update(fields)


def _reviewed(fake_client, item_id: str, *, next_review_at: int, stability: float) -> None:
    _patch_item(
        fake_client,
        item_id,
        next_review_at=next_review_at,
        last_reviewed_at=next_review_at - MS_PER_DAY,
        stability=stability,
        difficulty=5.0,
        reps=3,
        streak=3,
        lifecycle=Lifecycle.REVIEW.value,
    )


def test_empty_user_has_nothing_due(queue):
    counts = queue.due_count("nobody")
    result = queue.next_item("nobody")

    assert (counts.due_now, counts.new_count, counts.total_reviewable) == (0, 0, 0)
    assert counts.server_time == T0
    assert result.item is None
    assert result.selection_reason == "none"
    assert result.server_time == T0


def test_new_item_is_offered_with_decaying_freshness(store, queue, clock):
    """作成直後は freshness=1.0 で出題され、30時間後も例外なく出題される。"""

    created = store.create_item(user_id="u1", title="photosynthesis", now_ms=T0)

    at_creation = queue.next_item("u1")
    clock.advance(MS_PER_HOUR)
    after_one_hour = queue.next_item("u1")
    clock.advance(29 * MS_PER_HOUR)
    after_thirty_hours = queue.next_item("u1")

    assert at_creation.item is not None and at_creation.item.id == created.id
    assert at_creation.item.memory.lifecycle is Lifecycle.NEW
    assert at_creation.freshness == 1.0
    assert at_creation.retrievability is None
    assert after_thirty_hours.item is not None and after_thirty_hours.item.id == created.id
    assert after_thirty_hours.freshness < after_one_hour.freshness < 1.0
    assert after_thirty_hours.server_time == T0 + 30 * MS_PER_HOUR


def test_good_grade_removes_item_from_due_count(store, queue, recorder, clock):
    item = store.create_item(user_id="u1", title="mitosis", now_ms=T0)
    clock.advance(30 * MS_PER_HOUR)
    now = clock()

    outcome = recorder.record_review("u1", item.id, "good", "answer")
    counts = queue.due_count("u1")

    assert outcome.state.lifecycle is Lifecycle.LEARNING
    assert outcome.state.reps == 1
    assert outcome.state.next_review_at > now
    assert counts.due_now == 0
    assert counts.new_count == 0
    assert counts.total_reviewable == 0


def test_again_grade_makes_item_due_again_shortly(store, queue, recorder, clock):
    item = store.create_item(user_id="u1", title="osmosis", now_ms=T0)

    outcome = recorder.record_review("u1", item.id, "again", "")

    assert outcome.state.lapses == 1
    assert outcome.state.lifecycle is Lifecycle.RELEARNING
    assert queue.due_count("u1").due_now == 0
    clock.advance(10 * MS_PER_MINUTE)
    assert queue.due_count("u1").due_now == 1
    assert queue.next_item("u1").item.id == item.id


def test_most_overdue_item_wins_and_ties_prefer_weakest_memory(store, fake_client, queue):
    strong = store.create_item(user_id="u1", title="strong", now_ms=T0 - 10 * MS_PER_DAY)
    weak = store.create_item(user_id="u1", title="weak", now_ms=T0 - 10 * MS_PER_DAY)
    recent = store.create_item(user_id="u1", title="recent", now_ms=T0 - 10 * MS_PER_DAY)
    _reviewed(fake_client, strong.id, next_review_at=T0 - 2 * MS_PER_DAY, stability=5.0)
    _reviewed(fake_client, weak.id, next_review_at=T0 - 2 * MS_PER_DAY, stability=1.0)
    _reviewed(fake_client, recent.id, next_review_at=T0 - MS_PER_DAY, stability=0.5)

    result = queue.next_item("u1")

    assert result.item.id == weak.id
    assert result.selection_reason == "due"
    assert result.freshness is None
    assert 0.0 < result.retrievability < 1.0


def test_due_items_take_priority_over_new_items(store, fake_client, queue):
    overdue = store.create_item(user_id="u1", title="overdue", now_ms=T0 - 5 * MS_PER_DAY)
    _reviewed(fake_client, overdue.id, next_review_at=T0 - 3 * MS_PER_DAY, stability=2.0)
    store.create_item(user_id="u1", title="fresh", now_ms=T0)

    assert queue.next_item("u1").item.id == overdue.id


def test_future_created_items_are_offered_as_new_under_clock_skew(store, queue):
    """作成時刻がサーバー時刻より未来でも、未復習アイテムとして出題できる。"""

    later = store.create_item(user_id="u1", title="later", now_ms=T0 + 2 * MS_PER_HOUR)
    sooner = store.create_item(user_id="u1", title="sooner", now_ms=T0 + MS_PER_HOUR)

    result = queue.next_item("u1")
    counts = queue.due_count("u1")

    assert result.item.id == sooner.id
    assert result.item.id != later.id
    assert result.selection_reason == "new"
    assert result.freshness == 1.0
    assert counts.due_now == 0
    assert counts.new_count == 2
    assert counts.total_reviewable == 2


def test_newest_unreviewed_item_is_freshest_fallback(store, fake_client, queue):
    older = store.create_item(user_id="u1", title="older", now_ms=T0 - 3 * MS_PER_DAY)
    newer = store.create_item(user_id="u1", title="newer", now_ms=T0 - MS_PER_DAY)
    # 未復習だが next_review_at が未来に置かれたデータ（旧データ移行など）
    _patch_item(fake_client, older.id, next_review_at=T0 + MS_PER_DAY)
    _patch_item(fake_client, newer.id, next_review_at=T0 + MS_PER_DAY)

    result = queue.next_item("u1")

    assert result.item.id == newer.id
    assert result.selection_reason == "new"
    assert result.freshness == pytest.approx(math.exp(-1.0))


def test_due_count_partitions_due_and_unreviewed_items(store, fake_client, queue):
    due_review = store.create_item(user_id="u1", title="due", now_ms=T0 - 5 * MS_PER_DAY)
    _reviewed(fake_client, due_review.id, next_review_at=T0 - MS_PER_HOUR, stability=2.0)
    scheduled = store.create_item(user_id="u1", title="scheduled", now_ms=T0 - 5 * MS_PER_DAY)
    _reviewed(fake_client, scheduled.id, next_review_at=T0 + MS_PER_DAY, stability=4.0)
    store.create_item(user_id="u1", title="new-now", now_ms=T0)
    store.create_item(user_id="u1", title="new-skewed", now_ms=T0 + MS_PER_HOUR)
    store.create_item(user_id="u2", title="someone-else", now_ms=T0)

    counts = queue.due_count("u1")

    assert counts.due_now == 2
    assert counts.new_count == 2
    assert counts.total_reviewable == 3


def test_archived_and_deleted_items_are_invisible(store, queue, recorder):
    archived = store.create_item(user_id="u1", title="archived", now_ms=T0)
    deleted = store.create_item(user_id="u1", title="deleted", now_ms=T0)
    recorder.record_review("u1", archived.id, "again", "")
    store.archive_item("u1", archived.id, now_ms=T0)
    store.soft_delete_item("u1", deleted.id, now_ms=T0)

    counts = queue.due_count("u1")

    assert (counts.due_now, counts.new_count, counts.total_reviewable) == (0, 0, 0)
    assert queue.next_item("u1").item is None
    # 除外されても解答履歴は残る
    assert len(store.list_interactions("u1", archived.id)) == 1

    store.unarchive_item("u1", archived.id, now_ms=T0)
    store.restore_item("u1", deleted.id, now_ms=T0)
    assert queue.due_count("u1").new_count == 1


def test_reads_are_index_bounded(store, fake_client, queue):
    """件数や候補の取得が、アイテム総数に比例する読み出しを行わない。"""

    for index in range(25):
        store.create_item(user_id="u1", title=f"item-{index}", now_ms=T0 - index * MS_PER_MINUTE)
    items = fake_client.collection(ITEMS_COLLECTION)
    items.reset_query_log()

    queue.due_count("u1")
    assert items.query_log == []
    assert items.count_calls == 3

    items.reset_query_log()
    queue.next_item("u1")
    log = items.query_log
    assert log, "next_item should issue at least one query"
    assert all(entry["limit"] == 1 for entry in log)
    assert all(entry["size"] <= 1 for entry in log)


def test_next_item_is_idempotent_without_writes(store, queue):
    store.create_item(user_id="u1", title="a", now_ms=T0 - MS_PER_HOUR)
    store.create_item(user_id="u1", title="b", now_ms=T0 - 2 * MS_PER_HOUR)

    first = queue.next_item("u1")
    second = queue.next_item("u1")

    assert first.item.id == second.item.id
    assert first.server_time == second.server_time
    assert first.selection_reason == second.selection_reason


def test_next_item_uses_explicit_reference_time(store, queue):
    store.create_item(user_id="u1", title="a", now_ms=T0)

    result = queue.next_item("u1", now_ms=T0 + 5 * MS_PER_HOUR)

    assert result.server_time == T0 + 5 * MS_PER_HOUR


def test_card_stats_groups_by_lifecycle(store, queue, recorder, clock):
    untouched = store.create_item(user_id="u1", title="new", now_ms=T0)
    learning = store.create_item(user_id="u1", title="learning", now_ms=T0)
    relearning = store.create_item(user_id="u1", title="relearning", now_ms=T0)
    recorder.record_review("u1", learning.id, "good", "")
    lapse = recorder.record_review("u1", relearning.id, "again", "")

    stats = queue.card_stats("u1")

    assert stats.total_cards == 3
    assert stats.new_count == 1
    assert stats.learning_count == 2
    assert stats.mature_count == 0
    assert stats.next_review_time == lapse.state.next_review_at
    assert stats.server_time == clock()
    assert untouched.memory.lifecycle is Lifecycle.NEW


def test_next_item_logs_selection(store, queue):
    item = store.create_item(user_id="u1", title="a", now_ms=T0)

    with capture_logs() as logs:
        queue.next_item("u1")

    selected = [entry for entry in logs if entry["event"] == "next_item_selected"]
    assert selected and selected[-1]["item_id"] == item.id
    assert selected[-1]["reason"] == "due"


@pytest.mark.parametrize("user_id", ["", "a/b", "__reserved__", None])
def test_invalid_user_ids_are_rejected(queue, user_id):
    with pytest.raises(InvalidInput):
        queue.due_count(user_id)
    with pytest.raises(InvalidInput):
        queue.next_item(user_id)


def test_item_without_phrasings_is_presented_directly(store, queue):
    store.create_item(user_id="u1", title="a", now_ms=T0)

    result = queue.next_item("u1")

    assert result.item is not None
    assert result.phrasing is None
    assert result.phrasing_selection_reason == "none"
    assert result.recent_interactions == ()
    assert result.success_rate is None


def test_next_item_prefers_canonical_then_least_seen_phrasing(store, queue, recorder, clock):
    item = store.create_item(user_id="u1", title="a", now_ms=T0)
    first = store.create_phrasing(user_id="u1", item_id=item.id, question="q1", now_ms=T0)
    second = store.create_phrasing(user_id="u1", item_id=item.id, question="q2", now_ms=T0 + 1)

    assert queue.next_item("u1").phrasing.id == first.id

    # 出題済みの問い方は後回しになる
    recorder.record_review("u1", item.id, "again", "", phrasing_id=first.id)
    clock.advance(MS_PER_HOUR)
    least_seen = queue.next_item("u1")
    assert least_seen.phrasing.id == second.id
    assert least_seen.phrasing_selection_reason == "least-seen"

    store.set_canonical_phrasing("u1", item.id, first.id, now_ms=clock())
    pinned = queue.next_item("u1")
    assert pinned.phrasing.id == first.id
    assert pinned.phrasing_selection_reason == "canonical"

    store.archive_phrasing("u1", item.id, first.id, now_ms=clock())
    assert queue.next_item("u1").phrasing.id == second.id


def test_next_item_carries_recent_history_and_success_rate(store, queue, recorder, clock):
    item = store.create_item(user_id="u1", title="a", now_ms=T0)
    for grade in ["good", "again", "good", "again"] * 3:
        recorder.record_review("u1", item.id, grade, "")
        clock.advance(MS_PER_DAY * 400)

    result = queue.next_item("u1")

    assert result.item.id == item.id
    assert len(result.recent_interactions) == 10
    attempted = [interaction.attempted_at for interaction in result.recent_interactions]
    assert attempted == sorted(attempted, reverse=True)
    assert result.success_rate == pytest.approx(0.5)
