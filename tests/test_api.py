"""HTTP 層（FastAPI アプリ）の結線とエラーエンベロープを検証するテスト群。"""

import pytest
from fastapi.testclient import TestClient
from google.api_core import exceptions as gexc

from scry.main import create_app
from scry.models.common import MS_PER_MINUTE
from scry.store.firestore_store import AppFirestoreStore

from tests.conftest import T0, MutableClock
from tests.firestore_fakes import FakeFirestoreClient

_USER = {"X-User-Id": "u1"}
_OTHER_USER = {"X-User-Id": "u2"}


@pytest.fixture()
def app_clock() -> MutableClock:
    return MutableClock(T0)


@pytest.fixture()
def client(app_clock):
    store = AppFirestoreStore(client=FakeFirestoreClient())
    return TestClient(create_app(store=store, clock=app_clock))


def _create_item(client: TestClient, title: str = "photosynthesis", headers=None) -> dict:
    resp = client.post("/api/items", json={"title": title}, headers=headers or _USER)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_missing_user_header_is_unauthorized(client):
    resp = client.get("/api/review/due-count")

    assert resp.status_code == 401
    body = resp.json()
    assert body["error_code"] == "HTTP_ERROR"
    assert body["request_id"] == resp.headers["X-Request-ID"]


def test_invalid_user_header_is_unauthorized(client):
    resp = client.get("/api/review/next", headers={"X-User-Id": "__admin__"})

    assert resp.status_code == 401


def test_review_flow_from_creation_to_grading(client, app_clock):
    item = _create_item(client)
    assert item["memory"]["lifecycle"] == "new"
    assert item["memory"]["next_review_at"] == T0

    due = client.get("/api/review/due-count", headers=_USER).json()
    assert due == {"due_now": 1, "new_count": 1, "total_reviewable": 1, "server_time": T0}

    nxt = client.get("/api/review/next", headers=_USER).json()
    assert nxt["item"]["id"] == item["id"]
    assert nxt["freshness"] == 1.0
    assert nxt["server_time"] == T0

    graded = client.post(
        "/api/review/grade",
        json={"item_id": item["id"], "grade": "good", "answer": "light", "time_spent_ms": 3000},
        headers=_USER,
    )
    assert graded.status_code == 200, graded.text
    body = graded.json()
    assert body["state"]["lifecycle"] == "learning"
    assert body["state"]["reps"] == 1
    assert body["previous_lifecycle"] == "new"
    assert body["state"]["next_review_at"] > T0
    assert body["replayed"] is False

    after = client.get("/api/review/due-count", headers=_USER).json()
    assert after["due_now"] == 0
    assert client.get("/api/review/next", headers=_USER).json()["item"] is None

    history = client.get(f"/api/items/{item['id']}/interactions", headers=_USER).json()
    assert [entry["id"] for entry in history["items"]] == [body["interaction_id"]]
    assert history["items"][0]["grade"] == 3


def test_binary_correctness_maps_to_grade(client):
    item = _create_item(client)

    resp = client.post(
        "/api/review/grade",
        json={"item_id": item["id"], "is_correct": False},
        headers=_USER,
    )

    assert resp.status_code == 200
    state = resp.json()["state"]
    assert state["lapses"] == 1
    assert state["lifecycle"] == "relearning"
    assert state["next_review_at"] == T0 + 10 * MS_PER_MINUTE


def test_grade_requires_grade_or_correctness(client):
    item = _create_item(client)

    resp = client.post("/api/review/grade", json={"item_id": item["id"]}, headers=_USER)

    assert resp.status_code == 422
    body = resp.json()
    assert body["error_code"] == "INVALID_INPUT"
    assert isinstance(body["details"], list)


def test_unknown_grade_is_invalid_input(client):
    item = _create_item(client)

    resp = client.post(
        "/api/review/grade", json={"item_id": item["id"], "grade": "superb"}, headers=_USER
    )

    assert resp.status_code == 422
    assert resp.json()["error_code"] == "INVALID_INPUT"


def test_grading_someone_elses_item_is_forbidden(client):
    item = _create_item(client)

    resp = client.post(
        "/api/review/grade", json={"item_id": item["id"], "grade": 3}, headers=_OTHER_USER
    )

    assert resp.status_code == 403
    assert resp.json()["error_code"] == "PERMISSION_DENIED"


def test_grading_missing_item_is_not_found(client):
    resp = client.post("/api/review/grade", json={"item_id": "missing", "grade": 3}, headers=_USER)

    assert resp.status_code == 404
    body = resp.json()
    assert body["error_code"] == "NOT_FOUND"
    assert body["details"] == {"item_id": "missing"}


def test_idempotency_key_prevents_double_counting(client, app_clock):
    item = _create_item(client)
    headers = {**_USER, "Idempotency-Key": "submit-1"}
    payload = {"item_id": item["id"], "grade": "good"}

    first = client.post("/api/review/grade", json=payload, headers=headers).json()
    app_clock.advance(2_000)
    second = client.post("/api/review/grade", json=payload, headers=headers).json()

    assert second["replayed"] is True
    assert second["interaction_id"] == first["interaction_id"]
    assert second["state"] == first["state"]
    history = client.get(f"/api/items/{item['id']}/interactions", headers=_USER).json()
    assert len(history["items"]) == 1


def test_archived_items_leave_the_queue(client):
    item = _create_item(client)

    archived = client.post(f"/api/items/{item['id']}/archive", headers=_USER)
    assert archived.status_code == 200
    assert archived.json()["is_active"] is False
    assert client.get("/api/review/next", headers=_USER).json() == {
        "item": None,
        "server_time": T0,
        "selection_reason": "none",
        "freshness": None,
        "retrievability": None,
        "phrasing": None,
        "phrasing_selection_reason": "none",
        "recent_interactions": [],
        "success_rate": None,
    }

    grade = client.post("/api/review/grade", json={"item_id": item["id"], "grade": 3}, headers=_USER)
    assert grade.status_code == 404

    restored = client.post(f"/api/items/{item['id']}/unarchive", headers=_USER)
    assert restored.json()["is_active"] is True
    assert client.get("/api/review/due-count", headers=_USER).json()["due_now"] == 1


def test_delete_and_restore_round_trip(client):
    item = _create_item(client)

    deleted = client.post(f"/api/items/{item['id']}/delete", headers=_USER).json()
    restored = client.post(f"/api/items/{item['id']}/restore", headers=_USER).json()

    assert deleted["deleted_at"] == T0
    assert restored["deleted_at"] is None
    assert restored["is_active"] is True


def test_item_endpoints_check_ownership(client):
    item = _create_item(client)

    assert client.post(f"/api/items/{item['id']}/archive", headers=_OTHER_USER).status_code == 403
    assert client.get(f"/api/items/{item['id']}/interactions", headers=_OTHER_USER).status_code == 403
    assert client.post("/api/items/missing/archive", headers=_USER).status_code == 404


def test_interaction_limit_is_bounded(client):
    item = _create_item(client)

    resp = client.get(f"/api/items/{item['id']}/interactions?limit=500", headers=_USER)

    assert resp.status_code == 422


def test_stats_endpoint(client):
    first = _create_item(client, "a")
    _create_item(client, "b")
    client.post("/api/review/grade", json={"item_id": first["id"], "grade": "easy"}, headers=_USER)

    stats = client.get("/api/review/stats", headers=_USER).json()

    assert stats["total_cards"] == 2
    assert stats["new_count"] == 1
    assert stats["learning_count"] == 1
    assert stats["mature_count"] == 0
    assert stats["next_review_time"] > T0
    assert stats["server_time"] == T0


def test_metrics_are_keyed_by_route_template(client):
    item = _create_item(client)
    client.get("/api/review/next", headers=_USER)
    client.post(f"/api/items/{item['id']}/archive", headers=_USER)
    client.get("/api/unknown", headers=_USER)

    paths = client.get("/metrics").json()["paths"]

    assert paths["/api/review/next"]["count"] == 1
    # ルーター直下の空パス（POST /api/items）も実ルートとして数える
    assert paths["/api/items"]["count"] == 1
    assert paths["/api/items"]["methods"] == {"POST": 1}
    assert paths["/api/items"]["status_classes"] == {"2xx": 1}
    assert paths["/api/items/{item_id}/archive"]["count"] == 1
    assert paths["<unmatched>"]["count"] == 1
    assert paths["<unmatched>"]["status_classes"] == {"4xx": 1}
    assert all(item["id"] not in path for path in paths)


def test_store_deadline_is_a_504_and_counted_as_timeout(client, monkeypatch):
    store = client.app.state.services.store

    def _slow(*args, **kwargs):
        raise gexc.DeadlineExceeded("deadline exceeded")

    monkeypatch.setattr(store, "count_active", _slow)

    resp = client.get("/api/review/due-count", headers=_USER)

    assert resp.status_code == 504
    body = resp.json()
    assert body["error_code"] == "STORE_TIMEOUT"
    assert body["request_id"] == resp.headers["X-Request-ID"]
    stats = client.get("/metrics").json()["paths"]["/api/review/due-count"]
    assert stats["timeouts"] == 1
    assert stats["errors"] == 1


def test_store_unavailable_is_a_503_without_timeout(client, monkeypatch):
    store = client.app.state.services.store

    def _down(*args, **kwargs):
        raise gexc.ServiceUnavailable("backend down")

    monkeypatch.setattr(store, "find_most_overdue", _down)

    resp = client.get("/api/review/next", headers=_USER)

    assert resp.status_code == 503
    assert resp.json()["error_code"] == "STORE_UNAVAILABLE"
    stats = client.get("/metrics").json()["paths"]["/api/review/next"]
    assert stats["timeouts"] == 0
    assert stats["errors"] == 1


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/api/unknown", headers=_USER)

    assert resp.status_code == 404
    assert resp.json()["error_code"] == "HTTP_ERROR"


def test_well_formed_inbound_request_id_is_kept(client):
    kept = client.get("/healthz", headers={"X-Request-ID": "gateway-req-0001"})
    replaced = client.get("/healthz", headers={"X-Request-ID": "bad id!"})

    assert kept.headers["X-Request-ID"] == "gateway-req-0001"
    assert replaced.headers["X-Request-ID"] != "bad id!"


def test_phrasing_flow_from_creation_to_grading(client):
    item = _create_item(client)
    created = client.post(
        f"/api/items/{item['id']}/phrasings",
        json={"question": "Where does photosynthesis happen?", "answer": "chloroplast"},
        headers=_USER,
    )
    assert created.status_code == 201, created.text
    phrasing = created.json()

    offered = client.get("/api/review/next", headers=_USER).json()
    assert offered["phrasing"]["id"] == phrasing["id"]
    assert offered["phrasing_selection_reason"] == "least-seen"

    graded = client.post(
        "/api/review/grade",
        json={"item_id": item["id"], "grade": "good", "phrasing_id": phrasing["id"]},
        headers=_USER,
    ).json()
    assert graded["phrasing_id"] == phrasing["id"]

    listed = client.get(f"/api/items/{item['id']}/phrasings", headers=_USER).json()["items"]
    assert listed[0]["attempt_count"] == 1
    assert listed[0]["correct_count"] == 1
    history = client.get(f"/api/items/{item['id']}/interactions", headers=_USER).json()["items"]
    assert history[0]["phrasing_id"] == phrasing["id"]


def test_canonical_phrasing_endpoints(client):
    item = _create_item(client)
    phrasing = client.post(
        f"/api/items/{item['id']}/phrasings", json={"question": "q"}, headers=_USER
    ).json()

    pinned = client.put(
        f"/api/items/{item['id']}/canonical-phrasing",
        json={"phrasing_id": phrasing["id"]},
        headers=_USER,
    )
    assert pinned.status_code == 200
    assert pinned.json()["canonical_phrasing_id"] == phrasing["id"]
    assert client.get("/api/review/next", headers=_USER).json()["phrasing_selection_reason"] == "canonical"

    archived = client.post(
        f"/api/items/{item['id']}/phrasings/{phrasing['id']}/archive", headers=_USER
    ).json()
    assert archived["is_active"] is False
    assert client.get(f"/api/items/{item['id']}/phrasings", headers=_USER).json()["items"] == []
    everything = client.get(
        f"/api/items/{item['id']}/phrasings?include_archived=true", headers=_USER
    ).json()["items"]
    assert [entry["id"] for entry in everything] == [phrasing["id"]]

    rejected = client.put(
        f"/api/items/{item['id']}/canonical-phrasing",
        json={"phrasing_id": phrasing["id"]},
        headers=_USER,
    )
    assert rejected.status_code == 422
    assert rejected.json()["error_code"] == "INVALID_INPUT"


def test_phrasing_endpoints_check_ownership(client):
    item = _create_item(client)

    foreign = client.post(
        f"/api/items/{item['id']}/phrasings", json={"question": "q"}, headers=_OTHER_USER
    )
    assert foreign.status_code == 403
    assert client.get(f"/api/items/{item['id']}/phrasings", headers=_OTHER_USER).status_code == 403
    missing = client.post(
        "/api/review/grade",
        json={"item_id": item["id"], "grade": 3, "phrasing_id": "nope"},
        headers=_USER,
    )
    assert missing.status_code == 404
    assert missing.json()["details"] == {"item_id": item["id"], "phrasing_id": "nope"}
