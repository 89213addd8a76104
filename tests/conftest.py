"""Pytest configuration shared by the scheduler test suite."""

import os
import sys
from pathlib import Path

import pytest

_BACKEND_ROOT = Path(__file__).resolve().parents[1] / "apps" / "backend"
if str(_BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(_BACKEND_ROOT))

# 実 Firestore へ誤って接続しないよう、テストでは常にエミュレータ向けの値を使う。
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("FIRESTORE_EMULATOR_HOST", "localhost:8080")
os.environ.setdefault("FIRESTORE_PROJECT_ID", "test-project")

from tests.firestore_fakes import FakeFirestoreClient  # noqa: E402

# 2024-03-01T00:00:00Z（テスト全体で共有する基準時刻）
T0 = 1_709_251_200_000


@pytest.fixture
def fake_client() -> FakeFirestoreClient:
    return FakeFirestoreClient()


@pytest.fixture
def store(fake_client):
    from scry.store.firestore_store import AppFirestoreStore

    return AppFirestoreStore(client=fake_client)


class MutableClock:
    """手動で進められるテスト用の時計。"""

    def __init__(self, now_ms: int = T0) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()
