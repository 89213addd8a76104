from __future__ import annotations

import os
from functools import lru_cache

from google.cloud import firestore

from ..config import settings
from .firestore_store import AppFirestoreStore, ReviewWrite

_LOCAL_EMULATOR = "127.0.0.1:8080"
_SCHEMES = ("http://", "https://")


def _emulator_endpoint() -> str | None:
    """Return the emulator endpoint (with scheme) or None when talking to Cloud Firestore.

    優先順位: 設定値 → 環境変数 → (production 以外のみ) ローカルの既定ポート。
    """

    configured = settings.firestore_emulator_host or os.environ.get("FIRESTORE_EMULATOR_HOST")
    if not configured and (settings.environment or "").strip().lower() != "production":
        configured = _LOCAL_EMULATOR
    host = (configured or "").strip()
    if not host:
        return None
    return host if host.startswith(_SCHEMES) else f"http://{host}"


def _strip_scheme(endpoint: str) -> str:
    for scheme in _SCHEMES:
        if endpoint.startswith(scheme):
            return endpoint[len(scheme):]
    return endpoint


def _connect() -> firestore.Client:
    project = settings.firestore_project_id or settings.gcp_project_id
    endpoint = _emulator_endpoint()
    if endpoint is None:
        return firestore.Client(project=project)
    # 環境変数があるとクライアントは匿名認証でエミュレータへ接続する
    os.environ.setdefault("FIRESTORE_EMULATOR_HOST", _strip_scheme(endpoint))
    return firestore.Client(project=project, client_options={"api_endpoint": endpoint})


@lru_cache(maxsize=1)
def get_store() -> AppFirestoreStore:
    """Build the process-wide store on first use.

    なぜ: import 時に接続すると、テストや CLI から設定を差し替える前に
    クライアントが作られてしまう。
    """

    return AppFirestoreStore(client=_connect())


__all__ = ["AppFirestoreStore", "ReviewWrite", "get_store"]
