from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from google.cloud import firestore

from ..errors import InvalidInput


MAX_DOCUMENT_ID_LENGTH = 256


def validate_document_id(value: Any, *, field_name: str) -> str:
    """Firestore のドキュメントIDとして安全な文字列か検証する。

    なぜ: `/` を含むIDはサブコレクションへのパスとして解釈され、別ユーザーの
    ドキュメントを指してしまう恐れがある。`__xxx__` 形式や `.`/`..` も
    Firestore 側で予約されているため、書き込み前に InvalidInput として弾く。
    """

    if not isinstance(value, str):
        raise InvalidInput(f"{field_name} must be a string", details={"field": field_name})
    cleaned = value.strip()
    if not cleaned:
        raise InvalidInput(f"{field_name} must not be empty", details={"field": field_name})
    if len(cleaned) > MAX_DOCUMENT_ID_LENGTH:
        raise InvalidInput(
            f"{field_name} must be at most {MAX_DOCUMENT_ID_LENGTH} characters",
            details={"field": field_name, "limit": MAX_DOCUMENT_ID_LENGTH},
        )
    if "/" in cleaned or cleaned in {".", ".."} or (
        cleaned.startswith("__") and cleaned.endswith("__")
    ):
        raise InvalidInput(f"{field_name} has an invalid format", details={"field": field_name})
    return cleaned


def derive_interaction_id(user_id: str, item_id: str, request_id: str) -> str:
    """Deterministic interaction document id for an idempotency key.

    同じ (ユーザー, アイテム, キー) の再送は同じドキュメントIDになり、
    トランザクション内の存在確認だけで二重採点を検出できる。
    """

    digest = hashlib.sha256(f"{user_id}\x1f{item_id}\x1f{request_id}".encode("utf-8"))
    return f"rq_{digest.hexdigest()[:40]}"


def _first(value: Any) -> Any:
    """Return the first element of a non-string sequence, or None when it is empty."""

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return value[0] if value else None
    return value


def extract_count_from_aggregation(aggregation: Sequence[Any] | None, alias: str = "count") -> int:
    """Read the integer produced by ``query.count(alias=...).get()``.

    クライアントのバージョンにより戻り値は `[[AggregationResult]]`、
    `[AggregationResult]`、dict のいずれかになる。どの形でも件数を取り出し、
    見つからなければ 0 とみなす。
    """

    result = _first(_first(aggregation or None))
    if result is None:
        return 0
    if isinstance(result, Mapping):
        return int(result.get(alias) or 0)
    fields = getattr(result, "aggregate_fields", None)
    if isinstance(fields, Mapping) and alias in fields:
        return int(fields[alias] or 0)
    if getattr(result, "alias", None) == alias:
        return int(getattr(result, "value", 0) or 0)
    return 0


def coerce_firestore_snapshot(candidate: Any) -> firestore.DocumentSnapshot | None:
    """Unwrap ``transaction.get`` output, which may be a snapshot or a generator of them."""

    if candidate is None or hasattr(candidate, "exists"):
        return candidate
    if isinstance(candidate, (str, bytes, Mapping)) or not isinstance(candidate, Iterable):
        return None
    return next(iter(candidate), None)
