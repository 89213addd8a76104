"""Pick which phrasing of an item to present.

アイテム（記憶状態の単位）を選んだ後、そのアイテムのどの問い方を出すかを決める。
記憶状態には一切触れない純粋関数。
"""

from __future__ import annotations

import random
from collections.abc import Iterable
from dataclasses import dataclass

from ..models.memory import Phrasing


REASON_CANONICAL = "canonical"
REASON_LEAST_SEEN = "least-seen"
REASON_RANDOM = "random"
REASON_NONE = "none"


@dataclass(frozen=True)
class PhrasingSelection:
    phrasing: Phrasing | None
    reason: str


def _least_seen_key(phrasing: Phrasing) -> tuple[int, int, int]:
    return (
        phrasing.attempt_count,
        phrasing.last_attempted_at or 0,
        phrasing.created_at,
    )


def select_phrasing(
    phrasings: Iterable[Phrasing],
    *,
    canonical_id: str | None = None,
    exclude_id: str | None = None,
    prefer_least_seen: bool = True,
    rng: random.Random | None = None,
) -> PhrasingSelection:
    """Choose a phrasing: canonical first, then least seen, else random.

    - アーカイブ/削除済みと ``exclude_id`` は候補から外す。
    - least-seen は attempt_count → last_attempted_at（未出題は 0）→ created_at の昇順。
    - ``prefer_least_seen=False`` のときだけ乱数で選ぶ（``rng`` を注入可能）。
    """

    candidates = [
        phrasing
        for phrasing in phrasings
        if phrasing.is_active and (exclude_id is None or phrasing.id != exclude_id)
    ]
    if not candidates:
        return PhrasingSelection(phrasing=None, reason=REASON_NONE)

    if canonical_id is not None:
        for phrasing in candidates:
            if phrasing.id == canonical_id:
                return PhrasingSelection(phrasing=phrasing, reason=REASON_CANONICAL)

    if prefer_least_seen:
        return PhrasingSelection(phrasing=min(candidates, key=_least_seen_key), reason=REASON_LEAST_SEEN)

    chooser = rng or random.Random()
    return PhrasingSelection(phrasing=chooser.choice(candidates), reason=REASON_RANDOM)
