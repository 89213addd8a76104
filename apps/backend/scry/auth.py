"""Authenticated user resolution.

認証そのものは上流（API ゲートウェイ/認証サービス）が担い、検証済みの
ユーザーIDを `settings.user_id_header` のヘッダで渡してくる前提。
ここではヘッダの有無と形式だけを確認し、所有者チェックはエンジン側で行う。
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from .config import settings
from .errors import InvalidInput
from .logging import logger
from .store.common import validate_document_id


def _auth_log_context(request: Request, *, reason: str) -> dict[str, object]:
    """Compose structured log context aligned with AccessLog fields."""

    return {
        "reason": reason,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else "unknown",
        "user_agent": request.headers.get("user-agent"),
        "request_id": getattr(request.state, "request_id", None),
    }


async def get_current_user_id(request: Request) -> str:
    """Return the authenticated user id and attach it to ``request.state``."""

    header_name = settings.user_id_header
    raw_user_id = request.headers.get(header_name)
    if not raw_user_id or not raw_user_id.strip():
        logger.warning("user_identity_missing", **_auth_log_context(request, reason="missing_header"))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authenticated user identity is missing",
        )
    try:
        user_id = validate_document_id(raw_user_id, field_name="user_id")
    except InvalidInput as exc:
        logger.warning("user_identity_invalid", **_auth_log_context(request, reason="invalid_header"))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authenticated user identity is invalid",
        ) from exc
    request.state.user_id = user_id
    return user_id
