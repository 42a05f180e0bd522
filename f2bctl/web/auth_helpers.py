"""
Authentication helpers for f2bctl web routes.

Two credentials exist:
- the operator API key, optional, guarding the management API and /ws
- the callback secret, required on ban/unban callbacks from managed hosts
  (checked by the event pipeline, not here)
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, WebSocket

from .config import WebConfig
from .dependencies import get_config

logger = logging.getLogger(__name__)


def _extract_key(headers, query_params=None) -> Optional[str]:
    """API key from ``Authorization: Bearer``, ``X-API-Key`` or ``?token=``."""
    auth_header = headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    key = headers.get("x-api-key")
    if key:
        return key
    if query_params is not None:
        return query_params.get("token")
    return None


def _key_matches(provided: Optional[str], expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def require_operator(
    request: Request,
    config: WebConfig = Depends(get_config),
) -> None:
    """
    FastAPI dependency: require the operator API key when auth is on.

    Usage:
        router = APIRouter(dependencies=[Depends(require_operator)])
    """
    if not config.require_auth:
        return
    if not config.api_key:
        logger.error("F2BCTL_REQUIRE_AUTH is set but no F2BCTL_API_KEY is configured")
        raise HTTPException(status_code=500, detail="Server authentication is misconfigured")
    if not _key_matches(_extract_key(request.headers), config.api_key):
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )


def authenticate_websocket(websocket: WebSocket, config: WebConfig) -> bool:
    """
    Check the operator API key on a WebSocket before accepting it.

    The key may also come from the ``token`` query parameter since browsers
    cannot set headers on WebSocket requests.
    """
    if not config.require_auth:
        return True
    if not config.api_key:
        return False
    return _key_matches(_extract_key(websocket.headers, websocket.query_params), config.api_key)
