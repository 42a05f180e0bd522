"""
Event API Routes

Stored ban/unban history, ban statistics and the live event WebSocket.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from ...events import BroadcastHub, Observer
from ...storage import ControlPlaneStore
from ..auth_helpers import authenticate_websocket, require_operator
from ..config import WebConfig
from ..dependencies import get_config, get_hub, get_storage

logger = logging.getLogger(__name__)
router = APIRouter()

# WebSocket close codes
WS_POLICY_VIOLATION = 1008
WS_TRY_AGAIN_LATER = 1013
WS_UNAUTHORIZED = 4001


# =============================================================================
# History
# =============================================================================


@router.get("/events/bans", dependencies=[Depends(require_operator)])
async def list_ban_events(
    server_id: Optional[str] = Query(None, alias="serverId"),
    since: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    storage: ControlPlaneStore = Depends(get_storage),
) -> Dict[str, Any]:
    """Most recent first; all hosts unless ``serverId`` is given."""
    events = await asyncio.to_thread(storage.list_ban_events, server_id, since, limit, offset)
    return {"events": [e.to_dict() for e in events], "limit": limit, "offset": offset}


@router.get("/events/bans/stats", dependencies=[Depends(require_operator)])
async def ban_event_stats(
    since: Optional[datetime] = Query(None),
    storage: ControlPlaneStore = Depends(get_storage),
) -> Dict[str, Any]:
    """Totals per host and per jail; ``recent`` counts since ``since`` (default 24h)."""
    return await asyncio.to_thread(storage.ban_event_stats, since)


@router.delete("/events/bans", dependencies=[Depends(require_operator)])
async def delete_ban_events(
    server_id: Optional[str] = Query(None, alias="serverId"),
    storage: ControlPlaneStore = Depends(get_storage),
) -> Dict[str, Any]:
    deleted = await asyncio.to_thread(storage.delete_ban_events, server_id)
    return {"deleted": deleted}


# =============================================================================
# WebSocket Endpoint
# =============================================================================


def origin_allowed(websocket: WebSocket, config: WebConfig) -> bool:
    """
    Same-origin requests, configured CORS origins and non-browser clients
    (no Origin header) are accepted.
    """
    origin = websocket.headers.get("origin")
    if not origin:
        return True
    if origin in config.cors_origins or "*" in config.cors_origins:
        return True
    host = websocket.headers.get("host", "")
    return urlsplit(origin).netloc.lower() == host.lower()


async def _pump_messages(websocket: WebSocket, observer: Observer) -> None:
    async for message in observer.messages():
        await websocket.send_json(message)


async def _drain_client(websocket: WebSocket) -> None:
    # Client messages carry no meaning; reading detects the disconnect.
    while True:
        await websocket.receive_text()


@router.websocket("/ws")
async def events_websocket(
    websocket: WebSocket,
    config: WebConfig = Depends(get_config),
    hub: BroadcastHub = Depends(get_hub),
):
    """
    Live feed of ``ban_event``, ``unban_event``, ``heartbeat`` and
    ``console_log`` messages.

    One task writes hub messages to the socket and one reads from it; the
    connection ends when either finishes. A client too slow to keep up is
    dropped by the hub and the socket is closed with 1013.
    """
    if not origin_allowed(websocket, config):
        logger.warning(f"Rejected WebSocket from origin {websocket.headers.get('origin')}")
        await websocket.close(code=WS_POLICY_VIOLATION)
        return
    if not authenticate_websocket(websocket, config):
        await websocket.close(code=WS_UNAUTHORIZED)
        return

    await websocket.accept()
    observer = await hub.register()
    logger.info(f"WebSocket connected: {observer}")

    writer = asyncio.create_task(_pump_messages(websocket, observer))
    reader = asyncio.create_task(_drain_client(websocket))
    try:
        done, pending = await asyncio.wait({writer, reader}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if task.cancelled():
                continue
            error = task.exception()
            if error is not None and not isinstance(error, (WebSocketDisconnect, RuntimeError)):
                logger.error(f"WebSocket {observer} failed: {error}")

        if writer in done and not writer.cancelled() and writer.exception() is None:
            try:
                await websocket.close(code=WS_TRY_AGAIN_LATER)
            except RuntimeError:
                pass
    except asyncio.CancelledError:
        # The server cancels the handler once the client has gone away.
        logger.debug(f"WebSocket handler for {observer} cancelled")
    finally:
        writer.cancel()
        reader.cancel()
        hub.unregister_nowait(observer)
        logger.info(f"WebSocket disconnected: {observer}")
