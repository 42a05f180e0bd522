"""
Callback API Routes

Endpoints hit by the managed fail2ban action on every ban and unban. They
are authenticated with the callback secret, not the operator API key.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from ...core.models import EventKind
from ...events import EventPipeline
from ..dependencies import get_pipeline
from ..models import UNAUTHORIZED_RESPONSE, CallbackPayload, MessageResponse

logger = logging.getLogger(__name__)
router = APIRouter()


async def _ingest(
    kind: EventKind,
    body: CallbackPayload,
    secret: Optional[str],
    pipeline: EventPipeline,
) -> MessageResponse:
    result = await pipeline.process(secret, body.to_payload(), kind)
    return MessageResponse(
        message=f"{kind.value} notification processed",
        server_id=result.event.server_id,
    )


@router.post("/ban", response_model=MessageResponse, responses=UNAUTHORIZED_RESPONSE)
async def ban_notification(
    body: CallbackPayload,
    x_callback_secret: Optional[str] = Header(None),
    pipeline: EventPipeline = Depends(get_pipeline),
) -> MessageResponse:
    """Record a ban reported by a managed host and broadcast it."""
    return await _ingest(EventKind.BAN, body, x_callback_secret, pipeline)


@router.post("/unban", response_model=MessageResponse, responses=UNAUTHORIZED_RESPONSE)
async def unban_notification(
    body: CallbackPayload,
    x_callback_secret: Optional[str] = Header(None),
    pipeline: EventPipeline = Depends(get_pipeline),
) -> MessageResponse:
    """Record an unban reported by a managed host and broadcast it."""
    return await _ingest(EventKind.UNBAN, body, x_callback_secret, pipeline)
