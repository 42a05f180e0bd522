"""
Server API Routes

CRUD for the managed host registry. Every change goes through the connector
manager so connectors follow the registry.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ...core.exceptions import ValidationError
from ...core.models import ManagedHost
from ...fail2ban import ConnectorManager
from ...settings import SettingsStore
from ..dependencies import get_manager, get_settings_store
from ..models import BAD_GATEWAY_RESPONSE, NOT_FOUND_RESPONSE, MessageResponse, ServerRequest

logger = logging.getLogger(__name__)
router = APIRouter()


def _to_host(body: ServerRequest) -> ManagedHost:
    try:
        return ManagedHost.from_dict(body.model_dump())
    except ValueError as e:
        raise ValidationError(f"invalid server definition: {e}", field="transport") from e


@router.get("/servers")
async def list_servers(settings: SettingsStore = Depends(get_settings_store)) -> Dict[str, Any]:
    return {"servers": [h.public_dict() for h in settings.list_hosts()]}


@router.post("/servers")
async def upsert_server(
    body: ServerRequest,
    manager: ConnectorManager = Depends(get_manager),
) -> Dict[str, Any]:
    """Create a host, or update the host with the same ``id``."""
    host = await manager.upsert_host(_to_host(body))
    return {"server": host.public_dict()}


@router.delete("/servers/{server_id}", response_model=MessageResponse, responses=NOT_FOUND_RESPONSE)
async def delete_server(
    server_id: str,
    manager: ConnectorManager = Depends(get_manager),
) -> MessageResponse:
    await manager.delete_host(server_id)
    return MessageResponse(message=f"server {server_id} deleted", server_id=server_id)


@router.post("/servers/{server_id}/default", responses=NOT_FOUND_RESPONSE)
async def set_default_server(
    server_id: str,
    manager: ConnectorManager = Depends(get_manager),
) -> Dict[str, Any]:
    host = await manager.set_default_host(server_id)
    return {"server": host.public_dict()}


@router.post(
    "/servers/{server_id}/test",
    response_model=MessageResponse,
    responses={**NOT_FOUND_RESPONSE, **BAD_GATEWAY_RESPONSE},
)
async def test_server(
    server_id: str,
    manager: ConnectorManager = Depends(get_manager),
) -> MessageResponse:
    """Ping fail2ban on the host, enabled or not."""
    await manager.test_host(server_id)
    return MessageResponse(message="connection successful", server_id=server_id)
