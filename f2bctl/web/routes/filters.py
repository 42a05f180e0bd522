"""
Filter API Routes

List, read, create, delete and regex-test fail2ban filters on the selected
host.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ...fail2ban.connectors import Connector
from ..dependencies import get_connector
from ..models import (
    BAD_GATEWAY_RESPONSE,
    NOT_FOUND_RESPONSE,
    CreateFilterRequest,
    FilterTestRequest,
    MessageResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/filters")
async def list_filters(connector: Connector = Depends(get_connector)) -> Dict[str, Any]:
    return {"server_id": connector.host_id, "filters": await connector.list_filters()}


@router.get("/filters/{name}/content", responses=NOT_FOUND_RESPONSE)
async def get_filter_content(name: str, connector: Connector = Depends(get_connector)) -> Dict[str, Any]:
    """Filter text as stored, ``.local`` preferred over ``.conf``."""
    config = await connector.read_filter_config(name)
    return {
        "filter": name,
        "server_id": connector.host_id,
        "content": config.content,
        "path": config.path,
    }


@router.post("/filters/test", responses={**NOT_FOUND_RESPONSE, **BAD_GATEWAY_RESPONSE})
async def test_filter(
    body: FilterTestRequest,
    connector: Connector = Depends(get_connector),
) -> Dict[str, Any]:
    """
    Run fail2ban-regex for the filter against the supplied log lines.

    ``filterContent`` tests unsaved edits instead of the stored filter.
    Includes are merged before the run.
    """
    result = await connector.test_filter(body.filter_name, body.log_lines, body.filter_content)
    data = result.to_dict()
    data["server_id"] = connector.host_id
    return data


@router.post("/filters", response_model=MessageResponse, status_code=201)
async def create_filter(
    body: CreateFilterRequest,
    connector: Connector = Depends(get_connector),
) -> MessageResponse:
    await connector.create_filter(body.filter_name, body.content)
    return MessageResponse(message=f"filter {body.filter_name} created", server_id=connector.host_id)


@router.delete("/filters/{name}", response_model=MessageResponse, responses=NOT_FOUND_RESPONSE)
async def delete_filter(name: str, connector: Connector = Depends(get_connector)) -> MessageResponse:
    await connector.delete_filter(name)
    return MessageResponse(message=f"filter {name} deleted", server_id=connector.host_id)
