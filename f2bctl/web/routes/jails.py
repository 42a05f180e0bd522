"""
Jail API Routes

Ban/unban, jail file editing, jail discovery and logpath testing on the host
selected by ``?serverId=`` (the default host when omitted).
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException

from ...core.exceptions import NotFoundError
from ...fail2ban.connectors import Connector
from ...fail2ban.jails import extract_filter, extract_logpaths, validate_name
from ...settings import SettingsStore
from ..dependencies import get_connector, get_settings_store
from ..models import (
    BAD_GATEWAY_RESPONSE,
    NOT_FOUND_RESPONSE,
    BanResponse,
    CreateJailRequest,
    LogpathTestRequest,
    MessageResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


# =============================================================================
# Bans
# =============================================================================


@router.post(
    "/jails/{jail}/ban/{ip}",
    response_model=BanResponse,
    responses={**NOT_FOUND_RESPONSE, **BAD_GATEWAY_RESPONSE},
)
async def ban_ip(jail: str, ip: str, connector: Connector = Depends(get_connector)) -> BanResponse:
    """Ban an address in a jail. Banning an already banned address is a no-op."""
    changed = await connector.ban(jail, ip)
    message = f"{ip} banned in {jail}" if changed else f"{ip} already banned in {jail}"
    return BanResponse(message=message, changed=changed, server_id=connector.host_id)


@router.post(
    "/jails/{jail}/unban/{ip}",
    response_model=BanResponse,
    responses={**NOT_FOUND_RESPONSE, **BAD_GATEWAY_RESPONSE},
)
async def unban_ip(jail: str, ip: str, connector: Connector = Depends(get_connector)) -> BanResponse:
    """Unban an address. Unbanning an address that is not banned is a no-op."""
    changed = await connector.unban(jail, ip)
    message = f"{ip} unbanned from {jail}" if changed else f"{ip} was not banned in {jail}"
    return BanResponse(message=message, changed=changed, server_id=connector.host_id)


# =============================================================================
# Jail Files
# =============================================================================


@router.get("/jails/{jail}/config", responses={**NOT_FOUND_RESPONSE, **BAD_GATEWAY_RESPONSE})
async def get_jail_config(jail: str, connector: Connector = Depends(get_connector)) -> Dict[str, Any]:
    """
    Jail section and the filter it uses.

    The filter falls back to the jail name when the jail does not name one;
    a missing filter file yields an empty ``filter_config``.
    """
    validate_name(jail)
    jail_file = await connector.read_jail_config(jail)
    filter_name = extract_filter(jail_file.content) or jail
    try:
        filter_file = await connector.read_filter_config(filter_name)
        filter_config, filter_path = filter_file.content, filter_file.path
    except NotFoundError:
        filter_config, filter_path = "", ""
    return {
        "jail": jail,
        "server_id": connector.host_id,
        "jail_config": jail_file.content,
        "jail_path": jail_file.path,
        "filter": filter_name,
        "filter_config": filter_config,
        "filter_path": filter_path,
    }


@router.post("/jails/{jail}/config", response_model=MessageResponse)
async def set_jail_config(
    jail: str,
    body: Dict[str, Any] = Body(...),
    connector: Connector = Depends(get_connector),
    settings: SettingsStore = Depends(get_settings_store),
) -> MessageResponse:
    """
    Write the jail section and/or its filter.

    Body keys: ``jail_config`` and ``filter_config`` (either may be omitted).
    """
    validate_name(jail)
    jail_config = body.get("jail_config")
    filter_config = body.get("filter_config")
    if jail_config is None and filter_config is None:
        raise HTTPException(status_code=400, detail="jail_config or filter_config required")

    if jail_config is not None:
        await connector.write_jail_config(jail, str(jail_config))
    if filter_config is not None:
        current = jail_config if jail_config is not None else (await connector.read_jail_config(jail)).content
        filter_name = body.get("filter") or extract_filter(str(current)) or jail
        await connector.write_filter_config(filter_name, str(filter_config))

    settings.mark_restart_needed(connector.host_id)
    return MessageResponse(message="jail config updated, reload needed", server_id=connector.host_id)


@router.post("/jails/{jail}/logpath/test")
async def test_logpath(
    jail: str,
    body: Optional[LogpathTestRequest] = None,
    connector: Connector = Depends(get_connector),
) -> Dict[str, Any]:
    """Resolve and probe the jail's logpath entries, or the one given in the body."""
    validate_name(jail)
    if body is not None and body.logpath:
        logpaths = [body.logpath]
    else:
        logpaths = extract_logpaths((await connector.read_jail_config(jail)).content)
    if not logpaths:
        raise HTTPException(status_code=400, detail=f"jail {jail} has no logpath")

    results = [await connector.test_logpath(path) for path in logpaths]
    return {
        "jail": jail,
        "server_id": connector.host_id,
        "results": [r.to_dict() for r in results],
    }


# =============================================================================
# Jail Management
# =============================================================================


@router.get("/jails/manage")
async def list_managed_jails(connector: Connector = Depends(get_connector)) -> Dict[str, Any]:
    """Every jail defined in jail.conf/jail.local/jail.d with its enabled flag."""
    jails = await connector.discover_jails()
    return {"server_id": connector.host_id, "jails": [j.to_dict() for j in jails]}


@router.post("/jails/manage", response_model=MessageResponse)
async def update_managed_jails(
    updates: Dict[str, bool] = Body(...),
    connector: Connector = Depends(get_connector),
    settings: SettingsStore = Depends(get_settings_store),
) -> MessageResponse:
    """Set ``enabled`` per jail. Body: ``{"sshd": true, "nginx-http-auth": false}``."""
    for name in updates:
        validate_name(name)
    await connector.update_jail_enabled_states(updates)
    settings.mark_restart_needed(connector.host_id)
    return MessageResponse(message="Jail settings updated", server_id=connector.host_id)


@router.post("/jails", response_model=MessageResponse, status_code=201)
async def create_jail(
    body: CreateJailRequest,
    connector: Connector = Depends(get_connector),
    settings: SettingsStore = Depends(get_settings_store),
) -> MessageResponse:
    await connector.create_jail(body.jail_name, body.content)
    settings.mark_restart_needed(connector.host_id)
    return MessageResponse(message=f"jail {body.jail_name} created", server_id=connector.host_id)


@router.delete("/jails/{jail}", response_model=MessageResponse, responses=NOT_FOUND_RESPONSE)
async def delete_jail(
    jail: str,
    connector: Connector = Depends(get_connector),
    settings: SettingsStore = Depends(get_settings_store),
) -> MessageResponse:
    await connector.delete_jail(jail)
    settings.mark_restart_needed(connector.host_id)
    return MessageResponse(message=f"jail {jail} deleted", server_id=connector.host_id)


@router.get("/jails/{jail}/banned")
async def banned_ips(jail: str, connector: Connector = Depends(get_connector)) -> Dict[str, Any]:
    validate_name(jail)
    ips: List[str] = await connector.banned_ips(jail)
    return {"jail": jail, "server_id": connector.host_id, "banned_ips": ips}
