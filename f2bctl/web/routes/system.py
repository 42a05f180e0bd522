"""
System API Routes

Settings, service restart, dashboard summary and version information.
"""

import asyncio
import logging
import platform
import sys
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query

from ... import __version__
from ...core.exceptions import ValidationError
from ...fail2ban import ConnectorManager
from ...fail2ban.connectors import Connector
from ...settings import AppSettings, SettingsStore
from ...storage import ControlPlaneStore
from ..dependencies import get_connector, get_manager, get_settings_store, get_storage
from ..models import BAD_GATEWAY_RESPONSE, NOT_FOUND_RESPONSE, RestartResponse

logger = logging.getLogger(__name__)
router = APIRouter()

SUMMARY_RECENT_BANS = 5


# =============================================================================
# Summary
# =============================================================================


@router.get("/summary", responses={**NOT_FOUND_RESPONSE, **BAD_GATEWAY_RESPONSE})
async def summary(
    connector: Connector = Depends(get_connector),
    storage: ControlPlaneStore = Depends(get_storage),
) -> Dict[str, Any]:
    """Jails with their banned addresses plus the latest ban events of the host."""
    jails = await connector.list_jails()
    recent = await asyncio.to_thread(
        storage.list_ban_events, connector.host_id, None, SUMMARY_RECENT_BANS
    )
    return {
        "server_id": connector.host_id,
        "jails": [j.to_dict() for j in jails],
        "last_bans": [e.to_dict() for e in recent],
    }


# =============================================================================
# Settings
# =============================================================================


@router.get("/settings")
async def get_settings(settings: SettingsStore = Depends(get_settings_store)) -> Dict[str, Any]:
    return settings.get().to_dict(public=True)


@router.post("/settings")
async def update_settings(
    body: Dict[str, Any] = Body(...),
    settings: SettingsStore = Depends(get_settings_store),
    manager: ConnectorManager = Depends(get_manager),
) -> Dict[str, Any]:
    """
    Update settings. Keys left out of the body keep their current value;
    ``servers`` is ignored here (use /servers).
    """
    merged = settings.get().to_dict(include_servers=False)
    merged.update({k: v for k, v in body.items() if k not in ("servers", "restart_needed")})
    try:
        candidate = AppSettings.from_dict(merged)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"invalid settings: {e}") from e

    stored = await manager.update_settings(candidate)
    return {
        "message": "Settings updated",
        "restart_needed": stored.restart_needed,
        "settings": stored.to_dict(public=True),
    }


# =============================================================================
# Service Control
# =============================================================================


@router.post(
    "/fail2ban/restart",
    response_model=RestartResponse,
    responses={**NOT_FOUND_RESPONSE, **BAD_GATEWAY_RESPONSE},
)
async def restart_fail2ban(
    server_id: Optional[str] = Query(None, alias="serverId"),
    manager: ConnectorManager = Depends(get_manager),
) -> RestartResponse:
    """Restart fail2ban (or reload it where no service manager is available)."""
    mode, host_id = await manager.restart(server_id)
    return RestartResponse(message=f"fail2ban {mode} completed", mode=mode, server_id=host_id)


@router.get("/version")
async def version() -> Dict[str, str]:
    return {
        "version": __version__,
        "python_version": sys.version.split()[0],
        "platform": platform.platform(),
    }
