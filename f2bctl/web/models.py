"""
Shared API Models

Request bodies and common responses for the f2bctl HTTP API.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Common Error Response Definitions for OpenAPI
# =============================================================================

NOT_FOUND_RESPONSE = {
    404: {
        "description": "Not Found - host, jail, filter or file does not exist",
        "content": {"application/json": {"example": {"detail": "filter 'sshd' not found"}}},
    }
}

UNAUTHORIZED_RESPONSE = {
    401: {
        "description": "Unauthorized - missing or wrong credentials",
        "content": {"application/json": {"example": {"detail": "Authentication required"}}},
    }
}

BAD_GATEWAY_RESPONSE = {
    502: {
        "description": "The managed host could not be reached or the command failed",
        "content": {
            "application/json": {
                "example": {"detail": "fail2ban-client exited with 255", "reason": "command_failed"}
            }
        },
    }
}


# =============================================================================
# Operation Responses
# =============================================================================


class MessageResponse(BaseModel):
    """Standard response for operations that modify state."""

    message: str = Field(description="Human-readable result message")
    server_id: Optional[str] = Field(None, description="Host the operation ran on")


class BanResponse(MessageResponse):
    changed: bool = Field(description="False when the address was already in the requested state")


class RestartResponse(MessageResponse):
    mode: str = Field(description="'restart' or 'reload'")


# =============================================================================
# Callbacks
# =============================================================================


class CallbackPayload(BaseModel):
    """Body posted by the managed action on every ban and unban."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    server_id: str = Field("", alias="serverId")
    ip: str = ""
    jail: str = ""
    hostname: str = ""
    failures: Union[int, str] = ""
    logs: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {
            "serverId": self.server_id,
            "ip": self.ip,
            "jail": self.jail,
            "hostname": self.hostname,
            "failures": str(self.failures),
            "logs": self.logs,
        }


# =============================================================================
# Jails and Filters
# =============================================================================


class CreateJailRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    jail_name: str = Field(alias="jailName")
    content: str = ""


class CreateFilterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filter_name: str = Field(alias="filterName")
    content: str = ""


class FilterTestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filter_name: str = Field(alias="filterName")
    log_lines: List[str] = Field(default_factory=list, alias="logLines")
    filter_content: Optional[str] = Field(None, alias="filterContent")


class LogpathTestRequest(BaseModel):
    logpath: Optional[str] = Field(
        None, description="Logpath to test; the jail's own logpath entries when omitted"
    )


# =============================================================================
# Servers
# =============================================================================


class ServerRequest(BaseModel):
    """Create or update a managed host. Omitting ``enabled`` keeps the current state."""

    id: str = ""
    name: str = ""
    transport: str = Field("local", description="local, ssh or agent")
    host: str = ""
    port: int = 22
    socket_path: str = ""
    ssh_user: str = ""
    ssh_key_path: str = ""
    use_sudo: bool = False
    agent_url: str = ""
    agent_secret: str = ""
    hostname: str = ""
    config_root: str = ""
    tags: List[str] = Field(default_factory=list)
    enabled: Optional[bool] = None
    is_default: bool = False
