"""
Agent connector: fail2ban managed through a remote HTTP agent.

The agent exposes the connector operations under ``/v1``; requests carry the
host's shared secret in the ``X-F2B-Token`` header. HTTP failures are mapped
back onto the control plane's error taxonomy so callers see the same
exceptions they would get from a local or SSH host.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ...core.exceptions import (
    AuthError,
    NotFoundError,
    TransportError,
    ValidationError,
)
from ...core.models import (
    ConfigFile,
    FilterTestResult,
    JailInfo,
    LogpathTestResult,
    ManagedFilesResult,
    ManagedHost,
    TransportKind,
)
from ...settings.models import AppSettings
from ..jails import validate_name
from .base import DEFAULT_TIMEOUT, Connector

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-F2B-Token"


class AgentConnector(Connector):
    """Talks to a fail2ban agent over HTTP with ``httpx.AsyncClient``."""

    transport = TransportKind.AGENT

    def __init__(
        self,
        host: ManagedHost,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(host, timeout)
        if not host.agent_url:
            raise ValidationError(f"host {host.id} has no agent URL", field="agent_url")
        self._client = httpx.AsyncClient(
            base_url=host.agent_url.rstrip("/"),
            headers={TOKEN_HEADER: host.agent_secret},
            timeout=timeout,
            transport=transport,
        )

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._bounded(
                self._client.request(method, path, **kwargs), f"{method} {path}"
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                f"agent {self.host.agent_url} timed out on {method} {path}",
                reason=TransportError.REASON_TIMEOUT,
                host_id=self.host_id,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"agent {self.host.agent_url} unreachable: {e}",
                reason=TransportError.REASON_UNREACHABLE,
                host_id=self.host_id,
            ) from e

        if response.status_code >= 400:
            self._raise_for_status(response, method, path)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"agent returned invalid JSON for {method} {path}",
                reason=TransportError.REASON_BAD_RESPONSE,
                host_id=self.host_id,
                output=response.text,
            ) from e

    def _raise_for_status(self, response: httpx.Response, method: str, path: str) -> None:
        try:
            detail = response.json().get("error") or response.text
        except (ValueError, AttributeError):
            detail = response.text
        message = f"agent {method} {path} failed ({response.status_code}): {detail}"
        status = response.status_code
        if status == 404:
            raise NotFoundError(message)
        if status in (400, 422):
            raise ValidationError(message)
        if status in (401, 403):
            raise AuthError(message)
        raise TransportError(
            message,
            reason=TransportError.REASON_COMMAND_FAILED,
            host_id=self.host_id,
            output=response.text,
        )

    @staticmethod
    def _field(payload: Any, key: str, default: Any = None) -> Any:
        if isinstance(payload, dict):
            return payload.get(key, default)
        return default

    # =========================================================================
    # Jails and Bans
    # =========================================================================

    async def _jail_names(self) -> List[str]:
        payload = await self._request("GET", "/v1/jails")
        return [
            item["jail_name"] if isinstance(item, dict) else str(item)
            for item in self._field(payload, "jails", []) or []
        ]

    async def list_jails(self) -> List[JailInfo]:
        payload = await self._request("GET", "/v1/jails")
        infos = []
        for item in self._field(payload, "jails", []) or []:
            if not isinstance(item, dict):
                continue
            banned = list(item.get("banned_ips") or [])
            infos.append(
                JailInfo(
                    jail_name=item["jail_name"],
                    total_banned=int(item.get("total_banned", len(banned))),
                    banned_ips=banned,
                    enabled=bool(item.get("enabled", True)),
                )
            )
        return sorted(infos, key=lambda info: info.jail_name)

    async def banned_ips(self, jail: str) -> List[str]:
        jail = validate_name(jail)
        payload = await self._request("GET", f"/v1/jails/{jail}/banned")
        return list(self._field(payload, "banned_ips", []) or [])

    async def _ban(self, jail: str, ip: str) -> None:
        await self._request("POST", f"/v1/jails/{jail}/ban", json={"ip": ip})

    async def _unban(self, jail: str, ip: str) -> None:
        await self._request("POST", f"/v1/jails/{jail}/unban", json={"ip": ip})

    # =========================================================================
    # Filters
    # =========================================================================

    async def read_filter_config(self, name: str) -> ConfigFile:
        name = validate_name(name, kind="filter")
        payload = await self._request("GET", f"/v1/filters/{name}")
        return ConfigFile(
            content=self._field(payload, "content", ""),
            path=self._field(payload, "path", ""),
        )

    async def write_filter_config(self, name: str, content: str) -> None:
        name = validate_name(name, kind="filter")
        await self._request("PUT", f"/v1/filters/{name}", json={"content": content})

    async def list_filters(self) -> List[str]:
        payload = await self._request("GET", "/v1/filters")
        return sorted(self._field(payload, "filters", []) or [])

    async def create_filter(self, name: str, content: str) -> None:
        name = validate_name(name, kind="filter")
        await self._request("POST", "/v1/filters", json={"name": name, "content": content})

    async def delete_filter(self, name: str) -> None:
        name = validate_name(name, kind="filter")
        await self._request("DELETE", f"/v1/filters/{name}")

    async def test_filter(
        self, name: str, log_lines: List[str], content: Optional[str] = None
    ) -> FilterTestResult:
        name = validate_name(name, kind="filter")
        body: Dict[str, Any] = {"log_lines": log_lines}
        if content is not None:
            body["content"] = content
        payload = await self._request("POST", f"/v1/filters/{name}/test", json=body)
        return FilterTestResult(
            output=self._field(payload, "output", ""),
            filter_path=self._field(payload, "filter_path", ""),
            matches=list(self._field(payload, "matches", []) or []),
        )

    # =========================================================================
    # Jail Files
    # =========================================================================

    async def read_jail_config(self, jail: str) -> ConfigFile:
        jail = validate_name(jail)
        payload = await self._request("GET", f"/v1/jails/{jail}/config")
        return ConfigFile(
            content=self._field(payload, "content", ""),
            path=self._field(payload, "path", ""),
        )

    async def write_jail_config(self, jail: str, content: str) -> None:
        jail = validate_name(jail)
        await self._request("PUT", f"/v1/jails/{jail}/config", json={"content": content})

    async def create_jail(self, jail: str, content: str) -> None:
        jail = validate_name(jail)
        await self._request("POST", "/v1/jails", json={"name": jail, "content": content})

    async def delete_jail(self, jail: str) -> None:
        jail = validate_name(jail)
        await self._request("DELETE", f"/v1/jails/{jail}")

    async def discover_jails(self) -> List[JailInfo]:
        payload = await self._request("GET", "/v1/jails/discover")
        return [
            JailInfo(jail_name=item["jail_name"], enabled=bool(item.get("enabled", True)))
            for item in self._field(payload, "jails", []) or []
        ]

    async def update_jail_enabled_states(self, updates: Dict[str, bool]) -> None:
        validated = {validate_name(j): bool(v) for j, v in updates.items()}
        await self._request("POST", "/v1/jails/enabled", json={"updates": validated})

    async def test_logpath(self, logpath: str) -> LogpathTestResult:
        payload = await self._request("POST", "/v1/logpath/test", json={"logpath": logpath})
        return LogpathTestResult.from_dict(payload or {})

    # =========================================================================
    # Service Control
    # =========================================================================

    async def reload(self) -> None:
        await self._request("POST", "/v1/reload")

    async def _restart(self) -> str:
        payload = await self._request("POST", "/v1/restart")
        return self._field(payload, "mode", "restart")

    async def ping(self) -> None:
        await self._request("GET", "/v1/ping")

    # =========================================================================
    # Managed Files
    # =========================================================================

    async def ensure_managed_config_files(
        self, callback_url: str, host_id: str, settings: AppSettings
    ) -> ManagedFilesResult:
        payload = await self._request(
            "POST",
            "/v1/managed-config",
            json={
                "callback_url": callback_url,
                "server_id": host_id,
                "settings": settings.to_dict(include_servers=False),
            },
        )
        return ManagedFilesResult.from_dict(payload or {"jail_local": "written", "action": "written"})

    async def check_jail_local_integrity(self) -> Tuple[bool, bool]:
        payload = await self._request("GET", "/v1/jail-local/integrity")
        return bool(self._field(payload, "exists", False)), bool(self._field(payload, "managed", False))

    async def close(self) -> None:
        await self._client.aclose()
