"""
f2bctl Core Data Models

Defines the data structures shared between the connectors, the settings
store, the storage layer and the event pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


DEFAULT_CONFIG_ROOT = "/etc/fail2ban"
DEFAULT_SOCKET_PATH = "/var/run/fail2ban/fail2ban.sock"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class TransportKind(str, Enum):
    """How a managed host is reached."""

    LOCAL = "local"
    SSH = "ssh"
    AGENT = "agent"


class EventKind(str, Enum):
    """Kind of enforcer notification."""

    BAN = "ban"
    UNBAN = "unban"


# =============================================================================
# Managed Hosts
# =============================================================================


@dataclass
class ManagedHost:
    """
    One fail2ban installation reachable through a connector.

    ``enabled`` is ``None`` while a host is being created from user input
    that did not say either way; normalization replaces it with a bool.
    """

    id: str = ""
    name: str = ""
    transport: TransportKind = TransportKind.LOCAL
    host: str = ""
    port: int = 22
    socket_path: str = ""
    ssh_user: str = ""
    ssh_key_path: str = ""
    use_sudo: bool = False
    agent_url: str = ""
    agent_secret: str = ""
    hostname: str = ""
    config_root: str = DEFAULT_CONFIG_ROOT
    tags: List[str] = field(default_factory=list)
    enabled: Optional[bool] = None
    is_default: bool = False
    restart_needed: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "transport": self.transport.value,
            "host": self.host,
            "port": self.port,
            "socket_path": self.socket_path,
            "ssh_user": self.ssh_user,
            "ssh_key_path": self.ssh_key_path,
            "use_sudo": self.use_sudo,
            "agent_url": self.agent_url,
            "agent_secret": self.agent_secret,
            "hostname": self.hostname,
            "config_root": self.config_root,
            "tags": list(self.tags),
            "enabled": self.enabled,
            "is_default": self.is_default,
            "restart_needed": self.restart_needed,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagedHost":
        transport = str(data.get("transport") or data.get("type") or "local").strip().lower()
        enabled = data.get("enabled")
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            transport=TransportKind(transport),
            host=data.get("host") or "",
            port=int(data.get("port") or 22),
            socket_path=data.get("socket_path") or "",
            ssh_user=data.get("ssh_user") or "",
            ssh_key_path=data.get("ssh_key_path") or "",
            use_sudo=bool(data.get("use_sudo", False)),
            agent_url=data.get("agent_url") or "",
            agent_secret=data.get("agent_secret") or "",
            hostname=data.get("hostname") or "",
            config_root=data.get("config_root") or DEFAULT_CONFIG_ROOT,
            tags=list(data.get("tags") or []),
            enabled=None if enabled is None else bool(enabled),
            is_default=bool(data.get("is_default", False)),
            restart_needed=bool(data.get("restart_needed", False)),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )

    def public_dict(self) -> Dict[str, Any]:
        """Serialized form without the agent secret."""
        data = self.to_dict()
        data["agent_secret"] = "********" if self.agent_secret else ""
        return data

    def connection_signature(self) -> tuple:
        """Fields that require a new connector when they change."""
        return (
            self.transport,
            self.host,
            self.port,
            self.socket_path,
            self.ssh_user,
            self.ssh_key_path,
            self.use_sudo,
            self.agent_url,
            self.agent_secret,
            self.config_root,
        )


# =============================================================================
# Ban Events
# =============================================================================


@dataclass(frozen=True)
class BanEvent:
    """A ban or unban notification received from a managed host."""

    server_id: str
    ip: str
    jail: str
    kind: EventKind
    server_name: str = ""
    hostname: str = ""
    failures: int = 0
    log_excerpt: str = ""
    received_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "server_name": self.server_name,
            "ip": self.ip,
            "jail": self.jail,
            "hostname": self.hostname,
            "failures": self.failures,
            "logs": self.log_excerpt,
            "kind": self.kind.value,
            "received_at": self.received_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BanEvent":
        return cls(
            id=data.get("id"),
            server_id=data["server_id"],
            server_name=data.get("server_name") or "",
            ip=data["ip"],
            jail=data["jail"],
            hostname=data.get("hostname") or "",
            failures=int(data.get("failures") or 0),
            log_excerpt=data.get("logs") or "",
            kind=EventKind(data["kind"]),
            received_at=_parse_datetime(data["received_at"]) or utcnow(),
        )


# =============================================================================
# Connector Results
# =============================================================================


@dataclass
class JailInfo:
    """Summary data for a single jail."""

    jail_name: str
    total_banned: int = 0
    banned_ips: List[str] = field(default_factory=list)
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jail_name": self.jail_name,
            "total_banned": self.total_banned,
            "banned_ips": list(self.banned_ips),
            "enabled": self.enabled,
        }


@dataclass
class ConfigFile:
    """Content of a jail or filter file and where it was read from."""

    content: str
    path: str


@dataclass
class LogpathCheck:
    """Files found for one resolved logpath entry."""

    path: str
    files: List[str] = field(default_factory=list)

    @property
    def accessible(self) -> bool:
        return bool(self.files)

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "files": list(self.files), "accessible": self.accessible}


@dataclass
class LogpathTestResult:
    """Outcome of testing a (possibly variable-laden) logpath."""

    original_path: str
    resolved_path: str
    checks: List[LogpathCheck] = field(default_factory=list)

    @property
    def files(self) -> List[str]:
        found: List[str] = []
        for check in self.checks:
            found.extend(check.files)
        return found

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_path": self.original_path,
            "resolved_path": self.resolved_path,
            "checks": [c.to_dict() for c in self.checks],
            "files": self.files,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogpathTestResult":
        return cls(
            original_path=data.get("original_path", ""),
            resolved_path=data.get("resolved_path", ""),
            checks=[
                LogpathCheck(path=c.get("path", ""), files=list(c.get("files") or []))
                for c in data.get("checks") or []
            ],
        )


@dataclass
class FilterTestResult:
    """Output of running fail2ban-regex against sample log lines."""

    output: str
    filter_path: str
    matches: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output": self.output,
            "filter_path": self.filter_path,
            "matches": list(self.matches),
        }


class WriteOutcome(str, Enum):
    """What happened to one managed enforcer file."""

    WRITTEN = "written"
    UNCHANGED = "unchanged"
    SKIPPED_UNMANAGED = "skipped_unmanaged"


@dataclass
class ManagedFilesResult:
    """Result of ensuring the managed jail.local and callback action."""

    jail_local: WriteOutcome
    action: WriteOutcome

    def to_dict(self) -> Dict[str, str]:
        return {"jail_local": self.jail_local.value, "action": self.action.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagedFilesResult":
        return cls(
            jail_local=WriteOutcome(data["jail_local"]),
            action=WriteOutcome(data["action"]),
        )
