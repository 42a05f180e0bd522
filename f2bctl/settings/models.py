"""
Application settings blob.

``AppSettings`` carries the callback configuration, the jail defaults written
into the managed ``jail.local`` and the managed host registry.
"""

import base64
import secrets
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List

from ..core.models import ManagedHost

MIN_SECRET_LENGTH = 20
GENERATED_SECRET_LENGTH = 42

DEFAULT_PORT = 8080
DEFAULT_MAX_LOG_LINES = 50


def generate_callback_secret() -> str:
    """Random URL-safe secret of ``GENERATED_SECRET_LENGTH`` characters."""
    encoded = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii")
    return encoded[:GENERATED_SECRET_LENGTH]


def default_callback_url(port: int) -> str:
    return f"http://127.0.0.1:{port}"


@dataclass
class AppSettings:
    """Settings shared by the connectors, the pipeline and the web layer."""

    callback_url: str = ""
    callback_secret: str = ""
    port: int = DEFAULT_PORT
    debug: bool = False
    console_output: bool = False
    max_log_lines: int = DEFAULT_MAX_LOG_LINES

    # Written into the [DEFAULT] section of the managed jail.local
    default_jail_enable: bool = False
    bantime_increment: bool = False
    ignore_ips: List[str] = field(default_factory=lambda: ["127.0.0.1/8", "::1"])
    bantime: str = "48h"
    findtime: str = "30m"
    maxretry: int = 3
    banaction: str = "nftables-multiport"
    banaction_allports: str = "nftables-allports"
    chain: str = "INPUT"
    bantime_rndtime: str = ""

    restart_needed: bool = False
    servers: List[ManagedHost] = field(default_factory=list)

    def jail_defaults_signature(self) -> tuple:
        """Fields whose change requires the enforcers to restart."""
        return (
            self.default_jail_enable,
            self.bantime_increment,
            tuple(self.ignore_ips),
            self.bantime,
            self.findtime,
            self.maxretry,
        )

    def copy(self) -> "AppSettings":
        return replace(
            self,
            ignore_ips=list(self.ignore_ips),
            servers=[replace(s, tags=list(s.tags)) for s in self.servers],
        )

    def to_dict(self, include_servers: bool = True, public: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "callback_url": self.callback_url,
            "callback_secret": self.callback_secret,
            "port": self.port,
            "debug": self.debug,
            "console_output": self.console_output,
            "max_log_lines": self.max_log_lines,
            "default_jail_enable": self.default_jail_enable,
            "bantime_increment": self.bantime_increment,
            "ignore_ips": list(self.ignore_ips),
            "bantime": self.bantime,
            "findtime": self.findtime,
            "maxretry": self.maxretry,
            "banaction": self.banaction,
            "banaction_allports": self.banaction_allports,
            "chain": self.chain,
            "bantime_rndtime": self.bantime_rndtime,
            "restart_needed": self.restart_needed,
        }
        if include_servers:
            data["servers"] = [
                s.public_dict() if public else s.to_dict() for s in self.servers
            ]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppSettings":
        defaults = cls()
        ignore_ips = data.get("ignore_ips")
        return cls(
            callback_url=(data.get("callback_url") or "").strip(),
            callback_secret=(data.get("callback_secret") or "").strip(),
            port=int(data.get("port") or defaults.port),
            debug=bool(data.get("debug", False)),
            console_output=bool(data.get("console_output", False)),
            max_log_lines=int(data.get("max_log_lines") or defaults.max_log_lines),
            default_jail_enable=bool(data.get("default_jail_enable", False)),
            bantime_increment=bool(data.get("bantime_increment", False)),
            ignore_ips=list(ignore_ips) if ignore_ips is not None else defaults.ignore_ips,
            bantime=data.get("bantime") or defaults.bantime,
            findtime=data.get("findtime") or defaults.findtime,
            maxretry=int(data.get("maxretry") or defaults.maxretry),
            banaction=data.get("banaction") or defaults.banaction,
            banaction_allports=data.get("banaction_allports") or defaults.banaction_allports,
            chain=data.get("chain") or defaults.chain,
            bantime_rndtime=data.get("bantime_rndtime") or "",
            restart_needed=bool(data.get("restart_needed", False)),
            servers=[ManagedHost.from_dict(s) for s in data.get("servers") or []],
        )
