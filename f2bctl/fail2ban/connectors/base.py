"""
Connector Interface

A connector issues every management operation against one managed host.
Three transports implement it (local subprocess, SSH session, HTTP agent);
callers never need to know which one they hold.

Behavior that must not differ between transports lives here:
- ban/unban idempotence (a repeated ban is a no-op returning False)
- name and address validation before any side effect
- the fan-out used by list_jails
- the post-restart health check
- the timeout boundary around every operation
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar

from ...core.exceptions import TransportError
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
from ..jails import validate_ip, validate_name

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

T = TypeVar("T")


class Connector(ABC):
    """
    Abstract base class for all connectors.

    Subclasses implement the transport-specific ``_``-prefixed hooks and the
    configuration file operations; the public ban/unban, list_jails and
    restart_with_mode contracts are implemented once below.
    """

    transport: TransportKind

    def __init__(self, host: ManagedHost, timeout: float = DEFAULT_TIMEOUT):
        self.host = host
        self.timeout = timeout

    @property
    def host_id(self) -> str:
        return self.host.id

    def __repr__(self) -> str:
        return f"<{type(self).__name__} host={self.host.id!r}>"

    async def _bounded(self, awaitable: Awaitable[T], operation: str) -> T:
        """Await ``awaitable`` under the connector timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                f"{operation} on host {self.host_id} timed out after {self.timeout}s",
                reason=TransportError.REASON_TIMEOUT,
                host_id=self.host_id,
            )

    # =========================================================================
    # Jails and Bans
    # =========================================================================

    @abstractmethod
    async def _jail_names(self) -> List[str]:
        """Names of the jails the daemon currently runs."""
        pass

    @abstractmethod
    async def banned_ips(self, jail: str) -> List[str]:
        pass

    @abstractmethod
    async def _ban(self, jail: str, ip: str) -> None:
        pass

    @abstractmethod
    async def _unban(self, jail: str, ip: str) -> None:
        pass

    async def list_jails(self) -> List[JailInfo]:
        """
        Status of every active jail, sorted by name.

        Banned addresses are fetched for all jails concurrently; a jail whose
        status cannot be read is left out rather than failing the listing.
        """
        names = await self._jail_names()
        results = await asyncio.gather(
            *(self.banned_ips(name) for name in names), return_exceptions=True
        )
        infos = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.warning(f"Skipping jail {name} on host {self.host_id}: {result}")
                continue
            infos.append(JailInfo(jail_name=name, total_banned=len(result), banned_ips=result))
        return sorted(infos, key=lambda info: info.jail_name)

    async def ban(self, jail: str, ip: str) -> bool:
        """
        Ban ``ip`` in ``jail``.

        Returns:
            True if the address was banned, False if it already was
        """
        jail = validate_name(jail)
        ip = validate_ip(ip)
        if ip in await self.banned_ips(jail):
            logger.info(f"{ip} already banned in {jail} on host {self.host_id}")
            return False
        await self._ban(jail, ip)
        logger.info(f"Banned {ip} in {jail} on host {self.host_id}")
        return True

    async def unban(self, jail: str, ip: str) -> bool:
        """
        Unban ``ip`` from ``jail``.

        Returns:
            True if the address was unbanned, False if it was not banned
        """
        jail = validate_name(jail)
        ip = validate_ip(ip)
        if ip not in await self.banned_ips(jail):
            logger.info(f"{ip} not banned in {jail} on host {self.host_id}")
            return False
        await self._unban(jail, ip)
        logger.info(f"Unbanned {ip} from {jail} on host {self.host_id}")
        return True

    # =========================================================================
    # Filters
    # =========================================================================

    @abstractmethod
    async def read_filter_config(self, name: str) -> ConfigFile:
        pass

    @abstractmethod
    async def write_filter_config(self, name: str, content: str) -> None:
        pass

    @abstractmethod
    async def list_filters(self) -> List[str]:
        pass

    @abstractmethod
    async def create_filter(self, name: str, content: str) -> None:
        pass

    @abstractmethod
    async def delete_filter(self, name: str) -> None:
        pass

    @abstractmethod
    async def test_filter(
        self, name: str, log_lines: List[str], content: Optional[str] = None
    ) -> FilterTestResult:
        pass

    # =========================================================================
    # Jail Files
    # =========================================================================

    @abstractmethod
    async def read_jail_config(self, jail: str) -> ConfigFile:
        pass

    @abstractmethod
    async def write_jail_config(self, jail: str, content: str) -> None:
        pass

    @abstractmethod
    async def create_jail(self, jail: str, content: str) -> None:
        pass

    @abstractmethod
    async def delete_jail(self, jail: str) -> None:
        pass

    @abstractmethod
    async def discover_jails(self) -> List[JailInfo]:
        pass

    @abstractmethod
    async def update_jail_enabled_states(self, updates: Dict[str, bool]) -> None:
        pass

    @abstractmethod
    async def test_logpath(self, logpath: str) -> LogpathTestResult:
        pass

    # =========================================================================
    # Service Control
    # =========================================================================

    @abstractmethod
    async def reload(self) -> None:
        pass

    @abstractmethod
    async def _restart(self) -> str:
        """Restart or reload the daemon; returns the mode used."""
        pass

    @abstractmethod
    async def ping(self) -> None:
        """
        Raises:
            TransportError: the daemon did not answer with pong
        """
        pass

    async def restart_with_mode(self) -> str:
        """
        Restart the daemon and confirm it answers afterwards.

        Returns:
            "restart" when the service manager restarted it, "reload" when
            only a configuration reload was possible
        """
        mode = await self._restart()
        try:
            await self.ping()
        except TransportError as e:
            raise TransportError(
                f"fail2ban on host {self.host_id} did not answer after {mode}: {e}",
                reason=TransportError.REASON_POST_RESTART_UNHEALTHY,
                host_id=self.host_id,
                output=e.output,
            ) from e
        logger.info(f"fail2ban {mode} completed on host {self.host_id}")
        return mode

    # =========================================================================
    # Managed Files
    # =========================================================================

    @abstractmethod
    async def ensure_managed_config_files(
        self, callback_url: str, host_id: str, settings: AppSettings
    ) -> ManagedFilesResult:
        pass

    @abstractmethod
    async def check_jail_local_integrity(self) -> Tuple[bool, bool]:
        """Returns ``(exists, managed)`` for the host's ``jail.local``."""
        pass

    async def close(self) -> None:
        """Release transport resources. Safe to call more than once."""
        pass
