"""
Connector Manager

Maps managed host ids to live connectors. The host registry itself lives in
the SettingsStore; the manager keeps one connector per enabled host in step
with it and rebuilds a connector when the host's connection fields change.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from ..core.exceptions import ControlPlaneError, NotFoundError
from ..core.models import ManagedFilesResult, ManagedHost
from ..settings import AppSettings, SettingsStore
from .connectors import DEFAULT_TIMEOUT, Connector, create_connector

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[ManagedHost, float], Connector]


class ConnectorManager:
    """
    Owns the connectors for every enabled managed host.

    Usage:
        manager = ConnectorManager(settings_store)
        await manager.sync()
        jails = await manager.resolve(server_id).list_jails()
    """

    def __init__(
        self,
        settings: SettingsStore,
        timeout: float = DEFAULT_TIMEOUT,
        connector_factory: Optional[ConnectorFactory] = None,
    ):
        self.settings = settings
        self.timeout = timeout
        self._factory = connector_factory or (lambda host, t: create_connector(host, timeout=t))
        self._connectors: Dict[str, Connector] = {}
        self._signatures: Dict[str, tuple] = {}
        self._sync_lock = asyncio.Lock()

    def _build(self, host: ManagedHost) -> Connector:
        connector = self._factory(host, self.timeout)
        self._connectors[host.id] = connector
        self._signatures[host.id] = host.connection_signature()
        return connector

    # =========================================================================
    # Synchronization
    # =========================================================================

    async def sync(self) -> List[str]:
        """
        Bring connectors in line with the registry.

        Connectors of removed, disabled or reconfigured hosts are closed.
        Hosts that gained a connector get their managed files written; a
        failure there is logged and does not stop the sync.

        Returns:
            ids of the hosts that got a new connector
        """
        async with self._sync_lock:
            enabled = {h.id: h for h in self.settings.list_hosts() if h.enabled}

            for host_id in list(self._connectors):
                host = enabled.get(host_id)
                if host is None or host.connection_signature() != self._signatures.get(host_id):
                    connector = self._connectors.pop(host_id)
                    self._signatures.pop(host_id, None)
                    await connector.close()
                    logger.info(f"Closed connector for host {host_id}")

            added = []
            for host in enabled.values():
                if host.id not in self._connectors:
                    self._build(host)
                    added.append(host.id)
                    logger.info(f"Created {host.transport.value} connector for host {host.id}")

        if added:
            await self.ensure_managed_files(added)
        return added

    async def ensure_managed_files(
        self, host_ids: Optional[List[str]] = None
    ) -> Dict[str, ManagedFilesResult]:
        """Write the managed jail.local and callback action to hosts."""
        snapshot: AppSettings = self.settings.get()
        targets = [
            (host_id, connector)
            for host_id, connector in self._connectors.items()
            if host_ids is None or host_id in host_ids
        ]
        results = await asyncio.gather(
            *(
                connector.ensure_managed_config_files(snapshot.callback_url, host_id, snapshot)
                for host_id, connector in targets
            ),
            return_exceptions=True,
        )
        outcomes: Dict[str, ManagedFilesResult] = {}
        for (host_id, _), result in zip(targets, results):
            if isinstance(result, ControlPlaneError):
                logger.warning(f"Could not write managed files on host {host_id}: {result}")
            elif isinstance(result, Exception):
                logger.error(
                    f"Unexpected error writing managed files on host {host_id}: {result!r}",
                    exc_info=result,
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                outcomes[host_id] = result
        return outcomes

    async def close(self) -> None:
        async with self._sync_lock:
            for host_id, connector in list(self._connectors.items()):
                await connector.close()
            self._connectors.clear()
            self._signatures.clear()

    # =========================================================================
    # Lookup
    # =========================================================================

    def connector_for(self, host_id: str) -> Connector:
        """
        Connector of an enabled host.

        Connectors are only built by ``sync()``, which also writes the
        managed files to new hosts.

        Raises:
            NotFoundError: the host is unknown, disabled or not synced yet
        """
        host = self.settings.get_host(host_id)
        if host is None:
            raise NotFoundError(f"server {host_id} not found", kind="server", name=host_id)
        if not host.enabled:
            raise NotFoundError(f"server {host_id} is disabled", kind="server", name=host_id)
        connector = self._connectors.get(host_id)
        if connector is None:
            raise NotFoundError(
                f"server {host_id} is not connected yet", kind="server", name=host_id
            )
        return connector

    def default_connector(self) -> Connector:
        host = self.settings.default_host()
        if host is None:
            raise NotFoundError("no enabled fail2ban server configured", kind="server")
        return self.connector_for(host.id)

    def resolve(self, host_id: Optional[str] = None) -> Connector:
        """Connector for ``host_id``, or the default one when it is empty."""
        if host_id:
            return self.connector_for(host_id)
        return self.default_connector()

    @property
    def active_host_ids(self) -> List[str]:
        return list(self._connectors)

    # =========================================================================
    # Registry Mutations
    # =========================================================================

    async def upsert_host(self, host: ManagedHost) -> ManagedHost:
        stored = self.settings.upsert_host(host)
        await self.sync()
        return stored

    async def delete_host(self, host_id: str) -> None:
        self.settings.delete_host(host_id)
        await self.sync()

    async def set_default_host(self, host_id: str) -> ManagedHost:
        stored = self.settings.set_default_host(host_id)
        await self.sync()
        return stored

    async def update_settings(self, new: AppSettings) -> AppSettings:
        """Store new settings and rewrite the managed files on every host."""
        stored = self.settings.update(new)
        await self.sync()
        await self.ensure_managed_files()
        return stored

    # =========================================================================
    # Service Control
    # =========================================================================

    async def restart(self, host_id: Optional[str] = None) -> Tuple[str, str]:
        """
        Restart fail2ban on a host and clear its restart flag.

        Returns:
            (mode, host_id) where mode is "restart" or "reload"
        """
        connector = self.resolve(host_id)
        mode = await connector.restart_with_mode()
        self.settings.mark_restart_done(connector.host_id)
        return mode, connector.host_id

    async def test_host(self, host_id: str) -> None:
        """
        Ping a host, enabled or not.

        Raises:
            NotFoundError: unknown host
            TransportError: the host did not answer
        """
        host = self.settings.get_host(host_id)
        if host is None:
            raise NotFoundError(f"server {host_id} not found", kind="server", name=host_id)
        active = self._connectors.get(host_id)
        if active is not None and self._signatures.get(host_id) == host.connection_signature():
            await active.ping()
            return
        connector = self._factory(host, self.timeout)
        try:
            await connector.ping()
        finally:
            await connector.close()
