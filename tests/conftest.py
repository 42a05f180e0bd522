"""
Pytest Configuration and Shared Fixtures

Centralized fixtures for testing f2bctl components: temporary fail2ban
configuration trees, real stores on temporary databases, an in-memory
connector, and dependency overrides for the web layer.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional, Tuple

import pytest

from f2bctl.core.exceptions import NotFoundError, TransportError, ValidationError
from f2bctl.core.models import (
    ConfigFile,
    FilterTestResult,
    JailInfo,
    LogpathTestResult,
    ManagedFilesResult,
    ManagedHost,
    TransportKind,
    WriteOutcome,
)
from f2bctl.fail2ban.connectors.base import Connector


# =============================================================================
# Environment Setup
# =============================================================================


@pytest.fixture(autouse=True)
def clean_environment():
    """Ensure clean environment for each test."""
    original_env = os.environ.copy()

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture(autouse=True)
def reset_dependencies():
    """Reset all dependency injection state between tests."""
    yield

    from f2bctl.web.dependencies import reset_all_dependencies

    reset_all_dependencies()


# =============================================================================
# Temporary Directory Fixtures
# =============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that's cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db_path(temp_dir: Path) -> Path:
    """Provide a temporary database path."""
    return temp_dir / "test.db"


PATHS_COMMON = """\
[INCLUDES]
after = paths-overrides.local

[DEFAULT]
default_backend = auto
syslog_local0 = /var/log/messages
syslog_authpriv = /var/log/auth
syslog_sshd = %(syslog_authpriv)s/sshd.log
sshd_log = %(syslog_authpriv)s
"""

PATHS_OVERRIDES = """\
[DEFAULT]
syslog_authpriv = /var/log/secure
"""

SSHD_FILTER = """\
[INCLUDES]
before = common.conf

[DEFAULT]
_daemon = sshd

[Definition]
failregex = ^%(__prefix_line)sFailed password for .* from <HOST>
"""

COMMON_FILTER = """\
[DEFAULT]
_daemon = \\S*
__prefix_line = \\s*%(_daemon)s\\s*

[Definition]
ignoreregex =
"""


@pytest.fixture
def fail2ban_tree(temp_dir: Path) -> Path:
    """
    A small /etc/fail2ban lookalike.

    ``syslog_sshd`` resolves to ``/var/log/secure/sshd.log`` through the
    ``.local`` override of ``syslog_authpriv``.
    """
    root = temp_dir / "fail2ban"
    (root / "filter.d").mkdir(parents=True)
    (root / "jail.d").mkdir()
    (root / "action.d").mkdir()
    (root / "paths-common.conf").write_text(PATHS_COMMON)
    (root / "paths-overrides.local").write_text(PATHS_OVERRIDES)
    (root / "filter.d" / "sshd.conf").write_text(SSHD_FILTER)
    (root / "filter.d" / "common.conf").write_text(COMMON_FILTER)
    (root / "jail.d" / "sshd.conf").write_text(
        "[sshd]\nenabled = true\nfilter = sshd\nlogpath = %(syslog_sshd)s\n"
    )
    return root


# =============================================================================
# Configuration Fixtures
# =============================================================================


CALLBACK_SECRET = "s3cret-callback-value-0123456789"


@pytest.fixture
def test_config(temp_dir: Path):
    """Provide a test WebConfig with a temporary data directory."""
    from f2bctl.web.config import WebConfig

    return WebConfig(
        host="127.0.0.1",
        port=8080,
        debug=True,
        require_auth=False,
        data_dir=temp_dir / "data",
        callback_secret=CALLBACK_SECRET,
        ws_heartbeat_interval=30.0,
    )


@pytest.fixture
def dependency_overrides():
    """
    Provide a context manager for overriding dependencies in tests.

    Usage:
        def test_example(dependency_overrides):
            with dependency_overrides as overrides:
                overrides.set_manager(manager)
    """
    from f2bctl.web.dependencies import DependencyOverrides

    return DependencyOverrides()


# =============================================================================
# Real Store Fixtures (with temp directories)
# =============================================================================


@pytest.fixture
def store(temp_db_path: Path):
    """Provide a real ControlPlaneStore with temporary database."""
    from f2bctl.storage import ControlPlaneStore

    store = ControlPlaneStore(temp_db_path)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def settings_store(store):
    """Provide a loaded SettingsStore with a fixed callback secret."""
    from f2bctl.settings import SettingsStore

    settings = SettingsStore(store, callback_secret=CALLBACK_SECRET, hostname="control")
    settings.load()
    return settings


def make_host(host_id: str, **kwargs) -> ManagedHost:
    fields = dict(
        id=host_id,
        name=f"Host {host_id}",
        transport=TransportKind.AGENT,
        agent_url=f"http://{host_id}.example:9191",
        agent_secret="agent-token",
        enabled=True,
    )
    fields.update(kwargs)
    return ManagedHost(**fields)


# =============================================================================
# In-memory Connector
# =============================================================================


class FakeConnector(Connector):
    """Connector keeping jails, bans and files in dictionaries."""

    transport = TransportKind.AGENT

    def __init__(self, host: ManagedHost, timeout: float = 5.0):
        super().__init__(host, timeout)
        self.bans: Dict[str, List[str]] = {"sshd": []}
        self.filters: Dict[str, str] = {"sshd": "[Definition]\nfailregex = <HOST>\n"}
        self.jail_files: Dict[str, str] = {
            "sshd": "[sshd]\nenabled = true\nfilter = sshd\nlogpath = /var/log/auth.log\n"
        }
        self.ping_error: Optional[TransportError] = None
        self.restart_mode = "restart"
        self.managed_calls: List[Tuple[str, str]] = []
        self.closed = False
        self.ban_calls: List[Tuple[str, str]] = []

    async def _jail_names(self) -> List[str]:
        return list(self.bans)

    async def banned_ips(self, jail: str) -> List[str]:
        if jail not in self.bans:
            raise NotFoundError(f"jail '{jail}' does not exist", kind="jail", name=jail)
        return list(self.bans[jail])

    async def _ban(self, jail: str, ip: str) -> None:
        self.ban_calls.append((jail, ip))
        self.bans[jail].append(ip)

    async def _unban(self, jail: str, ip: str) -> None:
        self.bans[jail].remove(ip)

    async def read_filter_config(self, name: str) -> ConfigFile:
        if name not in self.filters:
            raise NotFoundError(f"filter '{name}' not found", kind="filter", name=name)
        return ConfigFile(content=self.filters[name], path=f"/etc/fail2ban/filter.d/{name}.local")

    async def write_filter_config(self, name: str, content: str) -> None:
        self.filters[name] = content

    async def list_filters(self) -> List[str]:
        return sorted(self.filters)

    async def create_filter(self, name: str, content: str) -> None:
        if name in self.filters:
            raise ValidationError(f"filter '{name}' already exists", field="name")
        self.filters[name] = content

    async def delete_filter(self, name: str) -> None:
        if self.filters.pop(name, None) is None:
            raise NotFoundError(f"filter '{name}' not found", kind="filter", name=name)

    async def test_filter(
        self, name: str, log_lines: List[str], content: Optional[str] = None
    ) -> FilterTestResult:
        if content is None:
            await self.read_filter_config(name)
        matches = [line for line in log_lines if "Failed" in line]
        return FilterTestResult(
            output=f"Lines: {len(log_lines)} lines, 0 ignored, {len(matches)} matched",
            filter_path=f"/etc/fail2ban/filter.d/{name}.conf",
            matches=matches,
        )

    async def read_jail_config(self, jail: str) -> ConfigFile:
        return ConfigFile(
            content=self.jail_files.get(jail, f"[{jail}]\n"),
            path=f"/etc/fail2ban/jail.d/{jail}.local",
        )

    async def write_jail_config(self, jail: str, content: str) -> None:
        self.jail_files[jail] = content

    async def create_jail(self, jail: str, content: str) -> None:
        self.jail_files[jail] = content

    async def delete_jail(self, jail: str) -> None:
        if self.jail_files.pop(jail, None) is None:
            raise NotFoundError(f"jail '{jail}' not found", kind="jail", name=jail)

    async def discover_jails(self) -> List[JailInfo]:
        return [JailInfo(jail_name=name, enabled="enabled = true" in text)
                for name, text in sorted(self.jail_files.items())]

    async def update_jail_enabled_states(self, updates: Dict[str, bool]) -> None:
        for jail, enabled in updates.items():
            self.jail_files[jail] = f"[{jail}]\nenabled = {'true' if enabled else 'false'}\n"

    async def test_logpath(self, logpath: str) -> LogpathTestResult:
        return LogpathTestResult(original_path=logpath, resolved_path=logpath)

    async def reload(self) -> None:
        pass

    async def _restart(self) -> str:
        return self.restart_mode

    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    async def ensure_managed_config_files(self, callback_url, host_id, settings) -> ManagedFilesResult:
        self.managed_calls.append((callback_url, host_id))
        return ManagedFilesResult(jail_local=WriteOutcome.WRITTEN, action=WriteOutcome.WRITTEN)

    async def check_jail_local_integrity(self) -> Tuple[bool, bool]:
        return True, True

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_connectors() -> Dict[str, FakeConnector]:
    """Every FakeConnector built by ``connector_factory``, by host id."""
    return {}


@pytest.fixture
def connector_factory(fake_connectors):
    def factory(host: ManagedHost, timeout: float) -> FakeConnector:
        connector = FakeConnector(host, timeout)
        fake_connectors[host.id] = connector
        return connector

    return factory


@pytest.fixture
def manager(settings_store, connector_factory):
    """ConnectorManager building FakeConnectors."""
    from f2bctl.fail2ban import ConnectorManager

    return ConnectorManager(settings_store, timeout=5.0, connector_factory=connector_factory)
