"""
Shell-backed connector.

Local and SSH hosts are driven the same way: run ``fail2ban-client`` and
``fail2ban-regex``, read and write files under the configuration root. This
module implements every connector operation on top of a small set of
synchronous primitives; subclasses only say how a command is executed and
how a file is read, written or listed on their side of the transport.

Primitives run in a worker thread through ``asyncio.to_thread`` and every
operation is bounded by the connector timeout.
"""

import asyncio
import logging
import posixpath
from abc import abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from ...core.exceptions import NotFoundError, TransportError, ValidationError
from ...core.models import (
    ConfigFile,
    FilterTestResult,
    JailInfo,
    LogpathCheck,
    LogpathTestResult,
    ManagedFilesResult,
    WriteOutcome,
)
from ...settings.models import AppSettings
from .. import jails as jail_text
from .. import managed, protocol
from ..includes import resolve_filter_includes
from ..ini import BASE_SUFFIX, OVERRIDE_SUFFIX, base_name, normalize_text
from ..variables import CallableSource, ConfigSource, VariableResolver
from .base import Connector

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CommandResult:
    """Exit status and captured streams of one command."""

    exit_code: int
    stdout: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stdout followed by stderr, for parsing fail2ban-client and error messages."""
        return self.stdout + self.stderr


class ShellConnector(Connector):
    """Connector for hosts reached through a command shell and a filesystem."""

    # =========================================================================
    # Transport Primitives
    # =========================================================================

    @abstractmethod
    def _execute(self, argv: List[str]) -> CommandResult:
        """
        Run ``argv`` to completion.

        Raises:
            TransportError: the command could not be started or timed out
        """
        pass

    @abstractmethod
    def _read_text(self, path: str) -> Optional[str]:
        """File content, or None when the file does not exist."""
        pass

    @abstractmethod
    def _write_text_atomic(self, path: str, content: str) -> None:
        """Write through a temporary file renamed over ``path``."""
        pass

    @abstractmethod
    def _remove(self, path: str) -> bool:
        """Remove a file; returns False when it did not exist."""
        pass

    @abstractmethod
    def _list_dir(self, path: str) -> Optional[List[str]]:
        """Names of regular files in ``path``, or None when it is missing."""
        pass

    @abstractmethod
    def _path_kind(self, path: str) -> Optional[str]:
        """``"file"``, ``"dir"`` or None when nothing exists at ``path``."""
        pass

    @abstractmethod
    def _glob(self, pattern: str) -> List[str]:
        pass

    @abstractmethod
    def _which(self, binary: str) -> bool:
        pass

    @abstractmethod
    def _find_files(self, root: str, suffix: str) -> List[str]:
        """Regular files below ``root`` whose name ends in ``suffix``."""
        pass

    @abstractmethod
    def _make_temp_dir(self) -> str:
        pass

    @abstractmethod
    def _remove_tree(self, path: str) -> None:
        pass

    def _config_source(self) -> ConfigSource:
        """Read-only view of the configuration tree for variable resolution."""
        root = self.host.config_root
        return CallableSource(
            root=root,
            list_files=lambda suffix: self._find_files(root, suffix),
            read_text=self._read_text,
            root_exists=lambda: self._path_kind(root) == "dir",
        )

    async def _run(self, func: Callable[..., T], *args, operation: str = "") -> T:
        return await self._bounded(
            asyncio.to_thread(func, *args), operation or getattr(func, "__name__", "operation")
        )

    # =========================================================================
    # Paths
    # =========================================================================

    def _path(self, *parts: str) -> str:
        return posixpath.join(self.host.config_root, *parts)

    def _filter_path(self, name: str, suffix: str) -> str:
        return self._path("filter.d", name + suffix)

    def _jail_path(self, name: str, suffix: str) -> str:
        return self._path("jail.d", name + suffix)

    def _client_argv(self, *args: str) -> List[str]:
        return protocol.client_command(self.host.socket_path, *args)

    def _check(self, result: CommandResult, what: str) -> str:
        if not result.ok:
            raise TransportError(
                f"{what} failed on host {self.host_id} (exit {result.exit_code}): "
                f"{result.output.strip()}",
                host_id=self.host_id,
                output=result.output,
                exit_code=result.exit_code,
            )
        return result.output

    # =========================================================================
    # Jails and Bans
    # =========================================================================

    def _sync_jail_names(self) -> List[str]:
        result = self._execute(self._client_argv("status"))
        output = self._check(result, "fail2ban-client status")
        return protocol.parse_jail_list(output)

    def _sync_banned_ips(self, jail: str) -> List[str]:
        result = self._execute(self._client_argv("status", jail))
        if not result.ok and "does not exist" in result.output:
            raise NotFoundError(f"jail '{jail}' does not exist", kind="jail", name=jail)
        output = self._check(result, f"fail2ban-client status {jail}")
        return protocol.parse_banned_ips(output)

    def _sync_set(self, jail: str, command: str, ip: str) -> None:
        result = self._execute(self._client_argv("set", jail, command, ip))
        self._check(result, f"fail2ban-client set {jail} {command} {ip}")

    async def _jail_names(self) -> List[str]:
        return await self._run(self._sync_jail_names, operation="list jails")

    async def banned_ips(self, jail: str) -> List[str]:
        jail = jail_text.validate_name(jail)
        return await self._run(self._sync_banned_ips, jail, operation=f"status {jail}")

    async def _ban(self, jail: str, ip: str) -> None:
        await self._run(self._sync_set, jail, "banip", ip, operation=f"ban {ip}")

    async def _unban(self, jail: str, ip: str) -> None:
        await self._run(self._sync_set, jail, "unbanip", ip, operation=f"unban {ip}")

    # =========================================================================
    # Filters
    # =========================================================================

    def _sync_read_filter(self, name: str) -> ConfigFile:
        for suffix in (OVERRIDE_SUFFIX, BASE_SUFFIX):
            path = self._filter_path(name, suffix)
            content = self._read_text(path)
            if content is not None:
                logger.debug(f"Read filter {name} from {path}")
                return ConfigFile(content=content, path=path)
        raise NotFoundError(f"filter '{name}' not found", kind="filter", name=name)

    def _sync_list_filters(self) -> List[str]:
        entries = self._list_dir(self._path("filter.d"))
        if entries is None:
            raise NotFoundError(
                f"filter directory {self._path('filter.d')} does not exist",
                kind="directory",
                name=self._path("filter.d"),
            )
        names = {
            base_name(entry)
            for entry in entries
            if entry.endswith((OVERRIDE_SUFFIX, BASE_SUFFIX)) and not entry.startswith(".")
        }
        return sorted(names)

    def _sync_create_filter(self, name: str, content: str) -> None:
        for suffix in (OVERRIDE_SUFFIX, BASE_SUFFIX):
            if self._path_kind(self._filter_path(name, suffix)) is not None:
                raise ValidationError(f"filter '{name}' already exists", field="name")
        self._write_text_atomic(self._filter_path(name, OVERRIDE_SUFFIX), content)
        logger.info(f"Created filter {name} on host {self.host_id}")

    def _sync_delete_filter(self, name: str) -> None:
        removed = [
            suffix
            for suffix in (OVERRIDE_SUFFIX, BASE_SUFFIX)
            if self._remove(self._filter_path(name, suffix))
        ]
        if not removed:
            raise NotFoundError(f"filter '{name}' not found", kind="filter", name=name)
        logger.info(f"Deleted filter {name} ({', '.join(removed)}) on host {self.host_id}")

    def _sync_test_filter(
        self, name: str, log_lines: List[str], content: Optional[str]
    ) -> FilterTestResult:
        if content is None:
            source = self._sync_read_filter(name)
            content, origin = source.content, posixpath.basename(source.path)
            filter_path = source.path
        else:
            origin = None
            filter_path = self._filter_path(name, OVERRIDE_SUFFIX)
        merged = resolve_filter_includes(
            content,
            name,
            lambda filename: self._read_text(self._path("filter.d", filename)),
            origin=origin,
        )

        workdir = self._make_temp_dir()
        try:
            log_file = posixpath.join(workdir, "sample.log")
            filter_file = posixpath.join(workdir, f"{name}.conf")
            self._write_text_atomic(log_file, "\n".join(log_lines) + "\n")
            self._write_text_atomic(filter_file, merged)
            result = self._execute(protocol.regex_command(log_file, filter_file))
            output = self._check(result, "fail2ban-regex")
        finally:
            self._remove_tree(workdir)

        return FilterTestResult(
            output=output,
            filter_path=filter_path,
            matches=protocol.parse_regex_matches(output),
        )

    async def read_filter_config(self, name: str) -> ConfigFile:
        name = jail_text.validate_name(name, kind="filter")
        return await self._run(self._sync_read_filter, name, operation=f"read filter {name}")

    async def write_filter_config(self, name: str, content: str) -> None:
        name = jail_text.validate_name(name, kind="filter")
        await self._run(
            self._write_text_atomic,
            self._filter_path(name, OVERRIDE_SUFFIX),
            content,
            operation=f"write filter {name}",
        )

    async def list_filters(self) -> List[str]:
        return await self._run(self._sync_list_filters, operation="list filters")

    async def create_filter(self, name: str, content: str) -> None:
        name = jail_text.validate_name(name, kind="filter")
        await self._run(self._sync_create_filter, name, content, operation=f"create filter {name}")

    async def delete_filter(self, name: str) -> None:
        name = jail_text.validate_name(name, kind="filter")
        await self._run(self._sync_delete_filter, name, operation=f"delete filter {name}")

    async def test_filter(
        self, name: str, log_lines: List[str], content: Optional[str] = None
    ) -> FilterTestResult:
        name = jail_text.validate_name(name, kind="filter")
        lines = [line for line in log_lines if line.strip()]
        if not lines:
            return FilterTestResult(output="", filter_path=self._filter_path(name, BASE_SUFFIX))
        return await self._run(
            self._sync_test_filter, name, lines, content, operation=f"test filter {name}"
        )

    # =========================================================================
    # Jail Files
    # =========================================================================

    def _sync_read_jail(self, jail: str) -> ConfigFile:
        for suffix in (OVERRIDE_SUFFIX, BASE_SUFFIX):
            path = self._jail_path(jail, suffix)
            content = self._read_text(path)
            if content is not None:
                return ConfigFile(content=content, path=path)
        logger.debug(f"No jail file for {jail}, returning empty section")
        return ConfigFile(content=jail_text.minimal_jail(jail), path=self._jail_path(jail, OVERRIDE_SUFFIX))

    def _sync_write_jail(self, jail: str, content: str) -> None:
        path = self._jail_path(jail, OVERRIDE_SUFFIX)
        self._write_text_atomic(path, jail_text.normalize_jail_content(jail, content))
        logger.debug(f"Wrote jail config to {path}")

    def _sync_create_jail(self, jail: str, content: str) -> None:
        path = self._jail_path(jail, OVERRIDE_SUFFIX)
        self._write_text_atomic(path, jail_text.with_section_header(jail, content))
        logger.info(f"Created jail file {path} on host {self.host_id}")

    def _sync_delete_jail(self, jail: str) -> None:
        removed = [
            suffix
            for suffix in (OVERRIDE_SUFFIX, BASE_SUFFIX)
            if self._remove(self._jail_path(jail, suffix))
        ]
        if not removed:
            raise NotFoundError(
                f"jail file {self._jail_path(jail, OVERRIDE_SUFFIX)} or "
                f"{self._jail_path(jail, BASE_SUFFIX)} does not exist",
                kind="jail",
                name=jail,
            )
        logger.info(f"Deleted jail {jail} ({', '.join(removed)}) on host {self.host_id}")

    def _sync_discover_jails(self) -> List[JailInfo]:
        entries = self._list_dir(self._path("jail.d"))
        if entries is None:
            return []
        per_file = []
        for filename in jail_text.select_jail_files(entries):
            content = self._read_text(self._path("jail.d", filename))
            if content is None:
                continue
            per_file.append(jail_text.parse_jail_file(content))
        return jail_text.merge_jail_infos(per_file)

    def _sync_update_enabled(self, updates: Dict[str, bool]) -> None:
        for jail, enabled in updates.items():
            local_path = self._jail_path(jail, OVERRIDE_SUFFIX)
            content = self._read_text(local_path)
            if content is None:
                content = self._read_text(self._jail_path(jail, BASE_SUFFIX))
            if content is None:
                content = jail_text.minimal_jail(jail)
            self._write_text_atomic(local_path, jail_text.set_enabled(jail, content, enabled))
            logger.debug(f"Set {jail} enabled = {enabled} on host {self.host_id}")

    def _sync_check_logpath(self, path: str) -> LogpathCheck:
        if jail_text.has_wildcard(path):
            return LogpathCheck(path=path, files=sorted(self._glob(path)))
        kind = self._path_kind(path)
        if kind == "dir":
            entries = self._list_dir(path) or []
            return LogpathCheck(path=path, files=[posixpath.join(path, e) for e in sorted(entries)])
        if kind == "file":
            return LogpathCheck(path=path, files=[path])
        return LogpathCheck(path=path)

    def _sync_test_logpath(self, logpath: str) -> LogpathTestResult:
        original = logpath.strip()
        if not original:
            return LogpathTestResult(original_path="", resolved_path="")
        resolved = VariableResolver(self._config_source()).expand(original) or original
        checks = [self._sync_check_logpath(path) for path in resolved.split()]
        return LogpathTestResult(original_path=original, resolved_path=resolved, checks=checks)

    async def read_jail_config(self, jail: str) -> ConfigFile:
        jail = jail_text.validate_name(jail)
        return await self._run(self._sync_read_jail, jail, operation=f"read jail {jail}")

    async def write_jail_config(self, jail: str, content: str) -> None:
        jail = jail_text.validate_name(jail)
        await self._run(self._sync_write_jail, jail, content, operation=f"write jail {jail}")

    async def create_jail(self, jail: str, content: str) -> None:
        jail = jail_text.validate_name(jail)
        await self._run(self._sync_create_jail, jail, content, operation=f"create jail {jail}")

    async def delete_jail(self, jail: str) -> None:
        jail = jail_text.validate_name(jail)
        await self._run(self._sync_delete_jail, jail, operation=f"delete jail {jail}")

    async def discover_jails(self) -> List[JailInfo]:
        return await self._run(self._sync_discover_jails, operation="discover jails")

    async def update_jail_enabled_states(self, updates: Dict[str, bool]) -> None:
        validated = {jail_text.validate_name(j): bool(v) for j, v in updates.items()}
        await self._run(self._sync_update_enabled, validated, operation="update jail states")

    async def test_logpath(self, logpath: str) -> LogpathTestResult:
        return await self._run(self._sync_test_logpath, logpath, operation="test logpath")

    # =========================================================================
    # Service Control
    # =========================================================================

    def _sync_reload(self) -> None:
        result = self._execute(self._client_argv("reload"))
        output = self._check(result, "fail2ban reload")
        if protocol.reload_has_errors(output):
            raise TransportError(
                f"fail2ban reload on host {self.host_id} completed with errors: {output.strip()}",
                reason=TransportError.REASON_RELOAD_ERRORS,
                host_id=self.host_id,
                output=output,
            )

    def _restart_argv(self) -> List[str]:
        return ["systemctl", "restart", "fail2ban"]

    def _sync_restart(self) -> str:
        if self._which("systemctl"):
            result = self._execute(self._restart_argv())
            self._check(result, "systemctl restart fail2ban")
            return "restart"
        logger.info(f"systemctl not available on host {self.host_id}, reloading instead")
        self._sync_reload()
        return "reload"

    def _sync_ping(self) -> None:
        result = self._execute(self._client_argv("ping"))
        if not result.ok or not protocol.is_pong(result.output):
            raise TransportError(
                f"unexpected fail2ban ping output from host {self.host_id}: {result.output.strip()}",
                reason=TransportError.REASON_UNREACHABLE,
                host_id=self.host_id,
                output=result.output,
                exit_code=result.exit_code,
            )

    async def reload(self) -> None:
        await self._run(self._sync_reload, operation="reload")

    async def _restart(self) -> str:
        return await self._run(self._sync_restart, operation="restart")

    async def ping(self) -> None:
        await self._run(self._sync_ping, operation="ping")

    # =========================================================================
    # Managed Files
    # =========================================================================

    def _write_if_changed(self, path: str, content: str) -> WriteOutcome:
        if self._read_text(path) == content:
            return WriteOutcome.UNCHANGED
        self._write_text_atomic(path, content)
        return WriteOutcome.WRITTEN

    def _sync_ensure_managed(
        self, callback_url: str, host_id: str, settings: AppSettings
    ) -> ManagedFilesResult:
        if self._path_kind(self.host.config_root) != "dir":
            raise NotFoundError(
                f"fail2ban is not installed on host {self.host_id}: "
                f"{self.host.config_root} does not exist",
                kind="config_root",
                name=self.host.config_root,
            )

        jail_local_path = self._path(managed.JAIL_LOCAL_FILE)
        existing = self._read_text(jail_local_path) or ""
        if managed.may_overwrite_jail_local(existing):
            jail_outcome = self._write_if_changed(
                jail_local_path, normalize_text(managed.build_jail_local(settings))
            )
        else:
            logger.warning(
                f"{jail_local_path} on host {self.host_id} is not managed by f2bctl, leaving it untouched"
            )
            jail_outcome = WriteOutcome.SKIPPED_UNMANAGED

        action_outcome = self._write_if_changed(
            self._path(managed.ACTION_FILE),
            managed.build_action_config(callback_url, host_id, settings),
        )
        logger.info(
            f"Managed files on host {self.host_id}: jail.local {jail_outcome.value}, "
            f"action {action_outcome.value}"
        )
        return ManagedFilesResult(jail_local=jail_outcome, action=action_outcome)

    def _sync_integrity(self) -> Tuple[bool, bool]:
        content = self._read_text(self._path(managed.JAIL_LOCAL_FILE))
        if content is None:
            return False, False
        return True, managed.is_managed(content)

    async def ensure_managed_config_files(
        self, callback_url: str, host_id: str, settings: AppSettings
    ) -> ManagedFilesResult:
        return await self._run(
            self._sync_ensure_managed, callback_url, host_id, settings, operation="ensure managed files"
        )

    async def check_jail_local_integrity(self) -> Tuple[bool, bool]:
        return await self._run(self._sync_integrity, operation="check jail.local")
