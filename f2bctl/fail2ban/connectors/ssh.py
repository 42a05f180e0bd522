"""
SSH connector: fail2ban on a remote host reached with paramiko.

Every primitive becomes one remote command. Files are read with ``cat``,
written to a ``mktemp`` file next to the target and moved into place, and
listed with ``find``. With ``use_sudo`` each command runs under ``sudo -n``
so a missing sudoers rule fails fast instead of waiting for a password.
"""

import logging
import os
import shlex
import socket
import threading
from typing import List, Optional

import paramiko

from ...core.exceptions import TransportError
from ...core.models import ManagedHost, TransportKind
from .base import DEFAULT_TIMEOUT
from .shell import CommandResult, ShellConnector

logger = logging.getLogger(__name__)

# Exit status the helper scripts use for "no such file".
MISSING = 3

_READ_SCRIPT = 'if [ -f "$1" ]; then cat "$1"; else exit 3; fi'
_WRITE_SCRIPT = (
    'set -e; d=$(dirname "$1"); mkdir -p "$d"; '
    't=$(mktemp "$d/.f2bctl.XXXXXX"); trap \'rm -f "$t"\' EXIT; '
    'cat > "$t"; chmod 644 "$t"; mv -f "$t" "$1"'
)
_REMOVE_SCRIPT = 'if [ -e "$1" ]; then rm -f "$1"; else exit 3; fi'
_LIST_SCRIPT = '[ -d "$1" ] || exit 3; find "$1" -mindepth 1 -maxdepth 1 -type f -printf "%f\\n"'
_KIND_SCRIPT = 'if [ -d "$1" ]; then echo dir; elif [ -e "$1" ]; then echo file; fi'
_GLOB_SCRIPT = 'for f in $1; do [ -e "$f" ] && printf "%s\\n" "$f"; done; exit 0'
_WHICH_SCRIPT = 'command -v "$1" >/dev/null 2>&1'


def _sh(script: str, *args: str) -> List[str]:
    return ["sh", "-c", script, "sh", *args]


class SSHConnector(ShellConnector):
    """Drives fail2ban over an SSH session."""

    transport = TransportKind.SSH

    def __init__(
        self,
        host: ManagedHost,
        timeout: float = DEFAULT_TIMEOUT,
        client_factory=paramiko.SSHClient,
    ):
        super().__init__(host, timeout)
        self._session_factory = client_factory
        self._session: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    # =========================================================================
    # Session
    # =========================================================================

    def _connect(self) -> paramiko.SSHClient:
        with self._lock:
            if self._session is not None:
                transport = self._session.get_transport()
                if transport is not None and transport.is_active():
                    return self._session
                self._session.close()
                self._session = None

            client = self._session_factory()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            key_filename = os.path.expanduser(self.host.ssh_key_path) if self.host.ssh_key_path else None
            logger.info(f"Connecting to {self.host.ssh_user}@{self.host.host}:{self.host.port}")
            try:
                client.connect(
                    hostname=self.host.host,
                    port=self.host.port,
                    username=self.host.ssh_user or None,
                    key_filename=key_filename,
                    allow_agent=True,
                    look_for_keys=key_filename is None,
                    timeout=self.timeout,
                )
            except (paramiko.SSHException, OSError) as e:
                client.close()
                raise TransportError(
                    f"SSH connection to {self.host.host}:{self.host.port} failed: {e}",
                    reason=TransportError.REASON_UNREACHABLE,
                    host_id=self.host_id,
                ) from e
            self._session = client
            return client

    def _execute(self, argv: List[str], stdin: Optional[str] = None) -> CommandResult:
        command = shlex.join(argv)
        if self.host.use_sudo:
            command = "sudo -n " + command
        client = self._connect()
        logger.debug(f"[{self.host_id}] ssh: {command}")
        try:
            channel_in, channel_out, channel_err = client.exec_command(command, timeout=self.timeout)
            if stdin is not None:
                channel_in.write(stdin)
                channel_in.flush()
            channel_in.channel.shutdown_write()
            out = channel_out.read().decode("utf-8", errors="replace")
            err = channel_err.read().decode("utf-8", errors="replace")
            exit_code = channel_out.channel.recv_exit_status()
        except socket.timeout as e:
            raise TransportError(
                f"SSH command timed out after {self.timeout}s on {self.host.host}: {argv[0]}",
                reason=TransportError.REASON_TIMEOUT,
                host_id=self.host_id,
            ) from e
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(
                f"SSH command failed on {self.host.host}: {e}",
                reason=TransportError.REASON_UNREACHABLE,
                host_id=self.host_id,
            ) from e
        return CommandResult(exit_code=exit_code, stdout=out, stderr=err)

    def _script(self, script: str, *args: str, stdin: Optional[str] = None) -> CommandResult:
        return self._execute(_sh(script, *args), stdin=stdin)

    # =========================================================================
    # Primitives
    # =========================================================================

    def _read_text(self, path: str) -> Optional[str]:
        result = self._script(_READ_SCRIPT, path)
        if result.exit_code == MISSING:
            return None
        self._check(result, f"read {path}")
        return result.stdout

    def _write_text_atomic(self, path: str, content: str) -> None:
        result = self._script(_WRITE_SCRIPT, path, stdin=content)
        self._check(result, f"write {path}")

    def _remove(self, path: str) -> bool:
        result = self._script(_REMOVE_SCRIPT, path)
        if result.exit_code == MISSING:
            return False
        self._check(result, f"remove {path}")
        return True

    def _list_dir(self, path: str) -> Optional[List[str]]:
        result = self._script(_LIST_SCRIPT, path)
        if result.exit_code == MISSING:
            return None
        self._check(result, f"list {path}")
        return [line for line in result.stdout.splitlines() if line]

    def _path_kind(self, path: str) -> Optional[str]:
        result = self._script(_KIND_SCRIPT, path)
        self._check(result, f"stat {path}")
        return result.stdout.strip() or None

    def _glob(self, pattern: str) -> List[str]:
        result = self._script(_GLOB_SCRIPT, pattern)
        self._check(result, f"glob {pattern}")
        return [line for line in result.stdout.splitlines() if line]

    def _which(self, binary: str) -> bool:
        return self._script(_WHICH_SCRIPT, binary).ok

    def _find_files(self, root: str, suffix: str) -> List[str]:
        result = self._execute(["find", root, "-type", "f", "-name", f"*{suffix}"])
        self._check(result, f"find {root}")
        return [line for line in result.stdout.splitlines() if line]

    def _make_temp_dir(self) -> str:
        result = self._execute(["mktemp", "-d", "/tmp/f2bctl.XXXXXX"])
        self._check(result, "mktemp")
        return result.stdout.strip()

    def _remove_tree(self, path: str) -> None:
        result = self._execute(["rm", "-rf", path])
        if not result.ok:
            logger.warning(f"Could not remove {path} on host {self.host_id}: {result.output.strip()}")

    async def close(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.close()
                self._session = None
                logger.info(f"Closed SSH session to {self.host.host}")
