"""
Local connector: fail2ban on the same machine as the control plane.
"""

import glob
import logging
import os
import shutil
import subprocess
import tempfile
from typing import List, Optional

from ...core.exceptions import TransportError
from ...core.models import DEFAULT_SOCKET_PATH, ManagedHost, TransportKind
from ...utils.fileio import atomic_write_text
from ..variables import ConfigSource, DirectorySource
from .base import DEFAULT_TIMEOUT
from .shell import CommandResult, ShellConnector

logger = logging.getLogger(__name__)


class LocalConnector(ShellConnector):
    """Runs fail2ban-client as a subprocess and edits files directly."""

    transport = TransportKind.LOCAL

    def __init__(self, host: ManagedHost, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(host, timeout)
        if not self.host.socket_path:
            self.host.socket_path = DEFAULT_SOCKET_PATH

    def _io_error(self, action: str, path: str, error: OSError) -> TransportError:
        return TransportError(
            f"cannot {action} {path} on host {self.host_id}: {error}",
            reason=TransportError.REASON_COMMAND_FAILED,
            host_id=self.host_id,
        )

    def _execute(self, argv: List[str]) -> CommandResult:
        logger.debug(f"Running {' '.join(argv)}")
        try:
            completed = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise TransportError(
                f"{argv[0]} timed out after {self.timeout}s",
                reason=TransportError.REASON_TIMEOUT,
                host_id=self.host_id,
            ) from e
        except FileNotFoundError as e:
            raise TransportError(
                f"{argv[0]} is not installed",
                reason=TransportError.REASON_UNAVAILABLE,
                host_id=self.host_id,
            ) from e
        except OSError as e:
            raise TransportError(
                f"cannot run {argv[0]}: {e}",
                reason=TransportError.REASON_UNAVAILABLE,
                host_id=self.host_id,
            ) from e
        return CommandResult(exit_code=completed.returncode, stdout=completed.stdout or "")

    def _read_text(self, path: str) -> Optional[str]:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as handle:
                return handle.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise self._io_error("read", path, e) from e

    def _write_text_atomic(self, path: str, content: str) -> None:
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            atomic_write_text(path, content)
        except OSError as e:
            raise self._io_error("write", path, e) from e

    def _remove(self, path: str) -> bool:
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise self._io_error("remove", path, e) from e
        return True

    def _list_dir(self, path: str) -> Optional[List[str]]:
        if not os.path.isdir(path):
            return None
        try:
            return [e.name for e in os.scandir(path) if e.is_file()]
        except OSError as e:
            raise self._io_error("list", path, e) from e

    def _path_kind(self, path: str) -> Optional[str]:
        if os.path.isdir(path):
            return "dir"
        if os.path.exists(path):
            return "file"
        return None

    def _glob(self, pattern: str) -> List[str]:
        return glob.glob(pattern)

    def _which(self, binary: str) -> bool:
        return shutil.which(binary) is not None

    def _find_files(self, root: str, suffix: str) -> List[str]:
        return list(DirectorySource(root).iter_files(suffix))

    def _make_temp_dir(self) -> str:
        try:
            return tempfile.mkdtemp(prefix="f2bctl-")
        except OSError as e:
            raise self._io_error("create", tempfile.gettempdir(), e) from e

    def _remove_tree(self, path: str) -> None:
        shutil.rmtree(path, ignore_errors=True)

    def _config_source(self) -> ConfigSource:
        return DirectorySource(self.host.config_root)
