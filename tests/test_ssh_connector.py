"""
Tests for the SSH connector against a scripted paramiko client.
"""

import shlex
import socket
from typing import Dict, List, Optional, Tuple

import paramiko
import pytest

from f2bctl.core.exceptions import TransportError
from f2bctl.core.models import ManagedHost, TransportKind, WriteOutcome
from f2bctl.fail2ban.connectors import SSHConnector
from f2bctl.fail2ban.connectors import ssh as ssh_module
from f2bctl.settings import AppSettings

SOCKET = "/var/run/fail2ban/fail2ban.sock"


class RemoteHost:
    """In-memory remote side: a filesystem plus fail2ban-client answers."""

    def __init__(self):
        self.files: Dict[str, str] = {}
        self.banned: List[str] = ["192.0.2.10"]
        self.commands: List[str] = []
        self.raise_on_exec: Optional[BaseException] = None
        self.stderr = ""

    def handle(self, argv: List[str], stdin: str) -> Tuple[int, str]:
        if argv[:2] == ["sudo", "-n"]:
            argv = argv[2:]
        if argv[0] == "sh":
            script, args = argv[2], argv[4:]
            return self._script(script, args, stdin)
        if argv[0] == "fail2ban-client":
            args = argv[3:]
            if args == ["status", "sshd"]:
                return 0, "`- Banned IP list:\t" + " ".join(self.banned) + "\n"
            if args[:1] == ["set"]:
                self.banned.append(args[3])
                return 0, "1\n"
            if args == ["ping"]:
                return 0, "Server replied: pong\n"
        return 127, f"sh: {argv[0]}: not found\n"

    def _script(self, script: str, args: List[str], stdin: str) -> Tuple[int, str]:
        path = args[0]
        if script == ssh_module._READ_SCRIPT:
            if path in self.files:
                return 0, self.files[path]
            return ssh_module.MISSING, ""
        if script == ssh_module._WRITE_SCRIPT:
            self.files[path] = stdin
            return 0, ""
        if script == ssh_module._REMOVE_SCRIPT:
            if self.files.pop(path, None) is None:
                return ssh_module.MISSING, ""
            return 0, ""
        if script == ssh_module._KIND_SCRIPT:
            if path in self.files:
                return 0, "file\n"
            if any(f.startswith(path.rstrip("/") + "/") for f in self.files):
                return 0, "dir\n"
            return 0, ""
        if script == ssh_module._LIST_SCRIPT:
            prefix = path.rstrip("/") + "/"
            names = [f[len(prefix):] for f in self.files if f.startswith(prefix) and "/" not in f[len(prefix):]]
            if not names:
                return ssh_module.MISSING, ""
            return 0, "".join(n + "\n" for n in sorted(names))
        return 1, "unexpected script\n"


class _Channel:
    def __init__(self, execution: "_Execution"):
        self._execution = execution

    def recv_exit_status(self) -> int:
        return self._execution.result()[0]

    def shutdown_write(self) -> None:
        pass


class _Execution:
    def __init__(self, remote: RemoteHost, command: str):
        self.remote = remote
        self.argv = shlex.split(command)
        self.stdin: List[str] = []
        self._result: Optional[Tuple[int, str]] = None

    def result(self) -> Tuple[int, str]:
        if self._result is None:
            self._result = self.remote.handle(self.argv, "".join(self.stdin))
        return self._result


class _Stdin:
    def __init__(self, execution: _Execution):
        self._execution = execution
        self.channel = _Channel(execution)

    def write(self, data: str) -> None:
        self._execution.stdin.append(data)

    def flush(self) -> None:
        pass


class _Stdout:
    def __init__(self, execution: _Execution, error: bool = False):
        self._execution = execution
        self._error = error
        self.channel = _Channel(execution)

    def read(self) -> bytes:
        if self._error:
            return self._execution.remote.stderr.encode()
        return self._execution.result()[1].encode()


class _Transport:
    def is_active(self) -> bool:
        return True


class FakeSSHClient:
    """Just enough of paramiko.SSHClient for the connector."""

    instances: List["FakeSSHClient"] = []

    def __init__(self, remote: RemoteHost, connect_error: Optional[BaseException] = None):
        self.remote = remote
        self.connect_error = connect_error
        self.connect_kwargs: Dict = {}
        self.closed = False

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connect_kwargs = kwargs

    def get_transport(self):
        return None if self.closed else _Transport()

    def exec_command(self, command: str, timeout: float = None):
        self.remote.commands.append(command)
        if self.remote.raise_on_exec is not None:
            raise self.remote.raise_on_exec
        execution = _Execution(self.remote, command)
        return _Stdin(execution), _Stdout(execution), _Stdout(execution, error=True)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def remote():
    remote = RemoteHost()
    remote.files["/etc/fail2ban/jail.d/sshd.conf"] = "[sshd]\nenabled = true\n"
    remote.files["/etc/fail2ban/filter.d/sshd.conf"] = "[Definition]\nfailregex = <HOST>\n"
    return remote


@pytest.fixture
def clients():
    return []


@pytest.fixture
def ssh_host():
    return ManagedHost(
        id="srv-ssh",
        transport=TransportKind.SSH,
        host="203.0.113.5",
        port=2222,
        ssh_user="admin",
        socket_path=SOCKET,
        use_sudo=True,
        enabled=True,
    )


@pytest.fixture
def connector(ssh_host, remote, clients):
    def factory():
        client = FakeSSHClient(remote)
        clients.append(client)
        return client

    return SSHConnector(ssh_host, timeout=5.0, client_factory=factory)


class TestSession:
    @pytest.mark.asyncio
    async def test_connect_arguments(self, connector, clients):
        await connector.ping()
        kwargs = clients[0].connect_kwargs
        assert kwargs["hostname"] == "203.0.113.5"
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "admin"
        assert isinstance(clients[0].policy, paramiko.AutoAddPolicy)

    @pytest.mark.asyncio
    async def test_session_is_reused(self, connector, clients):
        await connector.ping()
        await connector.banned_ips("sshd")
        assert len(clients) == 1

    @pytest.mark.asyncio
    async def test_close(self, connector, clients):
        await connector.ping()
        await connector.close()
        assert clients[0].closed
        await connector.close()

    @pytest.mark.asyncio
    async def test_connect_failure(self, ssh_host, remote):
        def factory():
            return FakeSSHClient(remote, connect_error=paramiko.SSHException("auth failed"))

        connector = SSHConnector(ssh_host, timeout=5.0, client_factory=factory)
        with pytest.raises(TransportError) as exc_info:
            await connector.ping()
        assert exc_info.value.reason == TransportError.REASON_UNREACHABLE
        assert exc_info.value.host_id == "srv-ssh"

    @pytest.mark.asyncio
    async def test_command_timeout(self, connector, remote):
        remote.raise_on_exec = socket.timeout("timed out")
        with pytest.raises(TransportError) as exc_info:
            await connector.ping()
        assert exc_info.value.reason == TransportError.REASON_TIMEOUT


class TestCommands:
    @pytest.mark.asyncio
    async def test_commands_run_under_sudo(self, connector, remote):
        await connector.banned_ips("sshd")
        assert remote.commands[-1] == f"sudo -n fail2ban-client -s {SOCKET} status sshd"

    @pytest.mark.asyncio
    async def test_ban(self, connector, remote):
        assert await connector.ban("sshd", "198.51.100.7") is True
        assert await connector.ban("sshd", "198.51.100.7") is False
        assert remote.banned == ["192.0.2.10", "198.51.100.7"]

    @pytest.mark.asyncio
    async def test_read_jail_falls_back_to_conf(self, connector):
        config = await connector.read_jail_config("sshd")
        assert config.path == "/etc/fail2ban/jail.d/sshd.conf"
        assert config.content == "[sshd]\nenabled = true\n"

    @pytest.mark.asyncio
    async def test_write_jail_through_stdin(self, connector, remote):
        await connector.write_jail_config("sshd", "maxretry = 2\n")
        assert remote.files["/etc/fail2ban/jail.d/sshd.local"] == "[sshd]\nmaxretry = 2\n"

    @pytest.mark.asyncio
    async def test_list_and_delete_filters(self, connector, remote):
        remote.files["/etc/fail2ban/filter.d/nginx.local"] = "[Definition]\n"
        assert await connector.list_filters() == ["nginx", "sshd"]
        await connector.delete_filter("nginx")
        assert "/etc/fail2ban/filter.d/nginx.local" not in remote.files

    @pytest.mark.asyncio
    async def test_fail2ban_client_commands(self, connector, remote):
        assert await connector.banned_ips("sshd") == ["192.0.2.10"]
        await connector.ping()
        assert remote.commands[-1] == f"sudo -n fail2ban-client -s {SOCKET} ping"


class TestStderr:
    @pytest.fixture
    def noisy_remote(self, remote):
        remote.stderr = "sudo: unable to resolve host web-01: Name or service not known\n"
        return remote

    @pytest.mark.asyncio
    async def test_file_content_excludes_stderr(self, connector, noisy_remote):
        config = await connector.read_jail_config("sshd")
        assert config.content == "[sshd]\nenabled = true\n"

    @pytest.mark.asyncio
    async def test_unchanged_managed_file_is_not_rewritten(self, connector, noisy_remote):
        noisy_remote.files["/etc/fail2ban/action.d/f2bctl-notify.conf"] = "[Definition]\n"
        settings = AppSettings(callback_secret="c" * 32)

        first = await connector.ensure_managed_config_files("http://cp:8080", "srv-ssh", settings)
        second = await connector.ensure_managed_config_files("http://cp:8080", "srv-ssh", settings)

        assert first.action == WriteOutcome.WRITTEN
        assert second.action == WriteOutcome.UNCHANGED
        assert second.jail_local == WriteOutcome.UNCHANGED
