"""
fail2ban Connectors

One connector per managed host, chosen by the host's transport:
- LocalConnector: fail2ban-client subprocess and direct file access
- SSHConnector: the same operations over a paramiko session
- AgentConnector: the HTTP API of a remote agent
"""

from ...core.models import ManagedHost, TransportKind
from .agent import AgentConnector
from .base import DEFAULT_TIMEOUT, Connector
from .local import LocalConnector
from .shell import CommandResult, ShellConnector
from .ssh import SSHConnector

_CONNECTOR_TYPES = {
    TransportKind.LOCAL: LocalConnector,
    TransportKind.SSH: SSHConnector,
    TransportKind.AGENT: AgentConnector,
}


def create_connector(host: ManagedHost, timeout: float = DEFAULT_TIMEOUT) -> Connector:
    """Build the connector variant for ``host.transport``."""
    return _CONNECTOR_TYPES[host.transport](host, timeout=timeout)


__all__ = [
    "Connector",
    "ShellConnector",
    "CommandResult",
    "LocalConnector",
    "SSHConnector",
    "AgentConnector",
    "DEFAULT_TIMEOUT",
    "create_connector",
]
