"""
f2bctl fail2ban layer

Everything that understands fail2ban itself:
- variables: %(name)s resolution across .local/.conf layers
- includes: [INCLUDES] before/after merging for filter testing
- jails, managed, protocol: file rewrite rules and client output parsing
- connectors: Local, SSH and Agent transports behind one interface
- manager: host id to connector mapping
"""

from .connectors import (
    AgentConnector,
    Connector,
    LocalConnector,
    SSHConnector,
    create_connector,
)
from .includes import resolve_filter_includes
from .manager import ConnectorManager
from .variables import ConfigVariable, DirectorySource, Layer, VariableResolver

__all__ = [
    "VariableResolver",
    "ConfigVariable",
    "DirectorySource",
    "Layer",
    "resolve_filter_includes",
    "Connector",
    "LocalConnector",
    "SSHConnector",
    "AgentConnector",
    "create_connector",
    "ConnectorManager",
]
