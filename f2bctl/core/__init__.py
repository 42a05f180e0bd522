"""
f2bctl Core - Error Taxonomy and Shared Models

This module contains the foundational types of f2bctl:
- The exception hierarchy every component raises
- Managed hosts, ban events and connector result types
"""

from .exceptions import (
    AuthError,
    CircularReferenceError,
    ConfigurationError,
    ControlPlaneError,
    NotFoundError,
    PersistenceError,
    ResolutionError,
    ResolutionExceededError,
    TransportError,
    ValidationError,
    VariableNotFoundError,
)
from .models import (
    BanEvent,
    ConfigFile,
    EventKind,
    FilterTestResult,
    JailInfo,
    LogpathCheck,
    LogpathTestResult,
    ManagedFilesResult,
    ManagedHost,
    TransportKind,
    WriteOutcome,
)

__all__ = [
    # Exceptions
    "ControlPlaneError",
    "NotFoundError",
    "VariableNotFoundError",
    "ResolutionError",
    "CircularReferenceError",
    "ResolutionExceededError",
    "TransportError",
    "ValidationError",
    "AuthError",
    "PersistenceError",
    "ConfigurationError",
    # Models
    "ManagedHost",
    "TransportKind",
    "BanEvent",
    "EventKind",
    "JailInfo",
    "ConfigFile",
    "LogpathCheck",
    "LogpathTestResult",
    "FilterTestResult",
    "WriteOutcome",
    "ManagedFilesResult",
]
