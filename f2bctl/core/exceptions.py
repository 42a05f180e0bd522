"""
f2bctl Core Exceptions

Error taxonomy shared by the resolver, connectors, settings store and the
event pipeline. The web layer maps each class to one HTTP status.
"""

from typing import List, Optional


class ControlPlaneError(Exception):
    """Base exception for all control plane operations."""

    # Set by the event pipeline to the last stage an event reached.
    stage: Optional[str] = None


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(ControlPlaneError):
    """A variable, filter, jail, file or host does not exist."""

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        name: Optional[str] = None,
    ):
        self.kind = kind
        self.name = name
        super().__init__(message)


class VariableNotFoundError(NotFoundError):
    """A %(name)s reference has no definition in any configuration layer."""

    def __init__(self, variable: str, message: Optional[str] = None):
        self.variable = variable
        super().__init__(
            message or f"variable '{variable}' not found in fail2ban configuration files",
            kind="variable",
            name=variable,
        )


# =============================================================================
# Resolution Errors
# =============================================================================


class ResolutionError(ControlPlaneError):
    """Variable resolution failed because the configuration is inconsistent."""

    def __init__(self, message: str, variable: str):
        self.variable = variable
        super().__init__(message)


class CircularReferenceError(ResolutionError):
    """A variable refers back to itself, directly or through other variables."""

    def __init__(self, variable: str, chain: Optional[List[str]] = None):
        self.chain = chain or [variable]
        super().__init__(
            f"circular reference detected for variable '{variable}': "
            + " -> ".join(self.chain),
            variable,
        )


class ResolutionExceededError(ResolutionError):
    """Expansion did not converge within the iteration cap."""

    def __init__(self, variable: str, last_value: str, max_iterations: int):
        self.last_value = last_value
        self.max_iterations = max_iterations
        super().__init__(
            f"exceeded max iterations ({max_iterations}) resolving '{variable}', "
            f"likely a cycle. Last resolved value: '{last_value}'",
            variable,
        )


# =============================================================================
# Transport Errors
# =============================================================================


class TransportError(ControlPlaneError):
    """
    The subprocess, SSH session or agent call behind a connector failed.

    ``reason`` is one of the ``REASON_*`` constants so callers can tell a
    timeout from a host that restarted but no longer answers pings.
    """

    REASON_COMMAND_FAILED = "command_failed"
    REASON_TIMEOUT = "timeout"
    REASON_UNAVAILABLE = "unavailable"
    REASON_UNREACHABLE = "unreachable"
    REASON_RELOAD_ERRORS = "reload_errors"
    REASON_POST_RESTART_UNHEALTHY = "post_restart_unhealthy"
    REASON_BAD_RESPONSE = "bad_response"

    def __init__(
        self,
        message: str,
        reason: str = REASON_COMMAND_FAILED,
        host_id: Optional[str] = None,
        output: Optional[str] = None,
        exit_code: Optional[int] = None,
    ):
        self.reason = reason
        self.host_id = host_id
        self.output = output
        self.exit_code = exit_code
        super().__init__(message)


# =============================================================================
# Request Errors
# =============================================================================


class ValidationError(ControlPlaneError):
    """Input was rejected before any side effect took place."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class AuthError(ControlPlaneError):
    """Missing or incorrect callback secret or operator credentials."""

    pass


class PersistenceError(ControlPlaneError):
    """A storage write failed after validation succeeded."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class ConfigurationError(ControlPlaneError):
    """
    Fatal configuration problem detected at startup.

    Raised when the data directory cannot be opened or the callback secret
    does not meet the minimum length. Initialization aborts.
    """

    pass
