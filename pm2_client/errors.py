"""
Exception hierarchy for the PM2 client agent.

None of these errors terminate the agent: connection errors are retried,
telemetry errors degrade a single field, and command or protocol errors are
logged and the offending item dropped.
"""
from typing import Any


class Pm2ClientError(Exception):
    """Base class for all agent errors."""


class StreamConnectionError(Pm2ClientError):
    """Handshake or transport failure on the controller stream."""


class ProtocolError(Pm2ClientError):
    """Inbound message that cannot be decoded or has an unexpected shape."""


class TelemetryProviderError(Pm2ClientError):
    """A single telemetry provider failed."""

    def __init__(self, field: str, cause: BaseException):
        super().__init__(f"Telemetry provider for '{field}' failed: {cause}")
        self.field = field
        self.cause = cause


class QueueOverflowError(Pm2ClientError):
    """The action queue is at capacity; the command was rejected."""


class SupervisorError(Pm2ClientError):
    """The PM2 supervisor could not be reached or rejected a call."""


class ExecError(Pm2ClientError):
    """Base class for remote command execution failures."""

    def __init__(self, message: str, action: str = '', target_id: Any = None):
        super().__init__(message)
        self.action = action
        self.target_id = target_id


class SelfProtectionError(ExecError):
    """Refused to stop the agent's own PM2 process."""


class UnsupportedActionError(ExecError):
    """The action name is not one the agent knows how to run."""


class SupervisorFailureError(ExecError):
    """The supervisor call backing an action failed."""
