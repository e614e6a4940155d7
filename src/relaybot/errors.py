"""Exception hierarchy for relaybot.

Fatal errors (:class:`ConfigurationError`, :class:`ConnectError`,
:class:`JoinError`, :class:`ReadError`) stop the relay.  Per-message errors
(:class:`TargetNotFoundError`, :class:`WriteError`) are logged where they
occur and never unwind a read or routing task.  :class:`RelayCancelled` is the
expected outcome of a requested shutdown and is never reported as a failure.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relaybot errors."""


class ConfigurationError(RelayError):
    """Raised when the configuration or routing table is invalid."""


class BackendError(RelayError):
    """Base for errors raised on behalf of a single backend.

    Attributes:
        backend: Name of the backend the error belongs to.
        reason: Human-readable description of what went wrong.
    """

    _action: str = "Backend error on"

    def __init__(self, backend: str, reason: str | BaseException) -> None:
        self.backend = backend
        self.reason = str(reason)
        super().__init__(f"{self._action} server [{backend}]: {self.reason}")


class ConnectError(BackendError):
    """Raised when a backend session cannot be established."""

    _action = "Failed to connect"


class JoinError(BackendError):
    """Raised when a backend cannot join one of its rooms."""

    _action = "Failed to set targets for"


class ReadError(BackendError):
    """Raised when a backend's read loop fails."""

    _action = "Failed to read from"


class WriteError(BackendError):
    """Raised when a single outbound delivery fails.

    Attributes:
        target: Room identifier the message was addressed to.
    """

    _action = "Failed to write to"

    def __init__(self, backend: str, target: str, reason: str | BaseException) -> None:
        self.target = target
        super().__init__(backend, f"room [{target}]: {reason}")


class TargetNotFoundError(RelayError):
    """Raised when an inbound event's room is not one of the backend's targets."""

    def __init__(self, room: str) -> None:
        self.room = room
        super().__init__(f"Cannot find target [{room}]")


class RelayCancelled(RelayError):
    """Raised by :meth:`Backend.read` when the shared cancel event is set."""
