"""Room identities and directed forwarding rules."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Target:
    """A single room or channel on a named backend.

    Attributes:
        server: Name of the backend, matching its configuration key.
        name: Protocol-specific room identifier (``#general``,
            ``!abc:example.org``, a Discord channel id, ...).
    """

    server: str
    name: str

    def __str__(self) -> str:
        return f"{self.name}@{self.server}"


@dataclass(frozen=True, slots=True)
class RouteEdge:
    """Messages originating at *source* are forwarded to *destination*."""

    source: Target
    destination: Target

    def __str__(self) -> str:
        return f"{self.source} -> {self.destination}"
