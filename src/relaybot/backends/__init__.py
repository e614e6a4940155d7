"""Chat-protocol connectors and the capability they implement.

Public API:
    :class:`Backend` -- the abstract capability the supervisor drives.
    :class:`BackendBase` -- shared state for concrete connectors.
    :class:`BackendState` -- lifecycle states.
    :func:`build_backends` -- instantiate connectors from the settings.

The connectors themselves (:mod:`~relaybot.backends.irc`,
:mod:`~relaybot.backends.matrix`, :mod:`~relaybot.backends.discord_chat`) are
imported lazily by :mod:`~relaybot.backends.registry`.
"""

from relaybot.backends.base import Backend, BackendBase, BackendState, EnvelopeQueue
from relaybot.backends.registry import build_backends

__all__ = [
    "Backend",
    "BackendBase",
    "BackendState",
    "EnvelopeQueue",
    "build_backends",
]
