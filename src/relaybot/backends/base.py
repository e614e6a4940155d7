"""The capability every chat-protocol connector implements.

The :class:`~relaybot.supervisor.Supervisor` only ever talks to backends
through :class:`Backend`; it never inspects which protocol sits behind one.
Connectors subclass :class:`BackendBase`, which carries the state shared by
every protocol: the instance name, the joined targets, the verbosity flag and
the lifecycle state.

Lifecycle::

    backend = SomeBackend("irc1", config, debug=False)
    await backend.connect()                  # DISCONNECTED -> CONNECTED
    await backend.set_targets(targets)       # -> JOINED
    await backend.read(cancel, queue)        # -> READING ... DRAINING -> CLOSED
    await backend.write(envelope)            # any time after set_targets()
    await backend.close()                    # always safe
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Iterable
from enum import Enum
from typing import Any

from relaybot.errors import RelayCancelled, TargetNotFoundError
from relaybot.routing.envelope import MessageEnvelope, MessagePayload
from relaybot.routing.target import Target

log = logging.getLogger(__name__)

EnvelopeQueue = asyncio.Queue[MessageEnvelope | None]
"""Per-backend inbound queue; ``None`` marks the end of the stream."""


class BackendState(Enum):
    """Where a backend is in its lifecycle.  ``CLOSED`` is terminal."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    JOINED = "joined"
    READING = "reading"
    DRAINING = "draining"
    CLOSED = "closed"


class Backend(abc.ABC):
    """Abstract chat backend."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Stable identifier matching the configuration key."""

    @abc.abstractmethod
    async def connect(self) -> None:
        """Open the session and wait until the remote end reports ready.

        Raises:
            ConnectError: If the session cannot be established.
        """

    @abc.abstractmethod
    async def set_targets(self, targets: Iterable[Target]) -> None:
        """Join every target's room, skipping rooms already joined.

        Raises:
            JoinError: If a room cannot be joined.
        """

    @abc.abstractmethod
    async def read(self, cancel: asyncio.Event, queue: EnvelopeQueue) -> None:
        """Put one envelope on *queue* per inbound chat message until cancelled.

        Raises:
            RelayCancelled: When *cancel* is set; the session has been
                released by then.
            ReadError: When the session fails.
        """

    @abc.abstractmethod
    async def write(self, envelope: MessageEnvelope) -> None:
        """Deliver ``envelope.render()`` to ``envelope.destination``.

        Raises:
            WriteError: If the message could not be delivered.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the session.  Idempotent."""


class BackendBase(Backend):
    """Shared state and helpers for concrete connectors.

    Args:
        name: Instance name from the configuration.
        config: Protocol-specific settings model.
        debug: Enables verbose protocol logging.
    """

    def __init__(self, name: str, config: Any = None, *, debug: bool = False) -> None:
        self._name = name
        self.config = config
        self.debug = debug
        self.targets: list[Target] = []
        self.state: BackendState = BackendState.DISCONNECTED

    @property
    def name(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, state={self.state.value})"

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def get_target(self, room: str) -> Target:
        """Return the joined target for *room*.

        Raises:
            TargetNotFoundError: If *room* is not one of this backend's targets.
        """
        for target in self.targets:
            if target.name == room:
                return target
        raise TargetNotFoundError(room)

    def _remember_targets(self, targets: Iterable[Target]) -> list[Target]:
        """Store *targets* (sorted for a stable join order) and return them."""
        self.targets = sorted(targets, key=lambda t: (t.server, t.name))
        return self.targets

    def _enqueue(self, queue: EnvelopeQueue, room: str, sender: str, text: str) -> bool:
        """Wrap an inbound event in an envelope and queue it.

        Returns ``False`` (after logging) when *room* is not a known target.
        """
        try:
            target = self.get_target(room)
        except TargetNotFoundError as exc:
            log.error("[%s] Failed to retrieve target for event: %s", self._name, exc)
            return False

        log.debug(
            "[%s] Creating new message for sender [%s] with content [%s]",
            self._name, sender, text,
        )
        queue.put_nowait(MessageEnvelope(target, MessagePayload(sender=sender, text=text)))
        return True

    def _fail(self) -> None:
        self.state = BackendState.CLOSED

    async def _wait_cancelled(self, cancel: asyncio.Event, *watch: asyncio.Future[Any]) -> None:
        """Block until *cancel* is set, then raise :class:`RelayCancelled`.

        Any future in *watch* finishing first (e.g. the protocol's receive
        loop dying) is returned to the caller by re-raising its exception, or
        returns normally if it completed without one.
        """
        self.state = BackendState.READING
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {waiter, *watch}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not waiter.done():
                waiter.cancel()

        if waiter in done:
            self.state = BackendState.DRAINING
            await self.close()
            raise RelayCancelled(f"Read from server [{self._name}] cancelled")

        for fut in done:
            fut.result()
