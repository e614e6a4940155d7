"""Wires backends and the routing table together and runs the relay.

:meth:`Supervisor.start` connects every backend one after another, joins the
rooms each one needs, then runs two tasks per backend until shutdown:

- a **read task** calling :meth:`Backend.read`, which fills the backend's
  private inbound queue;
- a **routing task** draining that queue and writing each envelope to every
  destination the routing table lists for its source.

All read tasks share one stop event.  It is set when the caller's cancel
event fires or when the first read task fails, and every other read task then
winds down.  Each read task closes its queue with a ``None`` sentinel when it
exits, so its routing task drains what is left and returns.

Usage::

    supervisor = Supervisor(backends, RoutingTable.from_config(settings.mappings))
    cancel = asyncio.Event()
    await supervisor.start(cancel)   # returns after cancel.set()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from relaybot.backends.base import Backend, EnvelopeQueue
from relaybot.errors import (
    ConfigurationError,
    ConnectError,
    JoinError,
    ReadError,
    RelayCancelled,
)
from relaybot.routing.envelope import MessageEnvelope
from relaybot.routing.table import RoutingTable

if TYPE_CHECKING:
    from relaybot.backends.registry import BackendFactory
    from relaybot.config import RelaySettings

log = logging.getLogger(__name__)


class Supervisor:
    """Owns the backends and the routing table for the life of the process.

    Args:
        backends: Every configured backend, in the order they are started.
        table: The routing table.  Every server it references must be one of
            *backends*.

    Raises:
        ConfigurationError: If backend names collide or a route references a
            backend that does not exist.
    """

    def __init__(self, backends: Sequence[Backend], table: RoutingTable) -> None:
        self.table = table
        self.backends: dict[str, Backend] = {}
        for backend in backends:
            if backend.name in self.backends:
                raise ConfigurationError(f"Duplicate server name [{backend.name}]")
            self.backends[backend.name] = backend

        unknown = [s for s in table.servers() if s not in self.backends]
        if unknown:
            raise ConfigurationError(
                f"Routes reference unknown server(s): {', '.join(unknown)}"
            )

        self._first_error: ReadError | None = None

    @classmethod
    def from_settings(
        cls,
        settings: RelaySettings,
        factories: Mapping[str, BackendFactory] | None = None,
    ) -> Supervisor:
        """Build backends through the factory map and wrap them with the table."""
        from relaybot.backends.registry import build_backends

        backends = build_backends(settings, factories)
        return cls(backends, RoutingTable.from_config(settings.mappings))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, cancel: asyncio.Event | None = None) -> None:
        """Run the relay until *cancel* is set or a read task fails.

        Returns ``None`` when the relay stopped because of *cancel* (or
        because every read loop ended by itself).  Every backend is closed
        before this method returns or raises.

        Raises:
            ConnectError: A backend failed to connect.  No later backend is
                touched; earlier ones are closed again.
            JoinError: A backend failed to join its rooms.
            ReadError: The first read task to fail.
        """
        if cancel is None:
            cancel = asyncio.Event()

        try:
            await self._connect_all()
            await self._join_all()
        except BaseException:
            await self._close_all()
            raise

        if not self.backends:
            log.warning("No servers configured, nothing to relay")
            return

        stop = asyncio.Event()
        self._first_error = None
        mirror = asyncio.create_task(self._mirror(cancel, stop), name="relay-cancel")

        readers: list[asyncio.Task[None]] = []
        routers: list[asyncio.Task[None]] = []
        for name, backend in self.backends.items():
            queue: EnvelopeQueue = asyncio.Queue()
            readers.append(
                asyncio.create_task(self._read(backend, stop, queue), name=f"read-{name}")
            )
            routers.append(
                asyncio.create_task(self._drain(name, queue), name=f"route-{name}")
            )

        try:
            # asyncio.wait() leaves the tasks running if we are cancelled,
            # so they can be stopped through the event below.
            await asyncio.wait(readers)
            await asyncio.wait(routers)
            for task in routers:
                if not task.cancelled() and task.exception() is not None:
                    log.error(
                        "Routing task [%s] failed", task.get_name(),
                        exc_info=task.exception(),
                    )
        except asyncio.CancelledError:
            log.info("Relay task cancelled, stopping all servers")
            stop.set()
            await asyncio.gather(*readers, *routers, return_exceptions=True)
            raise
        finally:
            mirror.cancel()
            await asyncio.gather(mirror, return_exceptions=True)
            await self._close_all()

        if self._first_error is not None:
            raise self._first_error
        log.info("All servers finished reading")

    async def _connect_all(self) -> None:
        for name, backend in self.backends.items():
            log.info("Connecting to server [%s]", name)
            try:
                await backend.connect()
            except ConnectError:
                raise
            except Exception as exc:
                raise ConnectError(name, exc) from exc

    async def _join_all(self) -> None:
        for name, backend in self.backends.items():
            targets = self.table.joined_targets(name)
            log.debug(
                "Setting targets for server [%s]: %s",
                name, ", ".join(sorted(t.name for t in targets)) or "(none)",
            )
            try:
                await backend.set_targets(targets)
            except JoinError:
                raise
            except Exception as exc:
                raise JoinError(name, exc) from exc

    async def _close_all(self) -> None:
        for name, backend in self.backends.items():
            try:
                await backend.close()
            except Exception:
                log.warning("Failed to close server [%s]", name, exc_info=True)

    @staticmethod
    async def _mirror(cancel: asyncio.Event, stop: asyncio.Event) -> None:
        await cancel.wait()
        log.info("Cancellation requested, stopping all servers")
        stop.set()

    # ------------------------------------------------------------------
    # Per-backend tasks
    # ------------------------------------------------------------------

    async def _read(self, backend: Backend, stop: asyncio.Event, queue: EnvelopeQueue) -> None:
        """Read task: run ``backend.read`` and record the first failure."""
        log.debug("Starting read for server [%s]", backend.name)
        try:
            await backend.read(stop, queue)
        except RelayCancelled:
            log.info("Finished reading from server [%s] (cancelled)", backend.name)
        except Exception as exc:
            error = exc if isinstance(exc, ReadError) else ReadError(backend.name, exc)
            if error is not exc:
                error.__cause__ = exc
            log.error("%s", error)
            if self._first_error is None:
                self._first_error = error
            stop.set()
        else:
            log.info("Finished reading from server [%s]", backend.name)
        finally:
            queue.put_nowait(None)

    async def _drain(self, name: str, queue: EnvelopeQueue) -> None:
        """Routing task: route envelopes in arrival order until the sentinel."""
        while True:
            envelope = await queue.get()
            if envelope is None:
                log.debug("Routing for server [%s] finished", name)
                return
            try:
                await self.route(envelope)
            except Exception:
                log.exception(
                    "Failed to route message from [%s] on server [%s]",
                    envelope.source.name, name,
                )

    async def route(self, envelope: MessageEnvelope) -> int:
        """Write *envelope* to every destination routed from its source.

        Delivery failures are logged and skipped.

        Returns:
            Number of successful writes.
        """
        delivered = 0
        for edge in self.table.edges_from(envelope.source):
            backend = self.backends[edge.destination.server]
            outbound = envelope.addressed_to(edge.destination)
            text = outbound.render()
            log.debug(
                "Writing message [%s] to target [%s] on server [%s]",
                text, edge.destination.name, edge.destination.server,
            )
            try:
                await backend.write(outbound)
            except Exception as exc:
                log.error(
                    "Failed to write message [%s] to target [%s] on server [%s]: %s",
                    text, edge.destination.name, edge.destination.server, exc,
                )
                continue
            delivered += 1
        return delivered
