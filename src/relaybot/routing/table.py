"""Query engine over the immutable, ordered list of route edges.

The table is built once from configuration and shared read-only by every
routing task for the life of the process.  All queries are pure and return
tuples (or a frozenset) so callers cannot mutate the table through them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING

from relaybot.routing.target import RouteEdge, Target

if TYPE_CHECKING:
    from relaybot.config import MappingConfig

log = logging.getLogger(__name__)


class RoutingTable:
    """Ordered collection of :class:`RouteEdge` objects.

    Args:
        edges: Route edges in declaration order.  Duplicates are kept; each
            one produces its own delivery.
    """

    __slots__ = ("_edges",)

    def __init__(self, edges: Iterable[RouteEdge] = ()) -> None:
        self._edges: tuple[RouteEdge, ...] = tuple(edges)

    @classmethod
    def from_config(cls, mappings: Iterable[MappingConfig]) -> RoutingTable:
        """Build a table from the ``mappings`` section of the settings."""
        edges = [
            RouteEdge(
                source=Target(m.source.server, m.source.name),
                destination=Target(m.destination.server, m.destination.name),
            )
            for m in mappings
        ]
        log.debug("Loaded %d route(s)", len(edges))
        return cls(edges)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def edges_into(self, server: str) -> tuple[RouteEdge, ...]:
        """Edges whose destination lives on *server*, in table order."""
        return tuple(e for e in self._edges if e.destination.server == server)

    def edges_out_of(self, server: str) -> tuple[RouteEdge, ...]:
        """Edges whose source lives on *server*, in table order."""
        return tuple(e for e in self._edges if e.source.server == server)

    def edges_from(self, source: Target) -> tuple[RouteEdge, ...]:
        """Edges whose source is exactly *source* (server and room)."""
        return tuple(e for e in self._edges if e.source == source)

    def joined_targets(self, server: str) -> frozenset[Target]:
        """Every room *server* must join to send or receive along its routes.

        This is the union of the destinations of :meth:`edges_into` and the
        sources of :meth:`edges_out_of`.  All members live on *server*.
        """
        into = {e.destination for e in self.edges_into(server)}
        out_of = {e.source for e in self.edges_out_of(server)}
        return frozenset(into | out_of)

    def servers(self) -> tuple[str, ...]:
        """Every backend name the table references, in first-seen order."""
        seen: dict[str, None] = {}
        for edge in self._edges:
            seen.setdefault(edge.source.server)
            seen.setdefault(edge.destination.server)
        return tuple(seen)

    # ------------------------------------------------------------------
    # Container protocol
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[RouteEdge]:
        return iter(self._edges)

    def __len__(self) -> int:
        return len(self._edges)

    def __repr__(self) -> str:
        return f"RoutingTable({len(self._edges)} edges)"
