"""Targets, route edges, the routing table and the message envelope.

Public API:
    :class:`Target` -- a room on a named backend.
    :class:`RouteEdge` -- a directed forwarding rule.
    :class:`RoutingTable` -- query engine over the ordered edges.
    :class:`MessagePayload`, :class:`MessageEnvelope` -- the in-flight message.
"""

from relaybot.routing.envelope import MessageEnvelope, MessagePayload
from relaybot.routing.table import RoutingTable
from relaybot.routing.target import RouteEdge, Target

__all__ = [
    "MessageEnvelope",
    "MessagePayload",
    "RouteEdge",
    "RoutingTable",
    "Target",
]
