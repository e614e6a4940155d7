"""relaybot: relay chat messages between rooms on different chat networks."""

from relaybot.routing import MessageEnvelope, MessagePayload, RouteEdge, RoutingTable, Target
from relaybot.supervisor import Supervisor

__version__ = "0.1.0"

__all__ = [
    "MessageEnvelope",
    "MessagePayload",
    "RouteEdge",
    "RoutingTable",
    "Supervisor",
    "Target",
]
