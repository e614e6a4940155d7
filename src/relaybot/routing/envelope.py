"""The in-flight unit moved from one backend to another.

An envelope is created by a backend's read loop with no destination, then
copied once per matching route with the destination filled in::

    inbound = MessageEnvelope(Target("irc1", "#x"), MessagePayload("alice", "hi"))
    outbound = inbound.addressed_to(Target("matrix1", "!room:x"))
    outbound.render()  # "(alice@irc1) hi"
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass

from relaybot.routing.target import Target


@dataclass(frozen=True, slots=True)
class MessagePayload:
    """Who said what."""

    sender: str
    text: str


@dataclass(frozen=True, slots=True)
class MessageEnvelope:
    """A chat message travelling between two targets.

    Attributes:
        source: Where the message was read.
        payload: Sender and text of the message.
        destination: Where the message is being written, or ``None`` while
            the envelope has not been routed yet.
    """

    source: Target
    payload: MessagePayload
    destination: Target | None = None

    def addressed_to(self, destination: Target) -> MessageEnvelope:
        """Return a copy of this envelope bound for *destination*."""
        return dataclasses.replace(self, destination=destination)

    def render(self) -> str:
        """Return the text delivered to the destination room."""
        return f"({self.payload.sender}@{self.source.server}) {self.payload.text}"
