"""Shared fixtures for the relaybot test suite."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Iterable

import pytest

from relaybot.backends.base import BackendBase, BackendState, EnvelopeQueue
from relaybot.routing import MessageEnvelope, RouteEdge, RoutingTable, Target


class FakeBackend(BackendBase):
    """In-memory backend driven by the test.

    ``inbound`` holds ``(room, sender, text)`` tuples emitted as soon as
    :meth:`read` starts.  Setting one of the ``*_error`` attributes makes the
    matching call raise it.
    """

    def __init__(self, name: str, inbound: Iterable[tuple[str, str, str]] = ()) -> None:
        super().__init__(name)
        self.inbound = list(inbound)
        self.calls: list[str] = []
        self.written: list[MessageEnvelope] = []
        self.joined: frozenset[Target] = frozenset()
        self.connect_error: Exception | None = None
        self.join_error: Exception | None = None
        self.read_error: Exception | None = None
        self.write_error: Exception | None = None
        self.close_count = 0
        self.cancelled = False
        self.read_started = asyncio.Event()

    async def connect(self) -> None:
        self.calls.append("connect")
        if self.connect_error is not None:
            self._fail()
            raise self.connect_error
        self.state = BackendState.CONNECTED

    async def set_targets(self, targets) -> None:
        self.calls.append("set_targets")
        self.joined = frozenset(targets)
        self._remember_targets(self.joined)
        if self.join_error is not None:
            raise self.join_error
        self.state = BackendState.JOINED

    async def read(self, cancel: asyncio.Event, queue: EnvelopeQueue) -> None:
        self.calls.append("read")
        for room, sender, text in self.inbound:
            self._enqueue(queue, room, sender, text)
        self.read_started.set()
        if self.read_error is not None:
            raise self.read_error
        try:
            await self._wait_cancelled(cancel)
        except Exception:
            self.cancelled = True
            raise

    async def write(self, envelope: MessageEnvelope) -> None:
        self.calls.append("write")
        if self.write_error is not None:
            raise self.write_error
        self.written.append(envelope)

    async def close(self) -> None:
        self.close_count += 1
        self.state = BackendState.CLOSED


def edge(src_server: str, src_room: str, dst_server: str, dst_room: str) -> RouteEdge:
    return RouteEdge(Target(src_server, src_room), Target(dst_server, dst_room))


@pytest.fixture
def make_backend():
    """Factory for :class:`FakeBackend` instances."""
    return FakeBackend


@pytest.fixture
def sample_table():
    """irc1 <-> matrix1 bridge plus a one-way feed into discord1."""
    return RoutingTable([
        edge("irc1", "#general", "matrix1", "!room:x"),
        edge("matrix1", "!room:x", "irc1", "#general"),
        edge("irc1", "#general", "discord1", "1234"),
        edge("irc1", "#ops", "matrix1", "!ops:x"),
    ])


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch, tmp_path):
    """Keep the developer's RELAY_* variables and relaybot.toml out of tests."""
    for key in list(os.environ):
        if key.startswith("RELAY_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("RELAY_CONFIG_FILE", str(tmp_path / "absent.toml"))

    from relaybot.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
