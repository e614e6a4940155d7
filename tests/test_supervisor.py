"""Tests for the supervisor: startup, routing, fan-out and shutdown."""

import asyncio

import pytest
from conftest import FakeBackend, edge

from relaybot.config import RelaySettings
from relaybot.errors import ConfigurationError, ConnectError, JoinError, ReadError
from relaybot.routing import MessageEnvelope, MessagePayload, RoutingTable, Target
from relaybot.supervisor import Supervisor

_TIMEOUT = 2.0


async def _run_until_read(supervisor, *backends):
    """Start the relay, wait for every read loop, then cancel it."""
    cancel = asyncio.Event()
    task = asyncio.create_task(supervisor.start(cancel))
    await asyncio.wait_for(
        asyncio.gather(*(b.read_started.wait() for b in backends)), _TIMEOUT,
    )
    cancel.set()
    return await asyncio.wait_for(task, _TIMEOUT)


def _relay_tasks():
    return [
        t for t in asyncio.all_tasks()
        if t.get_name().startswith(("read-", "route-", "relay-"))
    ]


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_unknown_server_in_routes_raises():
    table = RoutingTable([edge("irc1", "#a", "ghost", "!r")])
    with pytest.raises(ConfigurationError, match="ghost"):
        Supervisor([FakeBackend("irc1")], table)


def test_duplicate_backend_names_raise():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        Supervisor([FakeBackend("irc1"), FakeBackend("irc1")], RoutingTable())


def test_from_settings_uses_given_factories():
    settings = RelaySettings(
        servers={"irc": {"irc1": {"host": "irc.test"}}},
        mappings=[{"from": {"server": "irc1", "name": "#a"}, "to": {"server": "irc1", "name": "#b"}}],
    )
    supervisor = Supervisor.from_settings(
        settings, {"irc": lambda name, config, debug=False: FakeBackend(name)},
    )
    assert list(supervisor.backends) == ["irc1"]
    assert len(supervisor.table) == 1


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_single_route_scenario():
    irc = FakeBackend("irc1", inbound=[("#general", "alice", "hello")])
    matrix = FakeBackend("matrix1")
    table = RoutingTable([edge("irc1", "#general", "matrix1", "!room:x")])
    supervisor = Supervisor([irc, matrix], table)

    await _run_until_read(supervisor, irc, matrix)

    assert len(matrix.written) == 1
    sent = matrix.written[0]
    assert sent.destination == Target("matrix1", "!room:x")
    assert sent.render() == "(alice@irc1) hello"
    assert irc.written == []


@pytest.mark.asyncio
async def test_setup_joins_computed_targets(make_backend, sample_table):
    backends = [make_backend(n) for n in ("irc1", "matrix1", "discord1")]
    supervisor = Supervisor(backends, sample_table)

    await _run_until_read(supervisor, *backends)

    for backend in backends:
        assert backend.joined == sample_table.joined_targets(backend.name)
        assert backend.calls[:3] == ["connect", "set_targets", "read"]


@pytest.mark.asyncio
async def test_fan_out_writes_once_per_edge():
    irc = FakeBackend("irc1", inbound=[("#a", "alice", "hi")])
    matrix = FakeBackend("matrix1")
    discord = FakeBackend("discord1")
    table = RoutingTable([
        edge("irc1", "#a", "matrix1", "!one:x"),
        edge("irc1", "#a", "matrix1", "!two:x"),
        edge("irc1", "#a", "discord1", "42"),
        edge("irc1", "#b", "discord1", "43"),
    ])
    supervisor = Supervisor([irc, matrix, discord], table)

    await _run_until_read(supervisor, irc, matrix, discord)

    assert [e.destination.name for e in matrix.written] == ["!one:x", "!two:x"]
    assert [e.destination.name for e in discord.written] == ["42"]


@pytest.mark.asyncio
async def test_messages_routed_in_read_order():
    inbound = [("#a", "alice", str(i)) for i in range(20)]
    irc = FakeBackend("irc1", inbound=inbound)
    matrix = FakeBackend("matrix1")
    supervisor = Supervisor([irc, matrix], RoutingTable([edge("irc1", "#a", "matrix1", "!r:x")]))

    await _run_until_read(supervisor, irc, matrix)

    assert [e.payload.text for e in matrix.written] == [str(i) for i in range(20)]


@pytest.mark.asyncio
async def test_write_failure_does_not_stop_other_edges_or_messages():
    irc = FakeBackend("irc1", inbound=[("#a", "alice", "one"), ("#a", "bob", "two")])
    broken = FakeBackend("matrix1")
    broken.write_error = RuntimeError("homeserver down")
    discord = FakeBackend("discord1")
    table = RoutingTable([
        edge("irc1", "#a", "matrix1", "!r:x"),
        edge("irc1", "#a", "discord1", "42"),
    ])
    supervisor = Supervisor([irc, broken, discord], table)

    await _run_until_read(supervisor, irc, broken, discord)

    assert broken.calls.count("write") == 2
    assert [e.payload.text for e in discord.written] == ["one", "two"]


@pytest.mark.asyncio
async def test_routing_error_is_logged_and_later_messages_still_routed(caplog):
    irc = FakeBackend("irc1", inbound=[("#a", "alice", "one"), ("#a", "bob", "two")])
    matrix = FakeBackend("matrix1")
    supervisor = Supervisor([irc, matrix], RoutingTable([edge("irc1", "#a", "matrix1", "!r:x")]))
    route = supervisor.route

    async def flaky_route(envelope):
        if envelope.payload.text == "one":
            raise RuntimeError("table exploded")
        return await route(envelope)

    supervisor.route = flaky_route

    await _run_until_read(supervisor, irc, matrix)

    assert [e.payload.text for e in matrix.written] == ["two"]
    assert "Failed to route message from [#a]" in caplog.text
    assert _relay_tasks() == []


@pytest.mark.asyncio
async def test_route_returns_successful_write_count():
    matrix = FakeBackend("matrix1")
    broken = FakeBackend("discord1")
    broken.write_error = RuntimeError("nope")
    table = RoutingTable([
        edge("irc1", "#a", "matrix1", "!r:x"),
        edge("irc1", "#a", "discord1", "42"),
    ])
    supervisor = Supervisor([FakeBackend("irc1"), matrix, broken], table)
    envelope = MessageEnvelope(Target("irc1", "#a"), MessagePayload("alice", "hi"))

    assert await supervisor.route(envelope) == 1
    assert await supervisor.route(MessageEnvelope(Target("irc1", "#z"), envelope.payload)) == 0


@pytest.mark.asyncio
async def test_self_loop_is_relayed():
    irc = FakeBackend("irc1", inbound=[("#a", "alice", "echo")])
    supervisor = Supervisor([irc], RoutingTable([edge("irc1", "#a", "irc1", "#a")]))

    await _run_until_read(supervisor, irc)

    assert [e.destination for e in irc.written] == [Target("irc1", "#a")]


# ---------------------------------------------------------------------------
# Startup failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_failure_aborts_and_releases_connected_backends():
    first, second, third = FakeBackend("b1"), FakeBackend("b2"), FakeBackend("b3")
    second.connect_error = RuntimeError("handshake refused")
    supervisor = Supervisor([first, second, third], RoutingTable())

    with pytest.raises(ConnectError, match="b2") as excinfo:
        await supervisor.start()

    assert excinfo.value.backend == "b2"
    assert "handshake refused" in str(excinfo.value)
    assert first.calls == ["connect"]
    assert first.close_count >= 1
    assert third.calls == []


@pytest.mark.asyncio
async def test_join_failure_aborts_and_closes_everything():
    first, second = FakeBackend("b1"), FakeBackend("b2")
    second.join_error = JoinError("b2", "room is invite-only")
    supervisor = Supervisor([first, second], RoutingTable())

    with pytest.raises(JoinError, match="invite-only"):
        await supervisor.start()

    assert "read" not in first.calls
    assert first.close_count >= 1
    assert second.close_count >= 1


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancellation_stops_every_read_and_routing_task(make_backend, sample_table):
    backends = [make_backend(n) for n in ("irc1", "matrix1", "discord1")]
    supervisor = Supervisor(backends, sample_table)

    result = await _run_until_read(supervisor, *backends)

    assert result is None
    assert all(b.cancelled for b in backends)
    assert all(b.close_count >= 1 for b in backends)
    assert _relay_tasks() == []


@pytest.mark.asyncio
async def test_read_failure_cancels_others_and_is_raised():
    failing = FakeBackend("irc1")
    failing.read_error = RuntimeError("connection reset")
    healthy = FakeBackend("matrix1")
    supervisor = Supervisor([failing, healthy], RoutingTable())

    with pytest.raises(ReadError, match="connection reset") as excinfo:
        await asyncio.wait_for(supervisor.start(asyncio.Event()), _TIMEOUT)

    assert excinfo.value.backend == "irc1"
    assert healthy.cancelled is True
    assert _relay_tasks() == []


@pytest.mark.asyncio
async def test_messages_read_before_failure_are_still_routed():
    failing = FakeBackend("irc1", inbound=[("#a", "alice", "last words")])
    failing.read_error = RuntimeError("boom")
    matrix = FakeBackend("matrix1")
    supervisor = Supervisor([failing, matrix], RoutingTable([edge("irc1", "#a", "matrix1", "!r:x")]))

    with pytest.raises(ReadError):
        await asyncio.wait_for(supervisor.start(), _TIMEOUT)

    assert [e.payload.text for e in matrix.written] == ["last words"]


@pytest.mark.asyncio
async def test_cancelling_start_task_shuts_down_cleanly():
    irc, matrix = FakeBackend("irc1"), FakeBackend("matrix1")
    supervisor = Supervisor([irc, matrix], RoutingTable())
    task = asyncio.create_task(supervisor.start())
    await asyncio.wait_for(
        asyncio.gather(irc.read_started.wait(), matrix.read_started.wait()), _TIMEOUT,
    )

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert irc.cancelled and matrix.cancelled
    assert irc.close_count >= 1 and matrix.close_count >= 1
    assert _relay_tasks() == []


@pytest.mark.asyncio
async def test_no_backends_returns_immediately():
    await asyncio.wait_for(Supervisor([], RoutingTable()).start(), _TIMEOUT)
