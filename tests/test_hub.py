"""Tests for the realtime hub: admission, rooms, fan-out and cleanup."""
from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from callcenter.services.call_queue import CallQueue
from callcenter.services.credentials import CredentialService
from callcenter.services.hub import Connection, ConnectionState, RealtimeHub

SECRET = "hub-test-secret"
AGENT = "+15551234567"


class DummyTransport:
    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.closed = False

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    async def close(self) -> None:
        self.closed = True

    def events(self, name: str) -> list[dict]:
        return [message["data"] for message in self.messages if message["event"] == name]


class BrokenTransport(DummyTransport):
    async def send(self, message: dict) -> None:
        raise ConnectionResetError("peer went away")


class StalledTransport(DummyTransport):
    """Accepts the first send and never completes it, like a client that stopped reading."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def send(self, message: dict) -> None:
        await self.release.wait()


def make_hub(**kwargs) -> tuple[RealtimeHub, CredentialService]:
    credentials = CredentialService(SECRET)
    kwargs.setdefault("incoming_call_delay", 0)
    kwargs.setdefault("call_queue", CallQueue(seed=[]))
    return RealtimeHub(credentials, **kwargs), credentials


async def open_connection(
    hub: RealtimeHub, token: str | None = None, transport: DummyTransport | None = None
) -> tuple[Connection, DummyTransport]:
    transport = transport or DummyTransport()
    connection = await hub.connect(transport.send, token=token, close=transport.close)
    return connection, transport


async def flush(*connections: Connection) -> None:
    for connection in connections:
        await connection.flush()


@pytest.mark.asyncio
async def test_anonymous_connection_is_admitted_with_welcome():
    hub, _ = make_hub()

    connection, transport = await open_connection(hub)
    await flush(connection)

    assert connection.state is ConnectionState.OPEN
    assert connection.identity is None
    welcome = transport.events("welcome")[0]
    assert welcome["socketId"] == connection.connection_id
    assert welcome["authenticated"] is False
    assert welcome["user"] is None


@pytest.mark.asyncio
async def test_valid_token_sets_identity():
    hub, credentials = make_hub()
    token = credentials.issue(AGENT, {"verified": True}).token

    connection, transport = await open_connection(hub, token)
    await flush(connection)

    assert connection.identity == AGENT
    welcome = transport.events("welcome")[0]
    assert welcome["authenticated"] is True
    assert welcome["user"]["phoneNumber"] == AGENT


@pytest.mark.asyncio
async def test_invalid_token_is_admitted_anonymously():
    hub, _ = make_hub()
    forged = CredentialService("other-secret").issue(AGENT).token

    connection, _ = await open_connection(hub, forged)

    assert connection.state is ConnectionState.OPEN
    assert connection.identity is None


@pytest.mark.asyncio
async def test_join_and_leave_confirm_to_sender_only():
    hub, _ = make_hub()
    conn_a, transport_a = await open_connection(hub)
    conn_b, transport_b = await open_connection(hub)

    await hub.dispatch(conn_a.connection_id, "join-room", "lobby")
    await hub.dispatch(conn_a.connection_id, "leave-room", {"room": "lobby"})
    await flush(conn_a, conn_b)

    assert transport_a.events("room-joined") == [{"room": "lobby"}]
    assert transport_a.events("room-left") == [{"room": "lobby"}]
    assert transport_b.events("room-joined") == []
    assert "lobby" not in hub.rooms()


@pytest.mark.asyncio
async def test_anonymous_connection_gets_auth_required_without_state_change():
    hub, _ = make_hub()
    connection, transport = await open_connection(hub)
    await hub.dispatch(connection.connection_id, "join-room", "lobby")

    await hub.dispatch(connection.connection_id, "authenticated-event", {"ping": True})
    await hub.dispatch(connection.connection_id, "update-agent-status", {"status": "busy"})
    await flush(connection)

    errors = transport.events("error")
    assert [error["code"] for error in errors] == ["AuthRequired", "AuthRequired"]
    assert transport.events("agent-status-updated") == []
    assert connection.rooms == {"lobby"}
    assert connection.state is ConnectionState.OPEN


@pytest.mark.asyncio
async def test_authenticated_event_is_acknowledged():
    hub, credentials = make_hub()
    connection, transport = await open_connection(hub, credentials.issue(AGENT).token)

    await hub.dispatch(connection.connection_id, "authenticated-event", {"ping": True})
    await flush(connection)

    reply = transport.events("authenticated-event")[0]
    assert reply["user"] == AGENT
    assert reply["received"] == {"ping": True}


@pytest.mark.asyncio
async def test_bad_payloads_and_unknown_events_report_errors():
    hub, credentials = make_hub()
    connection, transport = await open_connection(hub, credentials.issue(AGENT).token)

    await hub.dispatch(connection.connection_id, "join-room", "")
    await hub.dispatch(connection.connection_id, "update-agent-status", "busy")
    await hub.dispatch(connection.connection_id, "accept-call", {})
    await hub.dispatch(connection.connection_id, "fly-to-moon", {})
    await flush(connection)

    codes = [error["code"] for error in transport.events("error")]
    assert codes == ["BadPayload", "BadPayload", "BadPayload", "UnknownEvent"]
    assert connection.state is ConnectionState.OPEN


@pytest.mark.asyncio
async def test_room_broadcast_reaches_remaining_members_and_room_is_collected():
    hub, _ = make_hub()
    opened = [await open_connection(hub) for _ in range(4)]
    for connection, _ in opened:
        await hub.join(connection.connection_id, "R")

    leaver = opened[0][0]
    await hub.leave(leaver.connection_id, "R")
    delivered = await hub.broadcast_room("R", "queue-updated", {"length": 0})
    await flush(*(connection for connection, _ in opened))

    assert delivered == 3
    assert opened[0][1].events("queue-updated") == []
    assert all(transport.events("queue-updated") for _, transport in opened[1:])

    for connection, _ in opened[1:]:
        await hub.leave(connection.connection_id, "R")

    assert "R" not in hub.rooms()
    assert await hub.broadcast_room("R", "queue-updated", {}) == 0


@pytest.mark.asyncio
async def test_agent_status_update_reaches_every_open_connection():
    hub, credentials = make_hub()
    agent, agent_transport = await open_connection(hub, credentials.issue(AGENT).token)
    observer, observer_transport = await open_connection(hub)

    await hub.dispatch(agent.connection_id, "update-agent-status", {"status": "busy"})
    await flush(agent, observer)

    for transport in (agent_transport, observer_transport):
        (update,) = transport.events("agent-status-updated")
        assert update["agentId"] == AGENT
        assert update["status"] == "busy"
        datetime.fromisoformat(update["timestamp"])


@pytest.mark.asyncio
async def test_disconnect_releases_all_rooms():
    hub, _ = make_hub()
    leaving, leaving_transport = await open_connection(hub)
    staying, staying_transport = await open_connection(hub)
    for room in ("lobby", "team-1"):
        await hub.join(leaving.connection_id, room)
    await hub.join(staying.connection_id, "lobby")

    assert await hub.disconnect(leaving.connection_id)
    delivered = await hub.broadcast_room("lobby", "call-ended", {"callId": "c-1"})
    await flush(staying)

    assert delivered == 1
    assert leaving.state is ConnectionState.CLOSED
    assert leaving_transport.events("call-ended") == []
    assert staying_transport.events("call-ended") == [{"callId": "c-1"}]
    assert leaving.connection_id not in hub.members("team-1")
    assert "team-1" not in hub.rooms()
    assert leaving.writer.cancelled() or leaving.writer.done()
    assert not await hub.disconnect(leaving.connection_id)


@pytest.mark.asyncio
async def test_kick_closes_transport_and_cleans_up():
    hub, _ = make_hub()
    connection, transport = await open_connection(hub)
    await hub.join(connection.connection_id, "lobby")

    assert await hub.kick(connection.connection_id)

    assert transport.closed
    assert hub.connection_count == 0
    assert hub.rooms() == {}


@pytest.mark.asyncio
async def test_unicast_targets_one_connection():
    hub, _ = make_hub()
    conn_a, transport_a = await open_connection(hub)
    conn_b, transport_b = await open_connection(hub)

    assert await hub.unicast(conn_b.connection_id, "call-incoming", {"id": "c-9"})
    assert not await hub.unicast("missing", "call-incoming", {"id": "c-9"})
    await flush(conn_a, conn_b)

    assert transport_a.events("call-incoming") == []
    assert transport_b.events("call-incoming") == [{"id": "c-9"}]


@pytest.mark.asyncio
async def test_broken_transport_does_not_affect_others():
    hub, _ = make_hub()
    broken, _ = await open_connection(hub, transport=BrokenTransport())
    healthy, healthy_transport = await open_connection(hub)

    delivered = await hub.broadcast("agent-status-updated", {"status": "away"})
    await flush(broken, healthy)

    assert delivered == 2
    assert healthy_transport.events("agent-status-updated") == [{"status": "away"}]
    assert broken.state is ConnectionState.OPEN


@pytest.mark.asyncio
async def test_stalled_client_outbox_stays_bounded():
    hub, _ = make_hub(outbox_size=8)
    stalled, _ = await open_connection(hub, transport=StalledTransport())
    healthy, healthy_transport = await open_connection(hub)

    for index in range(100):
        await hub.broadcast("queue-updated", {"seq": index})
        await flush(healthy)

    assert stalled.outbox.qsize() <= 8
    assert stalled.dropped > 0
    assert stalled.state is ConnectionState.OPEN
    assert [data["seq"] for data in healthy_transport.events("queue-updated")] == list(range(100))

    assert await hub.disconnect(stalled.connection_id)
    assert stalled.outbox.empty()


@pytest.mark.asyncio
async def test_per_connection_order_is_preserved():
    hub, _ = make_hub()
    connection, transport = await open_connection(hub)

    for index in range(20):
        await hub.unicast(connection.connection_id, "queue-updated", {"seq": index})
    await flush(connection)

    assert [data["seq"] for data in transport.events("queue-updated")] == list(range(20))


@pytest.mark.asyncio
async def test_concurrent_join_leave_disconnect_keeps_index_consistent():
    hub, _ = make_hub()
    opened = [await open_connection(hub) for _ in range(10)]
    ids = [connection.connection_id for connection, _ in opened]

    await asyncio.gather(
        *(hub.join(cid, "lobby") for cid in ids),
        *(hub.join(cid, "team-1") for cid in ids[:5]),
        *(hub.broadcast_room("lobby", "queue-updated", {}) for _ in range(5)),
    )
    await asyncio.gather(
        *(hub.disconnect(cid) for cid in ids[:3]),
        *(hub.leave(cid, "team-1") for cid in ids[3:5]),
        *(hub.broadcast_room("lobby", "queue-updated", {}) for _ in range(5)),
    )

    assert hub.members("lobby") == frozenset(ids[3:])
    assert "team-1" not in hub.rooms()
    assert hub.connection_count == 7


@pytest.mark.asyncio
async def test_call_lifecycle_events_update_queue():
    queue = CallQueue(seed=[])
    hub, credentials = make_hub(call_queue=queue)
    agent, transport = await open_connection(hub, credentials.issue(AGENT).token)

    await hub.dispatch(agent.connection_id, "test-incoming-call", {"callId": "call-77", "from": "+15557654321"})
    assert "call-77" in queue

    await hub.dispatch(agent.connection_id, "accept-call", {"callId": "call-77"})
    await hub.dispatch(agent.connection_id, "transfer-call", {"callId": "call-77", "targetAgentId": "+15550001111"})
    await hub.dispatch(agent.connection_id, "end-call", {"callId": "call-77", "duration": 42})
    await flush(agent)

    assert transport.events("call-incoming")[0]["from"] == "+15557654321"
    connected = transport.events("call-connected")[0]
    assert connected["callId"] == "call-77" and connected["from"] == "+15557654321"
    assert transport.events("call-transferred")[0]["targetAgentId"] == "+15550001111"
    assert transport.events("call-ended")[0]["duration"] == 42
    assert transport.events("queue-updated")[-1]["length"] == 0
    assert "call-77" not in queue


@pytest.mark.asyncio
async def test_simulated_incoming_call_fires_for_authenticated_connection():
    hub, credentials = make_hub(incoming_call_delay=0.01)
    agent, agent_transport = await open_connection(hub, credentials.issue(AGENT).token)
    anonymous, anonymous_transport = await open_connection(hub)

    await asyncio.sleep(0.05)
    await flush(agent, anonymous)

    assert len(agent_transport.events("call-incoming")) == 1
    assert anonymous_transport.events("call-incoming") == []
    assert len(hub.call_queue) == 1


@pytest.mark.asyncio
async def test_simulated_incoming_call_is_cancelled_on_close():
    hub, credentials = make_hub(incoming_call_delay=0.05)
    agent, transport = await open_connection(hub, credentials.issue(AGENT).token)
    (scheduled,) = agent.tasks

    await hub.disconnect(agent.connection_id)
    await asyncio.sleep(0.1)

    assert scheduled.cancelled()
    assert transport.events("call-incoming") == []
    assert len(hub.call_queue) == 0
