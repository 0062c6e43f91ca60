"""In-memory realtime hub: connection auth, rooms and event fan-out.

Each connection owns an outbound queue drained by a single writer task, so a
connection receives messages in the order they were queued. Room and
connection tables are mutated only under ``RealtimeHub._lock``; broadcasts
enqueue while holding the lock, so a closing connection either gets the whole
message queued or is skipped entirely.

Outboxes are bounded. When a client stops reading, messages for it are dropped
once its outbox is full; delivery is best-effort.

State is per process. Running several workers gives several independent hubs.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping
from uuid import uuid4

from .call_queue import CallQueue
from .credentials import Claims, CredentialService

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]
CloseCallable = Callable[[], Awaitable[None]]

CALL_CENTER_ROOM = "call-center"
MAX_ROOM_NAME_LENGTH = 128
DEFAULT_OUTBOX_SIZE = 256


class Event(str, enum.Enum):
    # client -> hub
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    JOIN_CALL_CENTER = "join-call-center"
    UPDATE_AGENT_STATUS = "update-agent-status"
    ACCEPT_CALL = "accept-call"
    END_CALL = "end-call"
    TRANSFER_CALL = "transfer-call"
    TEST_INCOMING_CALL = "test-incoming-call"
    AUTHENTICATED_EVENT = "authenticated-event"
    CLIENT_READY = "client-ready"
    # hub -> client
    WELCOME = "welcome"
    ROOM_JOINED = "room-joined"
    ROOM_LEFT = "room-left"
    AGENT_STATUS_UPDATED = "agent-status-updated"
    CALL_INCOMING = "call-incoming"
    CALL_CONNECTED = "call-connected"
    CALL_ENDED = "call-ended"
    CALL_TRANSFERRED = "call-transferred"
    QUEUE_UPDATED = "queue-updated"
    ERROR = "error"


class ErrorCode(str, enum.Enum):
    AUTH_REQUIRED = "AuthRequired"
    BAD_PAYLOAD = "BadPayload"
    UNKNOWN_EVENT = "UnknownEvent"
    INTERNAL = "Internal"


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    OPEN = "open"
    CLOSED = "closed"


class HubEventError(Exception):
    """Raised by an event handler to report a problem back to the sender only."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def make_message(event: Event | str, data: Any = None) -> dict:
    name = event.value if isinstance(event, Event) else event
    return {"event": name, "data": data}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(eq=False)
class Connection:
    """One live streaming session."""

    connection_id: str
    send: SendCallable
    close_transport: CloseCallable | None = None
    state: ConnectionState = ConnectionState.CONNECTING
    claims: Claims | None = None
    rooms: set[str] = field(default_factory=set)
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=DEFAULT_OUTBOX_SIZE))
    tasks: set[asyncio.Task] = field(default_factory=set)
    writer: asyncio.Task | None = None
    dropped: int = 0

    @property
    def identity(self) -> str | None:
        return self.claims.identity if self.claims is not None else None

    @property
    def authenticated(self) -> bool:
        return self.claims is not None

    def enqueue(self, message: dict) -> bool:
        """Queue ``message`` for the writer; a full outbox drops it."""

        if self.state is not ConnectionState.OPEN:
            return False
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1:
                logger.warning(
                    "Outbox full for %s; dropping messages until the client catches up", self.connection_id
                )
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued message has been handed to the transport."""

        await self.outbox.join()


EventHandler = Callable[[Connection, Any], Awaitable[None]]


class RealtimeHub:
    """Track streaming connections and route events between them."""

    def __init__(
        self,
        credentials: CredentialService,
        *,
        call_queue: CallQueue | None = None,
        incoming_call_delay: float = 5.0,
        outbox_size: int = DEFAULT_OUTBOX_SIZE,
    ) -> None:
        self._credentials = credentials
        self._queue = call_queue if call_queue is not None else CallQueue()
        self._incoming_call_delay = incoming_call_delay
        self._outbox_size = outbox_size
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, set[str]] = {}
        self._lock = asyncio.Lock()
        self._handlers: Dict[str, tuple[EventHandler, bool]] = {
            Event.JOIN_ROOM.value: (self._on_join_room, False),
            Event.LEAVE_ROOM.value: (self._on_leave_room, False),
            Event.CLIENT_READY.value: (self._on_client_ready, False),
            Event.JOIN_CALL_CENTER.value: (self._on_join_call_center, True),
            Event.UPDATE_AGENT_STATUS.value: (self._on_update_agent_status, True),
            Event.ACCEPT_CALL.value: (self._on_accept_call, True),
            Event.END_CALL.value: (self._on_end_call, True),
            Event.TRANSFER_CALL.value: (self._on_transfer_call, True),
            Event.TEST_INCOMING_CALL.value: (self._on_test_incoming_call, True),
            Event.AUTHENTICATED_EVENT.value: (self._on_authenticated_event, True),
        }

    @property
    def call_queue(self) -> CallQueue:
        return self._queue

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get_connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def members(self, room: str) -> frozenset[str]:
        return frozenset(self._rooms.get(room, ()))

    def rooms(self) -> dict[str, frozenset[str]]:
        return {name: frozenset(members) for name, members in self._rooms.items()}

    # -- lifecycle -----------------------------------------------------------------

    async def connect(
        self,
        send: SendCallable,
        *,
        token: str | None = None,
        close: CloseCallable | None = None,
        connection_id: str | None = None,
    ) -> Connection:
        """Admit a transport that finished its handshake.

        A missing or invalid token still admits the connection, just without an
        identity; authenticated-only events are refused later, per event.
        """

        connection = Connection(
            connection_id=connection_id or uuid4().hex,
            send=send,
            close_transport=close,
            outbox=asyncio.Queue(maxsize=self._outbox_size),
        )
        connection.state = ConnectionState.AUTHENTICATING

        if token:
            result = self._credentials.validate(token)
            if result.ok:
                connection.claims = result.claims
            else:
                logger.info(
                    "Connection %s presented an unusable credential (%s); admitting anonymously",
                    connection.connection_id,
                    result.reason.value if result.reason else "unknown",
                )

        async with self._lock:
            if connection.connection_id in self._connections:
                raise ValueError(f"Duplicate connection id {connection.connection_id}")
            self._connections[connection.connection_id] = connection
            connection.state = ConnectionState.OPEN

        connection.writer = asyncio.create_task(
            self._write_loop(connection), name=f"hub-writer-{connection.connection_id}"
        )
        connection.enqueue(
            make_message(
                Event.WELCOME,
                {
                    "message": "Connected to call center server",
                    "socketId": connection.connection_id,
                    "authenticated": connection.authenticated,
                    "user": connection.claims.to_payload() if connection.claims else None,
                },
            )
        )
        logger.info(
            "Connection %s opened (identity=%s, total=%d)",
            connection.connection_id,
            connection.identity,
            len(self._connections),
        )

        if connection.authenticated and self._incoming_call_delay > 0:
            self._spawn(connection, self._simulate_incoming_call(connection.connection_id))
        return connection

    async def disconnect(self, connection_id: str) -> bool:
        """Close a connection and release every room membership it held."""

        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return False
            connection.state = ConnectionState.CLOSED
            for room in connection.rooms:
                self._discard_member(room, connection_id)
            released = sorted(connection.rooms)
            connection.rooms.clear()

        await self._cancel_tasks(connection)
        logger.info(
            "Connection %s closed (rooms released=%s, total=%d)",
            connection_id,
            released,
            len(self._connections),
        )
        return True

    async def kick(self, connection_id: str) -> bool:
        """Close the transport from the server side, then clean up."""

        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        if connection.close_transport is not None:
            try:
                await connection.close_transport()
            except Exception:  # noqa: BLE001 - transport may already be gone
                logger.warning("Closing transport for %s failed", connection_id, exc_info=True)
        return await self.disconnect(connection_id)

    async def shutdown(self) -> None:
        for connection_id in list(self._connections):
            await self.kick(connection_id)

    # -- membership ----------------------------------------------------------------

    async def join(self, connection_id: str, room: str) -> bool:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None or connection.state is not ConnectionState.OPEN:
                return False
            self._rooms.setdefault(room, set()).add(connection_id)
            connection.rooms.add(room)
        logger.info("Connection %s joined room %s", connection_id, room)
        return True

    async def leave(self, connection_id: str, room: str) -> bool:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            connection.rooms.discard(room)
            self._discard_member(room, connection_id)
        logger.info("Connection %s left room %s", connection_id, room)
        return True

    def _discard_member(self, room: str, connection_id: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[room]

    # -- delivery --------------------------------------------------------------------

    async def broadcast(self, event: Event | str, payload: Any, *, exclude: str | None = None) -> int:
        """Queue ``event`` for every open connection; returns the recipient count."""

        message = make_message(event, payload)
        async with self._lock:
            return sum(
                1
                for connection_id, connection in self._connections.items()
                if connection_id != exclude and connection.enqueue(message)
            )

    async def broadcast_room(
        self, room: str, event: Event | str, payload: Any, *, exclude: str | None = None
    ) -> int:
        message = make_message(event, payload)
        async with self._lock:
            delivered = 0
            for connection_id in self._rooms.get(room, ()):
                connection = self._connections.get(connection_id)
                if connection_id != exclude and connection is not None and connection.enqueue(message):
                    delivered += 1
            return delivered

    async def unicast(self, connection_id: str, event: Event | str, payload: Any) -> bool:
        async with self._lock:
            connection = self._connections.get(connection_id)
            return connection is not None and connection.enqueue(make_message(event, payload))

    async def _write_loop(self, connection: Connection) -> None:
        while True:
            message = await connection.outbox.get()
            try:
                await connection.send(message)
            except Exception:  # noqa: BLE001 - best-effort delivery, the transport may be gone
                logger.debug("Dropping %s for %s", message.get("event"), connection.connection_id, exc_info=True)
            finally:
                connection.outbox.task_done()

    # -- inbound events --------------------------------------------------------------

    async def dispatch(self, connection_id: str, event: str, data: Any = None) -> None:
        """Handle one inbound event; problems are reported to the sender only."""

        connection = self._connections.get(connection_id)
        if connection is None or connection.state is not ConnectionState.OPEN:
            return

        entry = self._handlers.get(event)
        if entry is None:
            self.report_error(connection_id, ErrorCode.UNKNOWN_EVENT, f"Unknown event: {event}", event=event)
            return

        handler, requires_auth = entry
        if requires_auth and not connection.authenticated:
            self.report_error(
                connection_id, ErrorCode.AUTH_REQUIRED, "Authentication required for this action", event=event
            )
            return

        try:
            await handler(connection, data)
        except HubEventError as exc:
            self.report_error(connection_id, exc.code, exc.message, event=event)
        except Exception:  # noqa: BLE001 - one bad event must not take the hub down
            logger.exception("Handling %s from %s failed", event, connection_id)
            self.report_error(connection_id, ErrorCode.INTERNAL, "Failed to process event", event=event)

    def report_error(
        self, connection_id: str, code: ErrorCode, message: str, *, event: str | None = None
    ) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        logger.info("Rejecting %s from %s: %s", event or "message", connection_id, code.value)
        payload: dict[str, Any] = {"message": message, "code": code.value}
        if event is not None:
            payload["event"] = event
        connection.enqueue(make_message(Event.ERROR, payload))

    async def _on_join_room(self, connection: Connection, data: Any) -> None:
        room = _room_name(data)
        await self.join(connection.connection_id, room)
        connection.enqueue(make_message(Event.ROOM_JOINED, {"room": room}))

    async def _on_leave_room(self, connection: Connection, data: Any) -> None:
        room = _room_name(data)
        await self.leave(connection.connection_id, room)
        connection.enqueue(make_message(Event.ROOM_LEFT, {"room": room}))

    async def _on_client_ready(self, connection: Connection, data: Any) -> None:
        logger.debug("Connection %s reported ready", connection.connection_id)

    async def _on_join_call_center(self, connection: Connection, data: Any) -> None:
        await self.join(connection.connection_id, CALL_CENTER_ROOM)
        connection.enqueue(
            make_message(Event.ROOM_JOINED, {"room": CALL_CENTER_ROOM, "agentId": connection.identity})
        )

    async def _on_update_agent_status(self, connection: Connection, data: Any) -> None:
        status = _require_str(data, "status")
        await self.update_agent_status(connection.identity or "", status)

    async def _on_accept_call(self, connection: Connection, data: Any) -> None:
        await self.accept_call(connection.identity or "", _require_str(data, "callId"))

    async def _on_end_call(self, connection: Connection, data: Any) -> None:
        call_id = _require_str(data, "callId")
        await self.end_call(connection.identity or "", call_id, duration=_optional(data, "duration"))

    async def _on_transfer_call(self, connection: Connection, data: Any) -> None:
        call_id = _require_str(data, "callId")
        target = _require_str(data, "targetAgentId")
        await self.transfer_call(connection.identity or "", call_id, target, reason=_optional(data, "reason"))

    async def _on_test_incoming_call(self, connection: Connection, data: Any) -> None:
        caller = _optional(data, "from")
        call_id = _optional(data, "callId")
        await self.incoming_call(
            caller=caller if isinstance(caller, str) else None,
            call_id=call_id if isinstance(call_id, str) else None,
        )

    async def _on_authenticated_event(self, connection: Connection, data: Any) -> None:
        connection.enqueue(
            make_message(
                Event.AUTHENTICATED_EVENT,
                {"user": connection.identity, "received": data, "timestamp": _timestamp()},
            )
        )

    # -- call lifecycle ----------------------------------------------------------------

    async def update_agent_status(self, agent_id: str, status: str) -> dict[str, Any]:
        payload = {"agentId": agent_id, "status": status, "timestamp": _timestamp()}
        await self.broadcast(Event.AGENT_STATUS_UPDATED, payload)
        return payload

    async def accept_call(self, agent_id: str, call_id: str) -> dict[str, Any]:
        queued = self._queue.take(call_id)
        payload: dict[str, Any] = {
            "id": call_id,
            "callId": call_id,
            "agentId": agent_id,
            "status": "connected",
            "timestamp": _timestamp(),
        }
        if queued is not None:
            payload["from"] = queued.caller
        await self.broadcast(Event.CALL_CONNECTED, payload)
        if queued is not None:
            await self.publish_queue()
        return payload

    async def end_call(self, agent_id: str, call_id: str, *, duration: Any = None) -> dict[str, Any]:
        queued = self._queue.take(call_id)
        payload: dict[str, Any] = {
            "id": call_id,
            "callId": call_id,
            "agentId": agent_id,
            "status": "ended",
            "timestamp": _timestamp(),
        }
        if isinstance(duration, (int, float)) and not isinstance(duration, bool):
            payload["duration"] = duration
        await self.broadcast(Event.CALL_ENDED, payload)
        if queued is not None:
            await self.publish_queue()
        return payload

    async def transfer_call(
        self, agent_id: str, call_id: str, target_agent_id: str, *, reason: Any = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "callId": call_id,
            "agentId": agent_id,
            "targetAgentId": target_agent_id,
            "status": "transferred",
            "timestamp": _timestamp(),
        }
        if isinstance(reason, str) and reason:
            payload["reason"] = reason
        await self.broadcast(Event.CALL_TRANSFERRED, payload)
        return payload

    async def incoming_call(
        self,
        *,
        caller: str | None = None,
        call_id: str | None = None,
        target: str | None = None,
    ) -> dict[str, Any] | None:
        """Queue a simulated call and announce it to ``target`` or to everyone."""

        if target is not None and target not in self._connections:
            return None
        call = self._queue.new_call(caller, call_id=call_id)
        payload = call.to_payload()
        payload["callId"] = call.id
        if target is not None:
            await self.unicast(target, Event.CALL_INCOMING, payload)
        else:
            await self.broadcast(Event.CALL_INCOMING, payload)
        await self.publish_queue()
        return payload

    async def publish_queue(self) -> None:
        await self.broadcast(Event.QUEUE_UPDATED, self._queue.snapshot())

    async def _simulate_incoming_call(self, connection_id: str) -> None:
        await asyncio.sleep(self._incoming_call_delay)
        await self.incoming_call(target=connection_id)

    # -- task bookkeeping ----------------------------------------------------------------

    def _spawn(self, connection: Connection, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        connection.tasks.add(task)
        task.add_done_callback(connection.tasks.discard)
        return task

    async def _cancel_tasks(self, connection: Connection) -> None:
        current = asyncio.current_task()
        pending = [task for task in connection.tasks if task is not current]
        if connection.writer is not None and connection.writer is not current:
            pending.append(connection.writer)
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task

        # release anyone blocked in flush()
        while not connection.outbox.empty():
            connection.outbox.get_nowait()
            connection.outbox.task_done()


def _room_name(data: Any) -> str:
    room = data.get("room") if isinstance(data, Mapping) else data
    if not isinstance(room, str) or not room.strip():
        raise HubEventError(ErrorCode.BAD_PAYLOAD, "Room name is required")
    room = room.strip()
    if len(room) > MAX_ROOM_NAME_LENGTH:
        raise HubEventError(ErrorCode.BAD_PAYLOAD, "Room name is too long")
    return room


def _require_str(data: Any, key: str) -> str:
    if not isinstance(data, Mapping):
        raise HubEventError(ErrorCode.BAD_PAYLOAD, "Expected an object payload")
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise HubEventError(ErrorCode.BAD_PAYLOAD, f"'{key}' is required")
    return value.strip()


def _optional(data: Any, key: str) -> Any:
    return data.get(key) if isinstance(data, Mapping) else None
