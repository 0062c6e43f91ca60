"""Realtime event channel over WebSocket."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ..core.security import bearer_token, get_hub
from ..services.hub import ConnectionState, ErrorCode, RealtimeHub

logger = logging.getLogger(__name__)

router = APIRouter()

BEARER_SUBPROTOCOL = "bearer"


def subprotocol_token(subprotocols: list[str]) -> str | None:
    """Return ``<token>`` from a ``Sec-WebSocket-Protocol: bearer, <token>`` offer."""

    if len(subprotocols) >= 2 and subprotocols[0].lower() == BEARER_SUBPROTOCOL:
        return subprotocols[1].strip() or None
    return None


@router.websocket("/ws")
async def realtime_endpoint(websocket: WebSocket, hub: RealtimeHub = Depends(get_hub)) -> None:
    """Frames are JSON objects of the form ``{"event": name, "data": payload}``.

    The credential is read once, at connect time. Lookup order: the
    ``Authorization`` header, then the ``bearer, <token>`` subprotocol offer
    (browsers cannot set headers on a WebSocket), then the ``token`` query
    parameter. The query form ends up in access logs and proxy logs, so clients
    should prefer the subprotocol.
    """

    subprotocols = list(websocket.scope.get("subprotocols") or [])
    offered = subprotocol_token(subprotocols)
    token = bearer_token(websocket.headers.get("authorization")) or offered
    if token is None:
        token = websocket.query_params.get("token")
    await websocket.accept(subprotocol=BEARER_SUBPROTOCOL if offered else None)

    async def close_transport() -> None:
        await websocket.close(code=1000)

    connection = await hub.connect(websocket.send_json, token=token, close=close_transport)
    connection_id = connection.connection_id

    try:
        while connection.state is ConnectionState.OPEN:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break

            text = frame.get("text")
            if text is None:
                hub.report_error(connection_id, ErrorCode.BAD_PAYLOAD, "Binary frames are not supported")
                continue
            try:
                message = json.loads(text)
            except ValueError:
                hub.report_error(connection_id, ErrorCode.BAD_PAYLOAD, "Messages must be JSON objects")
                continue
            if not isinstance(message, dict) or not isinstance(message.get("event"), str):
                hub.report_error(connection_id, ErrorCode.BAD_PAYLOAD, "Messages need an 'event' name")
                continue

            await hub.dispatch(connection_id, message["event"], message.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(connection_id)
