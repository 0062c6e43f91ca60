"""Call-control endpoints that publish lifecycle events through the hub."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from ..core.security import AuthContext, get_hub, require_auth
from ..schemas import calls as calls_schema
from ..services.hub import RealtimeHub

router = APIRouter()


@router.post("/calls/accept")
async def accept_call(
    payload: calls_schema.CallActionRequest,
    auth: AuthContext = Depends(require_auth),
    hub: RealtimeHub = Depends(get_hub),
) -> dict[str, Any]:
    """Accept a call and broadcast ``call-connected``."""

    event = await hub.accept_call(payload.agent_id or auth.claims.identity, payload.call_id)
    return {"message": "Call accepted", **event}


@router.post("/calls/end")
async def end_call(
    payload: calls_schema.EndCallRequest,
    auth: AuthContext = Depends(require_auth),
    hub: RealtimeHub = Depends(get_hub),
) -> dict[str, Any]:
    """End a call and broadcast ``call-ended``."""

    event = await hub.end_call(
        payload.agent_id or auth.claims.identity,
        payload.call_id,
        duration=payload.duration,
    )
    return {"message": "Call ended", **event}


@router.post("/calls/transfer")
async def transfer_call(
    payload: calls_schema.TransferCallRequest,
    auth: AuthContext = Depends(require_auth),
    hub: RealtimeHub = Depends(get_hub),
) -> dict[str, Any]:
    """Hand a call to another agent and broadcast ``call-transferred``."""

    event = await hub.transfer_call(
        payload.agent_id or auth.claims.identity,
        payload.call_id,
        payload.target_agent_id,
        reason=payload.reason,
    )
    return {"message": "Call transferred", **event}


@router.get("/calls/queue")
async def call_queue(
    auth: AuthContext = Depends(require_auth),
    hub: RealtimeHub = Depends(get_hub),
) -> dict[str, Any]:
    """Return the current mock queue."""

    return hub.call_queue.snapshot()


@router.post("/agents/status")
async def update_agent_status(
    payload: calls_schema.AgentStatusRequest,
    auth: AuthContext = Depends(require_auth),
    hub: RealtimeHub = Depends(get_hub),
) -> dict[str, Any]:
    """Broadcast ``agent-status-updated`` for the calling agent."""

    event = await hub.update_agent_status(auth.claims.identity, payload.status)
    return {"message": "Agent status updated", **event}
