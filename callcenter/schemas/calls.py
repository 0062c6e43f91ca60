"""Data contracts for call-control endpoints."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CallActionRequest(_CamelModel):
    call_id: str = Field(..., alias="callId", min_length=1)
    agent_id: str | None = Field(default=None, alias="agentId", description="Defaults to the caller's phone number")


class EndCallRequest(CallActionRequest):
    duration: int | None = Field(default=None, ge=0, description="Call duration in seconds")


class TransferCallRequest(CallActionRequest):
    target_agent_id: str = Field(..., alias="targetAgentId", min_length=1)
    reason: str | None = None


class AgentStatusRequest(_CamelModel):
    status: str = Field(..., min_length=1, max_length=32)
