"""Data contracts for the OTP login endpoints."""
from __future__ import annotations

import enum
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class Channel(str, enum.Enum):
    SMS = "sms"
    CALL = "call"


class VerificationAttempt(BaseModel):
    """Flat projection of a provider verification or verification check."""

    model_config = ConfigDict(populate_by_name=True)

    status: str
    to: str | None = None
    sid: str | None = None
    channel: str | None = None
    valid: bool | None = None
    date_created: datetime | None = Field(default=None, alias="dateCreated")
    date_updated: datetime | None = Field(default=None, alias="dateUpdated")

    @property
    def approved(self) -> bool:
        return self.status == "approved"


class LoginRequest(BaseModel):
    # Optional so that a missing number reaches gateway validation and becomes a 400.
    to: str | None = Field(default=None, description="E.164 phone number to verify")
    channel: Channel = Field(default=Channel.SMS)


class VerifyRequest(BaseModel):
    to: str | None = Field(default=None, description="E.164 phone number being verified")
    code: str | None = Field(default=None, description="One-time code received by the user")


class LoginResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    to: str | None = None
    sid: str | None = None
    channel: str | None = None
    date_created: datetime | None = Field(default=None, alias="dateCreated")
    date_updated: datetime | None = Field(default=None, alias="dateUpdated")


class UserSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(..., alias="phoneNumber")
    verified: bool


class VerifyResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    to: str | None = None
    sid: str | None = None
    valid: bool | None = None
    date_created: datetime | None = Field(default=None, alias="dateCreated")
    date_updated: datetime | None = Field(default=None, alias="dateUpdated")
    token: str | None = None
    user: UserSummary | None = None
