"""OTP login endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ..core.security import get_credentials, get_gateway
from ..schemas.verification import (
    Channel,
    LoginRequest,
    LoginResponse,
    UserSummary,
    VerifyRequest,
    VerifyResponse,
)
from ..services.credentials import CredentialService
from ..services.verification import VerificationGateway

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/login", response_model=LoginResponse, response_model_exclude_none=True)
async def login(
    payload: LoginRequest,
    gateway: VerificationGateway = Depends(get_gateway),
) -> LoginResponse:
    """Send a one-time code to the supplied phone number."""

    return await _send_code(gateway, payload.to, payload.channel)


@router.get("/login", response_model=LoginResponse, response_model_exclude_none=True, deprecated=True)
async def login_legacy(
    to: str | None = None,
    channel: Channel = Channel.SMS,
    gateway: VerificationGateway = Depends(get_gateway),
) -> LoginResponse:
    """Query-string variant kept for older clients; prefer ``POST /login``."""

    return await _send_code(gateway, to, channel)


@router.post("/verify", response_model=VerifyResponse, response_model_exclude_none=True)
async def verify(
    payload: VerifyRequest,
    gateway: VerificationGateway = Depends(get_gateway),
    credentials: CredentialService = Depends(get_credentials),
) -> VerifyResponse:
    """Check a code and, once approved, issue a session credential."""

    return await _check_code(gateway, credentials, payload.to, payload.code)


@router.get("/verify", response_model=VerifyResponse, response_model_exclude_none=True, deprecated=True)
async def verify_legacy(
    to: str | None = None,
    code: str | None = None,
    gateway: VerificationGateway = Depends(get_gateway),
    credentials: CredentialService = Depends(get_credentials),
) -> VerifyResponse:
    """Query-string variant kept for older clients; prefer ``POST /verify``."""

    return await _check_code(gateway, credentials, to, code)


async def _send_code(gateway: VerificationGateway, to: str | None, channel: Channel) -> LoginResponse:
    attempt = await gateway.request_code(to, channel)
    logger.info("Verification sent to %s via %s (status=%s)", attempt.to, attempt.channel, attempt.status)
    return LoginResponse(
        status=attempt.status,
        to=attempt.to,
        sid=attempt.sid,
        channel=attempt.channel,
        date_created=attempt.date_created,
        date_updated=attempt.date_updated,
    )


async def _check_code(
    gateway: VerificationGateway,
    credentials: CredentialService,
    to: str | None,
    code: str | None,
) -> VerifyResponse:
    attempt = await gateway.check_code(to, code)
    response = VerifyResponse(
        status=attempt.status,
        to=attempt.to,
        sid=attempt.sid,
        valid=attempt.valid,
        date_created=attempt.date_created,
        date_updated=attempt.date_updated,
    )
    if not attempt.approved:
        logger.info("Verification for %s not approved (status=%s)", attempt.to, attempt.status)
        return response

    phone_number = attempt.to or (to or "").strip()
    credential = credentials.issue(phone_number, {"verified": True})
    response.token = credential.token
    response.user = UserSummary(phone_number=phone_number, verified=True)
    logger.info("Issued credential for %s", phone_number)
    return response
