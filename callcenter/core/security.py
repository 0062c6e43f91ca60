"""Bearer credential extraction and FastAPI dependencies for shared services."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends
from starlette.requests import HTTPConnection

from ..services.credentials import Claims, CredentialService
from ..services.hub import RealtimeHub
from ..services.verification import VerificationGateway
from .config import Settings
from .errors import CredentialInvalidError, CredentialMissingError


@dataclass(slots=True, frozen=True)
class AuthContext:
    token: str
    claims: Claims


def bearer_token(header: str | None) -> str | None:
    """Return the token part of an ``Authorization: Bearer <token>`` header."""

    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_settings(conn: HTTPConnection) -> Settings:
    return conn.app.state.settings


def get_credentials(conn: HTTPConnection) -> CredentialService:
    return conn.app.state.credentials


def get_gateway(conn: HTTPConnection) -> VerificationGateway:
    return conn.app.state.gateway


def get_hub(conn: HTTPConnection) -> RealtimeHub:
    return conn.app.state.hub


async def require_auth(
    conn: HTTPConnection,
    credentials: CredentialService = Depends(get_credentials),
) -> AuthContext:
    """Reject requests without a valid bearer credential (401 missing, 403 invalid)."""

    token = bearer_token(conn.headers.get("authorization"))
    if token is None:
        raise CredentialMissingError("Please provide a valid authentication token")

    result = credentials.validate(token)
    if not result.ok or result.claims is None:
        raise CredentialInvalidError("The provided token is invalid or expired")
    return AuthContext(token=token, claims=result.claims)
