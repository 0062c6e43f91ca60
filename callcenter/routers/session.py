"""Endpoints for holders of a session credential."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from ..core.security import AuthContext, get_credentials, require_auth
from ..services.credentials import CredentialService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/profile")
async def profile(auth: AuthContext = Depends(require_auth)) -> dict[str, Any]:
    """Return the claims carried by the caller's credential."""

    return {"user": auth.claims.to_payload()}


@router.post("/refresh-token")
async def refresh_token(
    auth: AuthContext = Depends(require_auth),
    credentials: CredentialService = Depends(get_credentials),
) -> dict[str, Any]:
    """Reissue the caller's credential with a fresh expiry window."""

    credential = credentials.refresh(auth.token)
    logger.info("Refreshed credential for %s", credential.claims.identity)
    return {"token": credential.token, "expiresIn": credential.expires_in}


@router.post("/logout")
async def logout(auth: AuthContext = Depends(require_auth)) -> dict[str, str]:
    """Acknowledge a logout. Credentials are stateless, so the client discards its token."""

    logger.info("Logout acknowledged for %s", auth.claims.identity)
    return {"message": "Logged out successfully"}
