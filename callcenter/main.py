"""FastAPI application for the call-center OTP relay and realtime hub."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.config import Settings, get_settings
from .core.errors import CallCenterError
from .routers import auth as auth_router
from .routers import calls as calls_router
from .routers import realtime as realtime_router
from .routers import session as session_router
from .services.credentials import CredentialService
from .services.hub import RealtimeHub
from .services.twilio_client import TwilioVerifyClient
from .services.verification import VerificationGateway

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    gateway: VerificationGateway | None = None,
    credentials: CredentialService | None = None,
    hub: RealtimeHub | None = None,
) -> FastAPI:
    """Build the application and the services it owns.

    Nothing is shared through module globals; collaborators live on ``app.state``
    and reach handlers through the dependencies in :mod:`callcenter.core.security`.
    """

    resolved_settings = settings or get_settings()
    credential_service = credentials or CredentialService(
        resolved_settings.jwt_secret,
        expires_in=resolved_settings.jwt_expires_in,
    )
    verification_gateway = gateway or VerificationGateway(TwilioVerifyClient.from_settings(resolved_settings))
    realtime_hub = hub or RealtimeHub(
        credential_service,
        incoming_call_delay=resolved_settings.incoming_call_delay,
        outbox_size=resolved_settings.hub_outbox_size,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "Call center relay starting (env=%s, twilio configured=%s, verify service=%s)",
            resolved_settings.app_env,
            resolved_settings.twilio_configured,
            "configured" if resolved_settings.has_verify_service else "missing",
        )
        yield
        await realtime_hub.shutdown()

    app = FastAPI(title="Call Center Relay API", version="0.1.0", lifespan=lifespan)
    app.state.settings = resolved_settings
    app.state.credentials = credential_service
    app.state.gateway = verification_gateway
    app.state.hub = realtime_hub

    if resolved_settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=resolved_settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    _register_error_handlers(app)
    _register_meta_routes(app, resolved_settings)

    app.include_router(auth_router.router, tags=["auth"])
    app.include_router(session_router.router, prefix="/api", tags=["session"])
    app.include_router(calls_router.router, prefix="/api", tags=["calls"])
    app.include_router(realtime_router.router, tags=["realtime"])
    return app


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CallCenterError)
    async def handle_call_center_error(request: Request, exc: CallCenterError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.kind, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = exc.errors()
        message = details[0].get("msg", "Invalid request") if details else "Invalid request"
        location = ".".join(str(part) for part in details[0].get("loc", ())) if details else ""
        if location:
            message = f"{location}: {message}"
        return JSONResponse(status_code=400, content={"error": "Invalid request", "message": message})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return JSONResponse(status_code=404, content={"error": "Route not found", "path": request.url.path})
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail), "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.middleware("http")
    async def catch_unhandled_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:  # noqa: BLE001 - last-resort JSON error
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=500,
                content={"error": "Something went wrong!", "message": type(exc).__name__},
            )


def _register_meta_routes(app: FastAPI, settings: Settings) -> None:
    @app.get("/", tags=["meta"])
    async def index() -> dict[str, str]:
        return {
            "message": "Call Center Relay",
            "status": "running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/health", tags=["meta"])
    async def health() -> dict[str, object]:
        """Liveness probe with configuration presence flags (never secret values)."""

        return {
            "status": "healthy",
            "twilio": {
                "configured": settings.twilio_configured,
                "accountSid": _presence(settings.twilio_account_sid),
                "phoneNumber": _presence(settings.twilio_phone_number),
                "verifyService": _presence(settings.twilio_verify_service),
                "tokenCredentials": "configured" if settings.has_token_credentials else "missing",
            },
        }

    @app.head("/health", tags=["meta"])
    async def health_head() -> Response:
        """Allow HEAD for uptime monitors that only need the status code."""

        return Response(status_code=200)


def _presence(value: str) -> str:
    return "configured" if value else "missing"
