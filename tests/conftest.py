"""Shared fixtures: explicit settings, a fake Verify provider and app factories."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient

from callcenter.core.config import Settings
from callcenter.main import create_app
from callcenter.services.credentials import CredentialService
from callcenter.services.hub import RealtimeHub
from callcenter.services.verification import VerificationGateway

JWT_SECRET = "test-signing-secret"
AGENT_PHONE = "+15551234567"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeVerifyProvider:
    """Stand-in for the Twilio Verify client; approves ``correct_code`` only."""

    def __init__(self, service_sid: str = "VAtest", correct_code: str = "123456") -> None:
        self.service_sid = service_sid
        self.correct_code = correct_code
        self.calls: list[tuple[str, ...]] = []
        self.error: Exception | None = None

    def create_verification(self, to: str, channel: str) -> Any:
        self.calls.append(("create_verification", to, channel))
        if self.error is not None:
            raise self.error
        return self._resource(to=to, channel=channel, status="pending", valid=False)

    def create_verification_check(self, to: str, code: str) -> Any:
        self.calls.append(("create_verification_check", to, code))
        if self.error is not None:
            raise self.error
        approved = code == self.correct_code
        return self._resource(
            to=to,
            channel="sms",
            status="approved" if approved else "pending",
            valid=approved,
        )

    def _resource(self, **fields: Any) -> SimpleNamespace:
        stamp = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        resource = SimpleNamespace(
            sid="VE0123456789abcdef",
            date_created=stamp,
            date_updated=stamp,
            account_sid="ACtest",
            **fields,
        )
        # SDK resources hold references back to their parent context
        resource._version = SimpleNamespace(domain=SimpleNamespace(owner=resource))
        return resource


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "twilio_account_sid": "ACtest",
        "twilio_auth_token": "auth-token",
        "twilio_phone_number": "+15550000000",
        "twilio_phone_number_sid": "PNtest",
        "twilio_verify_service": "VAtest",
        "jwt_secret": JWT_SECRET,
        "incoming_call_delay": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def provider() -> FakeVerifyProvider:
    return FakeVerifyProvider()


@pytest.fixture
def credentials() -> CredentialService:
    return CredentialService(JWT_SECRET, expires_in=3600)


@pytest.fixture
def app(settings: Settings, provider: FakeVerifyProvider, credentials: CredentialService):
    hub = RealtimeHub(credentials, incoming_call_delay=0)
    return create_app(
        settings,
        gateway=VerificationGateway(provider),
        credentials=credentials,
        hub=hub,
    )


@pytest.fixture
def client(app) -> Iterator[TestClient]:
    # Entering the client keeps HTTP requests and sockets on one event loop.
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(credentials: CredentialService) -> dict[str, str]:
    token = credentials.issue(AGENT_PHONE, {"verified": True}).token
    return {"Authorization": f"Bearer {token}"}
