"""Verification gateway in front of the OTP provider.

Inputs are validated before any provider call. Provider responses are projected
through an explicit allow-list into :class:`VerificationAttempt`, and provider
exceptions are translated into :mod:`callcenter.core.errors` types.
"""
from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from functools import partial
from typing import Any, Callable, Protocol

from twilio.base.exceptions import TwilioRestException

from ..core import errors
from ..schemas.verification import Channel, VerificationAttempt

logger = logging.getLogger(__name__)

# [0-9] rather than \d, which also matches non-ASCII digits
E164_PATTERN = re.compile(r"^\+[1-9][0-9]{1,14}$")
CODE_PATTERN = re.compile(r"^[0-9]{4,8}$")

ATTEMPT_FIELDS: dict[str, str] = {
    "status": "status",
    "to": "to",
    "sid": "sid",
    "channel": "channel",
    "valid": "valid",
    "date_created": "date_created",
    "date_updated": "date_updated",
}

# Twilio error codes, see https://www.twilio.com/docs/api/errors
TWILIO_NOT_FOUND = 20404
TWILIO_INVALID_TO = 21211
TWILIO_UNVERIFIED_TRIAL = 21608
TWILIO_UNSUBSCRIBED = 21610
TWILIO_INVALID_PARAMETER = 60200
TWILIO_MAX_CHECK_ATTEMPTS = 60202
TWILIO_MAX_SEND_ATTEMPTS = 60203
TWILIO_LANDLINE = 60205


class VerifyProvider(Protocol):
    service_sid: str

    def create_verification(self, to: str, channel: str) -> Any:
        ...

    def create_verification_check(self, to: str, code: str) -> Any:
        ...


def validate_phone_number(to: object) -> str:
    """Return ``to`` stripped of surrounding whitespace if it is an E.164 number."""

    if not isinstance(to, str) or not to.strip():
        raise errors.ValidationError("Phone number is required")
    candidate = to.strip()
    if not E164_PATTERN.match(candidate):
        raise errors.ValidationError("Phone number must be in E.164 format, e.g. +15551234567")
    return candidate


def validate_code(code: object) -> str:
    if not isinstance(code, str) or not code.strip():
        raise errors.ValidationError("Verification code is required")
    candidate = code.strip()
    if not CODE_PATTERN.match(candidate):
        raise errors.ValidationError("Verification code must be 4-8 digits")
    return candidate


def project_attempt(resource: Any) -> VerificationAttempt:
    """Copy allow-listed scalar attributes off a provider object."""

    if resource is None:
        raise errors.ProviderError("Verification provider returned no data")

    values: dict[str, Any] = {}
    for attribute, field_name in ATTEMPT_FIELDS.items():
        value = getattr(resource, attribute, None)
        if value is None:
            continue
        if isinstance(value, (str, bool, datetime)):
            values[field_name] = value
        else:
            values[field_name] = str(value)

    if not isinstance(values.get("status"), str):
        raise errors.ProviderError("Verification provider returned an unexpected response")
    return VerificationAttempt(**values)


class VerificationGateway:
    """Request and check one-time codes through the configured provider."""

    def __init__(self, provider: VerifyProvider) -> None:
        self._provider = provider

    @property
    def configured(self) -> bool:
        return bool(self._provider.service_sid)

    async def request_code(self, to: object, channel: Channel | str = Channel.SMS) -> VerificationAttempt:
        recipient = validate_phone_number(to)
        try:
            resolved_channel = Channel(channel)
        except ValueError:
            raise errors.ValidationError("Channel must be 'sms' or 'call'") from None
        self._ensure_configured()

        resource = await self._call(
            "request",
            recipient,
            partial(self._provider.create_verification, recipient, resolved_channel.value),
        )
        return project_attempt(resource)

    async def check_code(self, to: object, code: object) -> VerificationAttempt:
        recipient = validate_phone_number(to)
        otp = validate_code(code)
        self._ensure_configured()

        resource = await self._call(
            "check",
            recipient,
            partial(self._provider.create_verification_check, recipient, otp),
        )
        return project_attempt(resource)

    def _ensure_configured(self) -> None:
        if not self.configured:
            raise errors.ProviderUnconfiguredError("TWILIO_VERIFY_SERVICE is not configured")

    async def _call(self, operation: str, recipient: str, func: Callable[[], Any]) -> Any:
        # The Twilio SDK is blocking; keep it off the event loop.
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func)
        except TwilioRestException as exc:
            logger.warning(
                "Verification %s failed for %s: code=%s status=%s msg=%s",
                operation,
                recipient,
                exc.code,
                exc.status,
                exc.msg,
            )
            raise translate_provider_error(exc, operation) from None
        except Exception as exc:  # noqa: BLE001 - transport failures surface as a generic provider error
            logger.exception("Verification %s failed for %s", operation, recipient)
            raise errors.ProviderError("Verification provider is unavailable") from exc


def translate_provider_error(exc: TwilioRestException, operation: str) -> errors.ProviderError:
    """Map a Twilio REST error onto the provider error taxonomy."""

    code = exc.code
    message = str(exc.msg or "Verification provider error")

    if code == TWILIO_NOT_FOUND:
        if operation == "check":
            return errors.CodeExpiredError(
                "The verification code has expired or was already used; request a new one",
                provider_code=code,
            )
        return errors.ProviderNotFoundError("Verification service not found", provider_code=code)
    if code in (TWILIO_INVALID_TO, TWILIO_LANDLINE):
        return errors.InvalidRecipientError("The phone number cannot receive verification codes", provider_code=code)
    if code in (TWILIO_UNVERIFIED_TRIAL, TWILIO_UNSUBSCRIBED):
        return errors.RecipientUnverifiedError(
            "The phone number is not verified for this account", provider_code=code
        )
    if code == TWILIO_INVALID_PARAMETER:
        if operation == "check":
            return errors.CodeInvalidError("The verification code is invalid", provider_code=code)
        return errors.InvalidRecipientError("The phone number was rejected by the provider", provider_code=code)
    if code == TWILIO_MAX_CHECK_ATTEMPTS:
        return errors.CodeInvalidError("Too many incorrect codes; request a new one", provider_code=code)
    if code == TWILIO_MAX_SEND_ATTEMPTS:
        return errors.ProviderError("Too many codes requested; try again later", provider_code=code)
    return errors.ProviderError(message, provider_code=code)
