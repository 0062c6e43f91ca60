"""Error taxonomy shared by the HTTP surface, the gateway and the hub."""
from __future__ import annotations


class CallCenterError(Exception):
    """Base class for errors that map onto a client-visible response."""

    status_code: int = 500
    error: str = "Internal error"
    kind: str = "Internal"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.error
        super().__init__(self.message)

    def to_payload(self) -> dict[str, str]:
        return {"error": self.error, "message": self.message}


class ValidationError(CallCenterError):
    """Malformed client input, rejected before any provider or credential work."""

    status_code = 400
    error = "Invalid request"
    kind = "Validation"


class AuthError(CallCenterError):
    status_code = 401
    error = "Authentication failed"
    kind = "Auth"


class CredentialMissingError(AuthError):
    status_code = 401
    error = "Access token required"


class CredentialInvalidError(AuthError):
    status_code = 403
    error = "Invalid token"


class ProviderError(CallCenterError):
    """The OTP provider failed; raw provider exceptions never leave the gateway."""

    status_code = 500
    error = "Verification provider error"
    kind = "Provider"

    def __init__(self, message: str | None = None, *, provider_code: int | None = None) -> None:
        super().__init__(message)
        self.provider_code = provider_code

    def to_payload(self) -> dict[str, str]:
        payload = super().to_payload()
        payload["kind"] = self.kind
        return payload


class ProviderUnconfiguredError(ProviderError):
    status_code = 503
    error = "Verification service not configured"
    kind = "Unconfigured"


class ProviderNotFoundError(ProviderError):
    status_code = 404
    error = "Verification resource not found"
    kind = "NotFound"


class RecipientUnverifiedError(ProviderError):
    status_code = 400
    error = "Recipient not verified"
    kind = "RecipientUnverified"


class InvalidRecipientError(ProviderError):
    status_code = 400
    error = "Invalid recipient"
    kind = "InvalidFormat"


class CodeInvalidError(ProviderError):
    status_code = 400
    error = "Invalid verification code"
    kind = "CodeInvalid"


class CodeExpiredError(ProviderError):
    status_code = 410
    error = "Verification code expired"
    kind = "CodeExpired"
