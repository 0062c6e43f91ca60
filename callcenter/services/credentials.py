"""Session credential issuance and validation.

Credentials are HS256 JWTs carrying the verified phone number. Validation never
raises; it returns a tagged result so callers decide how to deny access.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from ..core.errors import CredentialInvalidError

Clock = Callable[[], datetime]

RESERVED_CLAIMS = frozenset({"phoneNumber", "iat", "exp"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationFailure(str, enum.Enum):
    EXPIRED = "Expired"
    MALFORMED = "Malformed"
    SIGNATURE_INVALID = "SignatureInvalid"


class Claims(BaseModel):
    """Decoded credential payload."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    phone_number: str = Field(..., alias="phoneNumber", min_length=1)
    verified: bool = False
    iat: int
    exp: int

    @property
    def identity(self) -> str:
        return self.phone_number

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    def extra_claims(self) -> dict[str, Any]:
        """Return caller-supplied claims, i.e. everything except identity and timestamps."""

        payload = self.to_payload()
        return {key: value for key, value in payload.items() if key not in RESERVED_CLAIMS}

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass(slots=True, frozen=True)
class Credential:
    token: str
    claims: Claims

    @property
    def expires_in(self) -> int:
        return self.claims.exp - self.claims.iat


@dataclass(slots=True, frozen=True)
class ValidationResult:
    ok: bool
    claims: Claims | None = None
    reason: ValidationFailure | None = None

    @classmethod
    def success(cls, claims: Claims) -> "ValidationResult":
        return cls(ok=True, claims=claims)

    @classmethod
    def failure(cls, reason: ValidationFailure) -> "ValidationResult":
        return cls(ok=False, reason=reason)


class CredentialService:
    """Mint and check signed session credentials with a fixed lifetime."""

    def __init__(
        self,
        secret: str,
        *,
        expires_in: int = 86400,
        algorithm: str = "HS256",
        clock: Clock | None = None,
    ) -> None:
        if not secret:
            raise ValueError("A signing secret is required")
        if expires_in <= 0:
            raise ValueError("expires_in must be positive")
        self._secret = secret
        self._expires_in = expires_in
        self._algorithm = algorithm
        self._clock = clock or _utcnow

    @property
    def expires_in(self) -> int:
        return self._expires_in

    def issue(self, identity: str, claims: Mapping[str, Any] | None = None) -> Credential:
        """Sign a credential for ``identity`` that expires after the configured window."""

        if not identity or not isinstance(identity, str):
            raise ValueError("identity must be a non-empty string")
        issued_at = self._now()
        return self._sign(identity, claims or {}, issued_at, issued_at + self._expires_in)

    def validate(self, token: str | None) -> ValidationResult:
        """Classify ``token`` as valid, expired, malformed or forged."""

        if not token or not isinstance(token, str):
            return ValidationResult.failure(ValidationFailure.MALFORMED)

        try:
            jwt.get_unverified_claims(token)
        except JWTError:
            return ValidationResult.failure(ValidationFailure.MALFORMED)

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTClaimsError:
            return ValidationResult.failure(ValidationFailure.MALFORMED)
        except JWTError:
            return ValidationResult.failure(ValidationFailure.SIGNATURE_INVALID)

        try:
            claims = Claims.model_validate(payload)
        except SchemaError:
            return ValidationResult.failure(ValidationFailure.MALFORMED)

        # expiry is checked against the injectable clock rather than the library's wall clock
        if self._now() >= claims.exp:
            return ValidationResult.failure(ValidationFailure.EXPIRED)
        return ValidationResult.success(claims)

    def refresh(self, token: str | None) -> Credential:
        """Reissue a still-valid credential with the same claims and a new expiry."""

        result = self.validate(token)
        if not result.ok or result.claims is None:
            reason = result.reason or ValidationFailure.MALFORMED
            raise CredentialInvalidError(f"Cannot refresh credential: {reason.value}")

        original = result.claims
        issued_at = self._now()
        # a refreshed credential always outlives the one it replaces
        expires_at = max(issued_at + self._expires_in, original.exp + 1)
        return self._sign(original.identity, original.extra_claims(), issued_at, expires_at)

    def _sign(self, identity: str, claims: Mapping[str, Any], issued_at: int, expires_at: int) -> Credential:
        payload = {key: value for key, value in claims.items() if key not in RESERVED_CLAIMS}
        payload.update({"phoneNumber": identity, "iat": issued_at, "exp": expires_at})
        payload.setdefault("verified", False)
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        return Credential(token=token, claims=Claims.model_validate(payload))

    def _now(self) -> int:
        return int(self._clock().timestamp())
