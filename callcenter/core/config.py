"""Application configuration for the call-center relay."""
from __future__ import annotations

import json
import re
from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_DURATION_PATTERN = re.compile(r"^\s*([0-9]+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


class Settings(BaseSettings):
    """Runtime configuration.

    Twilio account credentials and the JWT signing secret have no defaults, so a
    missing value fails settings construction at startup.
    """

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])
    port: int = Field(default=3000, ge=1, le=65535)

    twilio_account_sid: str = Field(..., min_length=1)
    twilio_auth_token: str = Field(..., min_length=1)
    twilio_phone_number: str = Field(..., min_length=1)
    twilio_phone_number_sid: str = Field(..., min_length=1)
    twilio_verify_service: str = Field(default="")
    twilio_token_sid: str = Field(default="")
    twilio_secret: str = Field(default="")

    jwt_secret: str = Field(..., min_length=1)
    jwt_expires_in: int = Field(default=86400, ge=1, description="Credential lifetime in seconds")

    incoming_call_delay: float = Field(default=5.0, ge=0, description="Seconds before the simulated call")
    hub_outbox_size: int = Field(default=256, ge=1, description="Messages buffered per streaming client")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str):
            if value.strip().startswith("["):
                return json.loads(value)
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_expires_in", mode="before")
    @classmethod
    def _parse_duration(cls, value: object) -> object:
        """Accept durations such as ``24h``, ``30m`` or ``7d`` alongside plain seconds."""

        if isinstance(value, str):
            match = _DURATION_PATTERN.match(value)
            if not match:
                raise ValueError(f"Unrecognised duration: {value!r}")
            amount, unit = match.groups()
            return int(amount) * _DURATION_UNITS[unit.lower()]
        return value

    @property
    def twilio_configured(self) -> bool:
        return all(
            (
                self.twilio_account_sid,
                self.twilio_auth_token,
                self.twilio_phone_number,
                self.twilio_phone_number_sid,
            )
        )

    @property
    def has_verify_service(self) -> bool:
        return bool(self.twilio_verify_service)

    @property
    def has_token_credentials(self) -> bool:
        return bool(self.twilio_token_sid and self.twilio_secret)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()
