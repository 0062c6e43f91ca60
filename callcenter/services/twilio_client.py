"""Twilio Verify client used by the verification gateway."""
from __future__ import annotations

import logging
from typing import Any

from twilio.rest import Client as TwilioRestClient

from ..core.config import Settings

logger = logging.getLogger(__name__)


class TwilioVerifyClient:
    """Thin synchronous wrapper over the Twilio Verify v2 API.

    Attributes:
        account_sid: Twilio account SID.
        service_sid: Verify service SID; empty when the service is not configured.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        service_sid: str = "",
        *,
        api_key_sid: str = "",
        api_key_secret: str = "",
    ) -> None:
        """Initialize TwilioVerifyClient.

        Args:
            account_sid: Twilio account SID.
            auth_token: Twilio auth token, used when no API key is supplied.
            service_sid: Verify service SID.
            api_key_sid: Optional API key SID; preferred over the auth token.
            api_key_secret: Secret paired with ``api_key_sid``.
        """
        self.account_sid = account_sid
        self.service_sid = service_sid
        if api_key_sid and api_key_secret:
            self._client = TwilioRestClient(api_key_sid, api_key_secret, account_sid)
        else:
            self._client = TwilioRestClient(account_sid, auth_token)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TwilioVerifyClient":
        return cls(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_verify_service,
            api_key_sid=settings.twilio_token_sid,
            api_key_secret=settings.twilio_secret,
        )

    def create_verification(self, to: str, channel: str) -> Any:
        """Start a verification, sending a one-time code to ``to``.

        Args:
            to: E.164 recipient number.
            channel: Delivery channel (``sms`` or ``call``).

        Returns:
            The SDK verification instance.
        """
        verification = self._service().verifications.create(to=to, channel=channel)
        logger.info("verification_created", extra={"to": to, "channel": channel, "sid": verification.sid})
        return verification

    def create_verification_check(self, to: str, code: str) -> Any:
        """Check a code previously sent to ``to``.

        Args:
            to: E.164 recipient number.
            code: Code entered by the user.

        Returns:
            The SDK verification check instance.
        """
        check = self._service().verification_checks.create(to=to, code=code)
        logger.info("verification_checked", extra={"to": to, "status": check.status})
        return check

    def _service(self) -> Any:
        return self._client.verify.v2.services(self.service_sid)
