"""Thin Twilio SMS sender with a logging mock mode for local development."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from core.env import env_str

logger = logging.getLogger(__name__)

_PLACEHOLDER_SID_PREFIX = "AC1234"


class SmsDeliveryError(RuntimeError):
    """Raised when the SMS provider rejects a message."""


@dataclass
class SmsSender:
    account_sid: Optional[str]
    auth_token: Optional[str]
    from_number: Optional[str]
    force_mock: bool = False
    _client: Optional[Client] = None

    @property
    def mock_mode(self) -> bool:
        if self.force_mock:
            return True
        if not (self.account_sid and self.auth_token and self.from_number):
            return True
        return self.account_sid.startswith(_PLACEHOLDER_SID_PREFIX)

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def send(self, to: str, body: str) -> Optional[str]:
        """Send ``body`` to ``to``; returns the provider message sid (None in mock mode)."""
        if self.mock_mode:
            logger.info("[MOCK SMS] to=%s body=%s", to, body)
            return None
        try:
            message = self._get_client().messages.create(body=body, from_=self.from_number, to=to)
        except TwilioException as exc:
            logger.error("Twilio delivery to %s failed: %s", to, exc)
            raise SmsDeliveryError("Failed to send SMS.") from exc
        logger.info("SMS sent to %s sid=%s", to, message.sid)
        return message.sid


def get_sms_sender() -> SmsSender:
    environment = (env_str("APP_ENV") or "production").lower()
    return SmsSender(
        account_sid=env_str("TWILIO_SID"),
        auth_token=env_str("TWILIO_AUTH_TOKEN"),
        from_number=env_str("TWILIO_PHONE"),
        force_mock=environment == "development",
    )


__all__ = ["SmsDeliveryError", "SmsSender", "get_sms_sender"]
