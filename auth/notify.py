"""
auth/notify.py -- Delivery of one-time codes and access decisions.

The auth core only cares whether a message went out: every send returns a
DispatchResult and never raises. Delivery backends:

  SendGridEmailBackend -- SendGrid v3 mail/send over requests.
  TwilioSmsBackend     -- Twilio REST client.
  ConsoleBackend       -- logs the message instead of sending it. Used when a
                          provider is not configured, so local development
                          works without credentials.

A failed dispatch is reported to the caller; the code that was registered
for it is left in place, and a retry simply registers a new one.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import requests
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from auth.models import Channel
from core.config import Settings

logger = logging.getLogger("intranet.auth.notify")

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

_CODE_SUBJECT = "Your intranet access code"
_CODE_BODY = "Your verification code is {code}. It expires in {minutes} minutes."
_APPROVED_SUBJECT = "Intranet access approved"
_APPROVED_BODY = "Your request for intranet access was approved. You can now sign in."
_REJECTED_SUBJECT = "Intranet access request"
_REJECTED_BODY = "Your request for intranet access was not approved."


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message: str
    preview_url: str | None = None


class ConsoleBackend:
    """Writes messages to the log instead of delivering them.

    The body (which holds the code) is only logged when reveal is set, i.e.
    in debug mode.
    """

    def __init__(self, channel: Channel, reveal: bool = False) -> None:
        self.channel = channel
        self.reveal = reveal

    def send(self, to: str, subject: str, body: str) -> DispatchResult:
        shown = body if self.reveal else "<withheld>"
        logger.info("[%s console] to=%s subject=%r body=%r", self.channel.value, to, subject, shown)
        return DispatchResult(True, f"{self.channel.value} delivery simulated (console backend).")


class SendGridEmailBackend:
    def __init__(self, api_key: str, sender: str, timeout: float = 10.0) -> None:
        self._sender = sender
        self._timeout = timeout
        self._session = requests.Session()
        self._session.max_redirects = 3
        self._session.headers["Authorization"] = f"Bearer {api_key}"

    def send(self, to: str, subject: str, body: str) -> DispatchResult:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self._sender},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        try:
            resp = self._session.post(SENDGRID_URL, json=payload, timeout=self._timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("SendGrid delivery to %s failed: %s", to, e)
            return DispatchResult(False, "Email delivery failed.")
        return DispatchResult(True, "Email sent.")


class TwilioSmsBackend:
    def __init__(self, account_sid: str, auth_token: str, from_number: str) -> None:
        self._client = Client(account_sid, auth_token)
        self._from_number = from_number

    def send(self, to: str, subject: str, body: str) -> DispatchResult:
        try:
            message = self._client.messages.create(body=body, to=to, from_=self._from_number)
        except TwilioException as e:
            logger.warning("Twilio delivery to %s failed: %s", to, e)
            return DispatchResult(False, "SMS delivery failed.")
        logger.info("SMS sent via Twilio: %s", message.sid)
        return DispatchResult(True, "SMS sent.")


class NotificationDispatcher:
    """Routes messages to the email or SMS backend.

    Usage:
        dispatcher = NotificationDispatcher.from_settings(get_settings())
        result = dispatcher.send_code("ana@corp.com", "482913", Channel.EMAIL)
    """

    def __init__(self, email_backend, sms_backend, code_ttl_minutes: int = 15) -> None:
        self._backends = {Channel.EMAIL: email_backend, Channel.SMS: sms_backend}
        self._code_ttl_minutes = code_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationDispatcher":
        if settings.sendgrid_api_key:
            email_backend = SendGridEmailBackend(settings.sendgrid_api_key, settings.email_from)
        else:
            email_backend = ConsoleBackend(Channel.EMAIL, reveal=settings.debug)
        if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number:
            sms_backend = TwilioSmsBackend(
                settings.twilio_account_sid, settings.twilio_auth_token, settings.twilio_from_number
            )
        else:
            sms_backend = ConsoleBackend(Channel.SMS, reveal=settings.debug)
        return cls(email_backend, sms_backend, code_ttl_minutes=settings.code_ttl_minutes)

    def send_code(self, identifier: str, code: str, channel: Channel) -> DispatchResult:
        body = _CODE_BODY.format(code=code, minutes=self._code_ttl_minutes)
        return self._send(identifier, _CODE_SUBJECT, body, Channel(channel))

    def send_access_decision(
        self, identifier: str, channel: Channel, approved: bool, reason: str | None = None
    ) -> DispatchResult:
        if approved:
            return self._send(identifier, _APPROVED_SUBJECT, _APPROVED_BODY, Channel(channel))
        body = _REJECTED_BODY if not reason else f"{_REJECTED_BODY} Reason: {reason}"
        return self._send(identifier, _REJECTED_SUBJECT, body, Channel(channel))

    def _send(self, to: str, subject: str, body: str, channel: Channel) -> DispatchResult:
        backend = self._backends[channel]
        try:
            return backend.send(to, subject, body)
        except Exception:
            logger.exception("Unexpected %s backend failure sending to %s", channel.value, to)
            return DispatchResult(False, f"Could not deliver the {channel.value} message.")
