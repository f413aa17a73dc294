"""Unit tests for auth/notify.py -- NotificationDispatcher and its backends.

No network: SendGrid's requests session and the Twilio client are mocked.
Every send must come back as a DispatchResult, never an exception.
"""

import logging
from unittest.mock import MagicMock, patch

import requests
from twilio.base.exceptions import TwilioException

from auth.models import Channel
from auth.notify import (
    SENDGRID_URL,
    ConsoleBackend,
    NotificationDispatcher,
    SendGridEmailBackend,
    TwilioSmsBackend,
)
from conftest import RecordingBackend, make_settings


def test_code_message_names_code_and_lifetime():
    email = RecordingBackend()
    dispatcher = NotificationDispatcher(email, RecordingBackend(), code_ttl_minutes=10)
    result = dispatcher.send_code("ana@corp.com", "482913", Channel.EMAIL)
    assert result.success is True
    to, _subject, body = email.sent[0]
    assert to == "ana@corp.com"
    assert "482913" in body
    assert "10 minutes" in body


def test_channel_selects_backend():
    email, sms = RecordingBackend(), RecordingBackend()
    dispatcher = NotificationDispatcher(email, sms)
    dispatcher.send_code("+5511988887777", "111111", Channel.SMS)
    assert email.sent == []
    assert sms.sent[0][0] == "+5511988887777"


def test_rejection_carries_reason():
    email = RecordingBackend()
    dispatcher = NotificationDispatcher(email, RecordingBackend())
    dispatcher.send_access_decision("ana@corp.com", Channel.EMAIL, approved=False, reason="Contractor")
    assert email.sent[0][2].endswith("Reason: Contractor")


def test_backend_exception_becomes_failed_result():
    broken = MagicMock()
    broken.send.side_effect = RuntimeError("boom")
    dispatcher = NotificationDispatcher(broken, RecordingBackend())
    result = dispatcher.send_code("ana@corp.com", "482913", Channel.EMAIL)
    assert result.success is False


def test_console_backend_withholds_body_unless_revealing(caplog):
    caplog.set_level(logging.INFO, logger="intranet.auth.notify")
    assert ConsoleBackend(Channel.SMS).send("+5511988887777", "s", "code 482913").success is True
    assert "482913" not in caplog.text
    ConsoleBackend(Channel.SMS, reveal=True).send("+5511988887777", "s", "code 482913")
    assert "482913" in caplog.text


class TestSendGrid:
    def test_posts_v3_payload(self):
        backend = SendGridEmailBackend("SG.key", "portal@corp.com")
        with patch.object(backend._session, "post") as post:
            result = backend.send("ana@corp.com", "Subject", "Body")
        assert result.success is True
        url = post.call_args.args[0]
        payload = post.call_args.kwargs["json"]
        assert url == SENDGRID_URL
        assert payload["personalizations"][0]["to"][0]["email"] == "ana@corp.com"
        assert payload["from"]["email"] == "portal@corp.com"
        assert backend._session.headers["Authorization"] == "Bearer SG.key"

    def test_http_error_is_reported(self):
        backend = SendGridEmailBackend("SG.key", "portal@corp.com")
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("401 Unauthorized")
        with patch.object(backend._session, "post", return_value=response):
            result = backend.send("ana@corp.com", "Subject", "Body")
        assert result.success is False

    def test_connection_error_is_reported(self):
        backend = SendGridEmailBackend("SG.key", "portal@corp.com")
        with patch.object(backend._session, "post", side_effect=requests.ConnectionError("down")):
            assert backend.send("ana@corp.com", "Subject", "Body").success is False


class TestTwilio:
    def test_sends_from_configured_number(self):
        with patch("auth.notify.Client") as client_cls:
            backend = TwilioSmsBackend("AC123", "token", "+15550001111")
            result = backend.send("+5511988887777", "ignored", "Your code")
        assert result.success is True
        client_cls.assert_called_once_with("AC123", "token")
        client_cls.return_value.messages.create.assert_called_once_with(
            body="Your code", to="+5511988887777", from_="+15550001111"
        )

    def test_twilio_error_is_reported(self):
        with patch("auth.notify.Client") as client_cls:
            client_cls.return_value.messages.create.side_effect = TwilioException("invalid number")
            backend = TwilioSmsBackend("AC123", "token", "+15550001111")
            result = backend.send("+5511988887777", "ignored", "Your code")
        assert result.success is False


def test_from_settings_falls_back_to_console():
    dispatcher = NotificationDispatcher.from_settings(make_settings())
    assert isinstance(dispatcher._backends[Channel.EMAIL], ConsoleBackend)
    assert isinstance(dispatcher._backends[Channel.SMS], ConsoleBackend)


def test_from_settings_uses_configured_providers():
    settings = make_settings(
        sendgrid_api_key="SG.key",
        twilio_account_sid="AC123",
        twilio_auth_token="token",
        twilio_from_number="+15550001111",
    )
    with patch("auth.notify.Client"):
        dispatcher = NotificationDispatcher.from_settings(settings)
    assert isinstance(dispatcher._backends[Channel.EMAIL], SendGridEmailBackend)
    assert isinstance(dispatcher._backends[Channel.SMS], TwilioSmsBackend)
