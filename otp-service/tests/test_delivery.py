# tests/test_delivery.py

import pytest
from unittest.mock import AsyncMock, patch

from app.config import settings
from app.schemas.otp import Channel, Purpose
from app.services.delivery import ChannelDispatcher, DeliveryOutcome, purpose_label
from app.services.email_service import EmailService
from app.utils.sms_client import SmsClient
from app.utils.whatsapp_client import WhatsAppClient, build_otp_template


async def test_dispatcher_reports_unconfigured_channel():
    dispatcher = ChannelDispatcher({})

    outcome = await dispatcher.send(Channel.WHATSAPP, "+919876543210", "1234", Purpose.SIGNUP)

    assert outcome.success is False
    assert outcome.error == "whatsapp channel not configured"


async def test_dispatcher_turns_adapter_exceptions_into_failures():
    adapter = AsyncMock()
    adapter.send.side_effect = RuntimeError("socket closed")
    dispatcher = ChannelDispatcher({Channel.SMS: adapter})

    outcome = await dispatcher.send(Channel.SMS, "+919876543210", "1234", Purpose.SIGNUP)

    assert outcome.success is False
    assert outcome.error == "socket closed"


async def test_dispatcher_passes_outcome_through():
    adapter = AsyncMock()
    adapter.send.return_value = DeliveryOutcome(success=True, provider="2factor", provider_message_id="abc")
    dispatcher = ChannelDispatcher({Channel.SMS: adapter})

    outcome = await dispatcher.send(Channel.SMS, "+919876543210", "1234", Purpose.LOGIN_SECOND_FACTOR)

    assert outcome.provider_message_id == "abc"
    adapter.send.assert_awaited_once_with("+919876543210", "1234", Purpose.LOGIN_SECOND_FACTOR)


@pytest.mark.parametrize("raw,expected", [
    ("+91 98765 43210", "919876543210"),
    ("09876543210", "919876543210"),
    ("9876543210", "919876543210"),
])
def test_sms_number_normalisation(raw, expected):
    assert SmsClient().normalize_mobile(raw) == expected


@pytest.mark.parametrize("adapter_class,destination", [
    (SmsClient, "+919876543210"),
    (WhatsAppClient, "+919876543210"),
    (EmailService, "shopper@example.com"),
])
async def test_adapters_log_instead_of_sending_in_dry_run(adapter_class, destination):
    assert settings.OTP_DELIVERY_DRY_RUN is True

    outcome = await adapter_class().send(destination, "123456", Purpose.SIGNUP)

    assert outcome.success
    assert outcome.provider == "dry-run"


async def test_sms_client_requires_credentials(monkeypatch):
    monkeypatch.setattr(settings, "OTP_DELIVERY_DRY_RUN", False)
    monkeypatch.setattr(settings, "TWOFACTOR_API_KEY", "")

    outcome = await SmsClient(provider="2factor").send("9876543210", "1234", Purpose.SIGNUP)

    assert outcome.success is False
    assert "TWOFACTOR_API_KEY" in outcome.error


async def test_whatsapp_client_requires_credentials(monkeypatch):
    monkeypatch.setattr(settings, "OTP_DELIVERY_DRY_RUN", False)
    monkeypatch.setattr(settings, "WHATSAPP_ACCESS_TOKEN", "")

    outcome = await WhatsAppClient().send("9876543210", "1234", Purpose.SIGNUP)

    assert outcome.success is False
    assert outcome.error == "WhatsApp service not configured"


def test_whatsapp_template_carries_code_in_body_and_button():
    payload = build_otp_template("4821", "919876543210", "otp2")

    assert payload["to"] == "919876543210"
    assert payload["template"]["name"] == "otp2"
    body, button = payload["template"]["components"]
    assert body["parameters"][0]["text"] == "4821"
    assert button["sub_type"] == "url"
    assert button["parameters"][0]["text"] == "4821"


def test_email_render_uses_template():
    service = EmailService()

    body, subtype = service.render("654321", Purpose.PASSWORD_RECOVERY)

    assert subtype == "html"
    assert "654321" in body
    assert "password reset" in body
    assert "10 minutes" in body
    assert service.subject_for(Purpose.PASSWORD_RECOVERY) == "Your password reset code"


def test_email_render_falls_back_to_plain_text(tmp_path):
    service = EmailService()
    service.templates_dir = str(tmp_path)

    body, subtype = service.render("654321", Purpose.SIGNUP, expires_minutes=5)

    assert subtype == "plain"
    assert body == "Your verification code for account verification is: 654321. This code is valid for 5 minutes."


async def test_email_is_rendered_with_the_record_ttl():
    service = EmailService()
    dispatcher = ChannelDispatcher({Channel.EMAIL: service})

    with patch.object(service, "render", return_value=("body", "plain")) as render:
        outcome = await dispatcher.send(Channel.EMAIL, "shopper@example.com", "654321", Purpose.SIGNUP, 2)

    assert outcome.success
    render.assert_called_once_with("654321", Purpose.SIGNUP, 2)


def test_purpose_labels():
    assert purpose_label(Purpose.LOGIN_SECOND_FACTOR) == "2-factor authentication"
    assert purpose_label(Purpose.AGENT_ORDER_VERIFICATION) == "order verification"
