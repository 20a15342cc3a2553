from __future__ import annotations

import json
import smtplib
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest
from pywebpush import WebPushException

from fulfillment.core.config import settings
from fulfillment.enums import NotificationCategory, NotificationPriority
from fulfillment.integrations.channels import (
    EmailSender,
    NotificationMessage,
    PushSender,
    Recipient,
    SmsSender,
)
from fulfillment.integrations.channels import push_sender
from fulfillment.integrations.channels.email_sender import render_email
from fulfillment.integrations.channels.sms_sender import (
    format_tunisian_phone,
    is_valid_tunisian_phone,
    order_status_sms,
    truncate_sms,
)
from fulfillment.models.documents import PushKeys, PushSubscriptionRecord

NO_SMS_PROVIDER = {
    "TUNISIE_TELECOM_API_KEY": None,
    "ORANGE_SMS_TOKEN": None,
    "ORANGE_SMS_SENDER_ADDRESS": None,
    "TWILIO_ACCOUNT_SID": None,
    "TWILIO_AUTH_TOKEN": None,
    "TWILIO_PHONE_NUMBER": None,
}

SHIPPED = {
    "order_number": "ORD-20261018-AB12",
    "tracking_code": "TRK-9F3K2L",
    "status": "shipped",
    "status_label": "Expédiée",
    "previous_status_label": "En préparation",
    "estimated_delivery": "22/10/2026",
    "total": "131.000 TND",
}


def _recipient(**overrides) -> Recipient:
    values = {
        "customer_id": 1,
        "name": "Amine Ben Salah",
        "email": "amine@example.com",
        "phone": "98 123 456",
    }
    values.update(overrides)
    return Recipient(**values)


def _order_update(data: dict | None = None, **overrides) -> NotificationMessage:
    values = {
        "category": NotificationCategory.order_update,
        "title": "Mise à jour commande ORD-20261018-AB12",
        "message": "Le statut de votre commande ORD-20261018-AB12 est maintenant : Expédiée.",
        "data": SHIPPED if data is None else data,
    }
    values.update(overrides)
    return NotificationMessage(**values)


def _mock_client(handler):
    return lambda self: httpx.Client(transport=httpx.MockTransport(handler))


# ------------------------------------------------------------
# 短信
# ------------------------------------------------------------


@pytest.mark.parametrize(
    "raw",
    ["98123456", "98 123 456", "098123456", "+216 98 123 456", "0021698123456", "216-98-123-456"],
)
def test_format_tunisian_phone(raw: str) -> None:
    assert format_tunisian_phone(raw) == "+21698123456"


def test_is_valid_tunisian_phone() -> None:
    assert is_valid_tunisian_phone("+21698123456")
    assert not is_valid_tunisian_phone("+2169812345")
    assert not is_valid_tunisian_phone("+33612345678")
    assert not is_valid_tunisian_phone(format_tunisian_phone("12345"))


def test_truncate_sms() -> None:
    assert truncate_sms("court") == "court"
    assert truncate_sms("x" * 160) == "x" * 160
    text = truncate_sms("x" * 200)
    assert len(text) == 160
    assert text.endswith("...")


def test_order_status_sms_templates() -> None:
    assert "TRK-9F3K2L" in order_status_sms(SHIPPED, "https://stes.tn")
    confirmed = order_status_sms({"order_number": "ORD-1", "status": "confirmed"}, "https://stes.tn")
    assert "https://stes.tn/track-order?order=ORD-1" in confirmed
    assert order_status_sms({"order_number": "ORD-1", "status": "cancelled"}, "") == (
        "Mise à jour commande ORD-1: cancelled"
    )
    assert order_status_sms({"status": "shipped"}, "") is None


def test_sms_compose_falls_back_to_title_and_message() -> None:
    sender = SmsSender(settings)
    message = NotificationMessage(
        category=NotificationCategory.promotion, title="Soldes", message="x" * 300
    )

    text = sender.compose(message)

    assert text.startswith("Soldes: ")
    assert len(text) == 160


def test_sms_without_provider() -> None:
    sender = SmsSender(settings.model_copy(update=NO_SMS_PROVIDER))

    result = sender.send(_recipient(), _order_update())

    assert not result.success
    assert result.error == "No SMS provider configured"


def test_sms_rejects_invalid_or_missing_phone() -> None:
    sender = SmsSender(settings.model_copy(update={**NO_SMS_PROVIDER, "TWILIO_ACCOUNT_SID": "AC1"}))

    result = sender.send(_recipient(phone="12345"), _order_update())
    assert not result.success
    assert result.error.startswith("Invalid Tunisian phone number")

    result = sender.send(_recipient(phone=None), _order_update())
    assert result.error == "Customer has no phone number"


def test_sms_provider_priority() -> None:
    twilio = {"TWILIO_ACCOUNT_SID": "AC1", "TWILIO_AUTH_TOKEN": "secret", "TWILIO_PHONE_NUMBER": "+15005550006"}
    orange = {"ORANGE_SMS_TOKEN": "tok", "ORANGE_SMS_SENDER_ADDRESS": "+21670000000"}

    assert SmsSender(settings.model_copy(update={**NO_SMS_PROVIDER, **twilio})).provider() == "twilio"
    assert SmsSender(settings.model_copy(update={**NO_SMS_PROVIDER, **twilio, **orange})).provider() == "orange"
    both = {**NO_SMS_PROVIDER, **twilio, **orange, "TUNISIE_TELECOM_API_KEY": "tt"}
    assert SmsSender(settings.model_copy(update=both)).provider() == "tunisietel"


def test_sms_via_twilio(monkeypatch) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={"sid": "SM123"})

    monkeypatch.setattr(SmsSender, "_client", _mock_client(handler))
    sender = SmsSender(
        settings.model_copy(
            update={
                **NO_SMS_PROVIDER,
                "TWILIO_ACCOUNT_SID": "AC1",
                "TWILIO_AUTH_TOKEN": "secret",
                "TWILIO_PHONE_NUMBER": "+15005550006",
            }
        )
    )

    result = sender.send(_recipient(), _order_update())

    assert result.success
    assert result.provider == "twilio"
    assert result.message_id == "SM123"
    request = requests[0]
    assert request.url.path.endswith("/Accounts/AC1/Messages.json")
    assert request.headers["Authorization"].startswith("Basic ")
    form = parse_qs(request.content.decode())
    assert form["To"] == ["+21698123456"]
    assert "TRK-9F3K2L" in form["Body"][0]


def test_sms_via_tunisie_telecom_http_error(monkeypatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer tt-key"
        assert json.loads(request.content)["to"] == "+21698123456"
        return httpx.Response(500, json={"error": "unavailable"})

    monkeypatch.setattr(SmsSender, "_client", _mock_client(handler))
    sender = SmsSender(settings.model_copy(update={**NO_SMS_PROVIDER, "TUNISIE_TELECOM_API_KEY": "tt-key"}))

    result = sender.send(_recipient(), _order_update())

    assert not result.success
    assert result.provider == "tunisietel"
    assert result.error.startswith("tunisietel:")


def test_sms_via_orange(monkeypatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/outbound/tel:+21670000000/requests")
        body = json.loads(request.content)["outboundSMSMessageRequest"]
        assert body["address"] == "tel:+21698123456"
        return httpx.Response(
            201,
            json={"outboundSMSMessageRequest": {"resourceReference": {"resourceURL": "https://orange/r/1"}}},
        )

    monkeypatch.setattr(SmsSender, "_client", _mock_client(handler))
    sender = SmsSender(
        settings.model_copy(
            update={**NO_SMS_PROVIDER, "ORANGE_SMS_TOKEN": "tok", "ORANGE_SMS_SENDER_ADDRESS": "+21670000000"}
        )
    )

    result = sender.send(_recipient(), _order_update())

    assert result.success
    assert result.message_id == "https://orange/r/1"


# ------------------------------------------------------------
# 邮件
# ------------------------------------------------------------


def test_render_order_status_email() -> None:
    subject, html, text = render_email(_order_update(), _recipient(), "https://stes.tn")

    assert subject == "Mise à jour de votre commande ORD-20261018-AB12 - Expédiée"
    assert "ORD-20261018-AB12" in html
    assert "En préparation" in html
    assert "TRK-9F3K2L" in html
    assert "22/10/2026" in html
    assert "https://stes.tn/track-order?order=ORD-20261018-AB12" in html
    assert text.startswith("Bonjour Amine Ben Salah,")
    assert text.endswith("Suivez votre commande : https://stes.tn/track-order?order=ORD-20261018-AB12")


def test_render_delivered_email() -> None:
    data = {**SHIPPED, "status": "delivered", "status_label": "Livrée"}
    message = _order_update(data, category=NotificationCategory.delivery, priority=NotificationPriority.urgent)

    subject, html, _ = render_email(message, _recipient(), "https://stes.tn")

    assert subject == "Votre commande ORD-20261018-AB12 a été livrée !"
    assert "Félicitations Amine Ben Salah" in html
    assert "131.000 TND" in html


def test_render_generic_email_escapes_content() -> None:
    message = NotificationMessage(
        category=NotificationCategory.promotion,
        title="Soldes d'été",
        message="<b>-20%</b> sur les robots",
    )

    subject, html, text = render_email(message, _recipient(), "https://stes.tn")

    assert subject == "Soldes d'été"
    assert "&lt;b&gt;-20%&lt;/b&gt;" in html
    assert "track-order" not in html
    assert "Suivez votre commande" not in text


def test_email_not_configured() -> None:
    sender = EmailSender(settings.model_copy(update={"SMTP_HOST": None}))

    result = sender.send(_recipient(), _order_update())

    assert not result.success
    assert result.error == "Email channel not configured"
    assert sender.send(_recipient(email=None), _order_update()).error == "Customer has no email address"


def test_email_delivery(monkeypatch) -> None:
    delivered = []
    monkeypatch.setattr(EmailSender, "_deliver", lambda self, to, msg: delivered.append((to, msg)))
    sender = EmailSender(
        settings.model_copy(
            update={"SMTP_HOST": "smtp.stes.tn", "EMAILS_FROM_EMAIL": "noreply@stes.tn", "EMAILS_FROM_NAME": "STES"}
        )
    )

    result = sender.send(_recipient(), _order_update())

    assert result.success
    assert result.provider == "smtp"
    to, msg = delivered[0]
    assert to == "amine@example.com"
    assert msg["Message-ID"] == result.message_id
    assert "noreply@stes.tn" in msg["From"]
    assert [part.get_content_type() for part in msg.get_payload()] == ["text/plain", "text/html"]


def test_email_smtp_failure(monkeypatch) -> None:
    def refuse(self, to, msg):
        raise smtplib.SMTPRecipientsRefused({to: (550, b"unknown user")})

    monkeypatch.setattr(EmailSender, "_deliver", refuse)
    sender = EmailSender(
        settings.model_copy(update={"SMTP_HOST": "smtp.stes.tn", "EMAILS_FROM_EMAIL": "noreply@stes.tn"})
    )

    result = sender.send(_recipient(), _order_update())

    assert not result.success
    assert result.provider == "smtp"


def test_email_deliver_requires_smtp_host() -> None:
    sender = EmailSender(settings.model_copy(update={"SMTP_HOST": None}))

    with pytest.raises(smtplib.SMTPException, match="SMTP host not configured"):
        sender._deliver("amine@example.com", sender._build_message("amine@example.com", "Objet", "<p>x</p>", "x"))


def test_email_deliver_over_starttls(monkeypatch) -> None:
    calls = []

    class FakeSMTP:
        def __init__(self, host, port, timeout=None):
            calls.append(("connect", host, port))

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self):
            calls.append(("starttls",))

        def login(self, user, password):
            calls.append(("login", user))

        def sendmail(self, sender, to, body):
            calls.append(("sendmail", sender, tuple(to)))

    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    sender = EmailSender(
        settings.model_copy(
            update={
                "SMTP_HOST": "smtp.stes.tn",
                "SMTP_PORT": 587,
                "SMTP_TLS": True,
                "SMTP_SSL": False,
                "SMTP_USER": "mailer",
                "SMTP_PASSWORD": "secret",
                "EMAILS_FROM_EMAIL": "noreply@stes.tn",
            }
        )
    )

    result = sender.send(_recipient(), _order_update())

    assert result.success
    assert calls == [
        ("connect", "smtp.stes.tn", 587),
        ("starttls",),
        ("login", "mailer"),
        ("sendmail", "noreply@stes.tn", ("amine@example.com",)),
    ]


# ------------------------------------------------------------
# Web Push
# ------------------------------------------------------------

VAPID = {"VAPID_PUBLIC_KEY": "BPublic", "VAPID_PRIVATE_KEY": "private-key"}


def _subscription(endpoint: str, *, active: bool = True) -> PushSubscriptionRecord:
    return PushSubscriptionRecord(endpoint=endpoint, keys=PushKeys(p256dh="BNc", auth="tBH"), is_active=active)


def test_push_not_configured() -> None:
    sender = PushSender(settings.model_copy(update={"VAPID_PUBLIC_KEY": None, "VAPID_PRIVATE_KEY": None}))

    result = sender.send(_recipient(push_subscriptions=(_subscription("https://push/a"),)), _order_update())

    assert not result.success
    assert result.error.startswith("Push notifications not configured")


def test_push_without_active_subscriptions() -> None:
    sender = PushSender(settings.model_copy(update=VAPID))

    result = sender.send(
        _recipient(push_subscriptions=(_subscription("https://push/a", active=False),)), _order_update()
    )

    assert not result.success
    assert result.error == "No active push subscriptions"


def test_push_payload() -> None:
    sender = PushSender(settings.model_copy(update={**VAPID, "FRONTEND_URL": "https://stes.tn/"}))

    payload = json.loads(sender.build_payload(_order_update(priority=NotificationPriority.urgent, order_id=7)))

    assert payload["tag"] == "order-ORD-20261018-AB12"
    assert payload["requireInteraction"] is True
    assert payload["data"] == {
        "url": "https://stes.tn/track-order?order=ORD-20261018-AB12",
        "order_id": "7",
        "category": "order_update",
    }


def test_push_reports_gone_endpoints(monkeypatch) -> None:
    calls = []

    def fake_webpush(subscription_info, data, **kwargs):
        calls.append(subscription_info["endpoint"])
        if subscription_info["endpoint"] == "https://push/gone":
            raise WebPushException("gone", response=SimpleNamespace(status_code=410))

    monkeypatch.setattr(push_sender, "webpush", fake_webpush)
    sender = PushSender(settings.model_copy(update=VAPID))
    recipient = _recipient(push_subscriptions=(_subscription("https://push/ok"), _subscription("https://push/gone")))

    result = sender.send(recipient, _order_update())

    assert result.success
    assert result.gone_endpoints == ("https://push/gone",)
    assert result.details == {"sent": 1, "total": 2}
    assert calls == ["https://push/ok", "https://push/gone"]


def test_push_all_failed(monkeypatch) -> None:
    def fake_webpush(subscription_info, data, **kwargs):
        status = 404 if subscription_info["endpoint"] == "https://push/gone" else 500
        raise WebPushException(f"push error {status}", response=SimpleNamespace(status_code=status))

    monkeypatch.setattr(push_sender, "webpush", fake_webpush)
    sender = PushSender(settings.model_copy(update=VAPID))
    recipient = _recipient(push_subscriptions=(_subscription("https://push/down"), _subscription("https://push/gone")))

    result = sender.send(recipient, _order_update())

    assert not result.success
    assert result.gone_endpoints == ("https://push/gone",)
    assert "push error 500" in result.error
