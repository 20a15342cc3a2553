from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlmodel import select

from fulfillment.api.errors import NotFoundError, ValidationError
from fulfillment.core.config import settings
from fulfillment.enums import (
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
)
from fulfillment.integrations.channels import NotificationMessage
from fulfillment.models import Customer, NotificationLog
from fulfillment.models.documents import PushKeys, QuietHours
from fulfillment.services.notification_service import NotificationService, in_quiet_hours

from conftest import FakeSender

# 00:30 à Tunis (UTC+1)
LATE_NIGHT = datetime(2026, 1, 15, 23, 30, tzinfo=timezone.utc)


def _message(**overrides) -> NotificationMessage:
    values = {
        "category": NotificationCategory.reminder,
        "title": "Rappel",
        "message": "Votre panier vous attend.",
    }
    values.update(overrides)
    return NotificationMessage(**values)


def _logs(db, customer_id: int) -> list[NotificationLog]:
    return list(db.exec(select(NotificationLog).where(NotificationLog.customer_id == customer_id)).all())


# ------------------------------------------------------------
# 免打扰
# ------------------------------------------------------------


def test_in_quiet_hours_across_midnight() -> None:
    quiet = QuietHours(enabled=True, start="22:00", end="08:00")

    assert in_quiet_hours(quiet, "UTC", datetime(2026, 3, 1, 22, 0, tzinfo=timezone.utc))
    assert in_quiet_hours(quiet, "UTC", datetime(2026, 3, 1, 3, 15, tzinfo=timezone.utc))
    assert in_quiet_hours(quiet, "UTC", datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc))
    assert not in_quiet_hours(quiet, "UTC", datetime(2026, 3, 1, 8, 1, tzinfo=timezone.utc))
    assert not in_quiet_hours(quiet, "UTC", datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


def test_in_quiet_hours_same_day_window() -> None:
    quiet = QuietHours(enabled=True, start="12:00", end="14:00")

    assert in_quiet_hours(quiet, "UTC", datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc))
    assert not in_quiet_hours(quiet, "UTC", datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc))
    assert not in_quiet_hours(quiet, "UTC", datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc))


def test_in_quiet_hours_uses_customer_timezone() -> None:
    quiet = QuietHours(enabled=True, start="22:00", end="08:00")

    assert in_quiet_hours(quiet, "Africa/Tunis", LATE_NIGHT)
    # 21:30 UTC = 22:30 à Tunis
    assert in_quiet_hours(quiet, "Africa/Tunis", datetime(2026, 1, 15, 21, 30, tzinfo=timezone.utc))
    assert not in_quiet_hours(quiet, "UTC", datetime(2026, 1, 15, 21, 30, tzinfo=timezone.utc))


def test_in_quiet_hours_disabled_or_unknown_timezone() -> None:
    assert not in_quiet_hours(QuietHours(), "Africa/Tunis", LATE_NIGHT)
    quiet = QuietHours(enabled=True, start="23:00", end="23:59")
    assert in_quiet_hours(quiet, "Not/AZone", LATE_NIGHT)


def test_quiet_hours_hold_normal_notifications(db, customer, senders) -> None:
    notifier = NotificationService(db, settings, senders=senders, clock=lambda: LATE_NIGHT)
    notifier.update_preferences(customer.id, {"quiet_hours": {"enabled": True}})

    result = notifier.dispatch(customer.id, _message())

    assert not result.success
    assert result.reason == "quiet_hours"
    assert all(o.skipped and o.reason == "quiet_hours" for o in result.channels)
    assert _logs(db, customer.id) == []
    assert senders[NotificationChannel.email].sent == []


def test_quiet_hours_let_urgent_notifications_through(db, customer, senders) -> None:
    notifier = NotificationService(db, settings, senders=senders, clock=lambda: LATE_NIGHT)
    notifier.update_preferences(customer.id, {"quiet_hours": {"enabled": True}})

    result = notifier.dispatch(customer.id, _message(priority=NotificationPriority.urgent))

    assert result.success
    assert result.outcome(NotificationChannel.email).success
    logs = _logs(db, customer.id)
    assert len(logs) == 1
    assert logs[0].status == NotificationStatus.sent
    assert logs[0].sent_at is not None


# ------------------------------------------------------------
# 偏好与分发
# ------------------------------------------------------------


def test_default_preferences(notifier, customer) -> None:
    prefs = notifier.get_preferences(customer.id)

    assert prefs.email["enabled"] and prefs.email["promotions"]
    assert not prefs.sms["enabled"]
    assert not prefs.push["enabled"]
    assert prefs.timezone == "Africa/Tunis"
    assert prefs.quiet_hours["enabled"] is False


def test_disabled_channels_are_skipped_without_log(db, notifier, customer, senders) -> None:
    result = notifier.dispatch(customer.id, _message(category=NotificationCategory.order_update))

    assert result.success
    sms = result.outcome(NotificationChannel.sms)
    assert sms.skipped and sms.reason == "disabled_by_preference"
    assert senders[NotificationChannel.sms].sent == []
    assert [log.channel for log in _logs(db, customer.id)] == [NotificationChannel.email]


def test_category_switch_is_respected(db, notifier, customer, senders) -> None:
    notifier.update_preferences(
        customer.id, {"sms": {"enabled": True, "order_updates": True}, "email": {"order_updates": False}}
    )

    result = notifier.dispatch(customer.id, _message(category=NotificationCategory.order_update))

    assert result.outcome(NotificationChannel.email).reason == "disabled_by_preference"
    assert result.outcome(NotificationChannel.sms).success
    recipient, _ = senders[NotificationChannel.sms].sent[0]
    assert recipient.phone == "+21698123456"


def test_contact_overrides_take_precedence(notifier, customer, senders) -> None:
    notifier.dispatch(
        customer.id,
        _message(),
        (NotificationChannel.email,),
        email="snapshot@example.com",
    )

    recipient, _ = senders[NotificationChannel.email].sent[0]
    assert recipient.email == "snapshot@example.com"
    assert recipient.name == "Amine Ben Salah"


def test_send_promotion_respects_promotions_switch(db, notifier, customer, senders) -> None:
    notifier.update_preferences(customer.id, {"email": {"promotions": False}})

    result = notifier.send_promotion(customer.id, "Soldes d'été", "-20% sur les pompes")

    assert not result.success
    assert result.reason == "disabled_by_preference"
    assert senders[NotificationChannel.email].sent == []
    assert _logs(db, customer.id) == []


def test_send_promotion_by_email(db, notifier, customer, senders) -> None:
    result = notifier.send_promotion(customer.id, "Soldes d'été", "-20% sur les pompes", {"code": "ETE20"})

    assert result.success
    _, sent = senders[NotificationChannel.email].sent[0]
    assert sent.category == NotificationCategory.promotion
    assert sent.priority == NotificationPriority.low
    log = _logs(db, customer.id)[0]
    assert log.metadata_["data"] == {"code": "ETE20"}
    assert log.metadata_["provider"] == "fake"


def test_failed_sender_writes_failed_log(db, customer) -> None:
    notifier = NotificationService(db, settings, senders={NotificationChannel.email: FakeSender(success=False)})

    result = notifier.dispatch(customer.id, _message(), (NotificationChannel.email,))

    assert not result.success
    log = _logs(db, customer.id)[0]
    assert log.status == NotificationStatus.failed
    assert log.failure_reason == "fake failure"
    assert log.sent_at is None


def test_raising_sender_does_not_block_other_channels(db, notifier, customer, senders) -> None:
    class Broken:
        def send(self, recipient, notification):
            raise RuntimeError("smtp down")

    notifier.update_preferences(customer.id, {"sms": {"enabled": True}})
    senders[NotificationChannel.email] = Broken()

    result = notifier.dispatch(customer.id, _message())

    assert result.success
    assert result.outcome(NotificationChannel.email).reason == "smtp down"
    assert result.outcome(NotificationChannel.sms).success
    statuses = {log.channel: log.status for log in _logs(db, customer.id)}
    assert statuses == {
        NotificationChannel.email: NotificationStatus.failed,
        NotificationChannel.sms: NotificationStatus.sent,
    }


def test_missing_sender_is_a_failure(db, customer) -> None:
    notifier = NotificationService(db, settings, senders={})

    result = notifier.dispatch(customer.id, _message(), (NotificationChannel.email,))

    assert not result.success
    assert result.outcome(NotificationChannel.email).reason == "No sender configured for email"


def test_unknown_customer(notifier) -> None:
    result = notifier.dispatch(42, _message())

    assert not result.success
    assert result.reason == "customer_not_found"
    assert result.channels == []


def test_invalid_timezone_is_rejected(notifier, customer) -> None:
    with pytest.raises(ValidationError) as exc:
        notifier.update_preferences(customer.id, {"timezone": "Mars/Olympus"})
    assert exc.value.code == 400301


def test_quiet_hours_partial_update_keeps_other_fields(notifier, customer) -> None:
    prefs = notifier.update_preferences(customer.id, {"quiet_hours": {"enabled": True, "start": "21:30"}})

    assert prefs.quiet_hours == {"enabled": True, "start": "21:30", "end": "08:00"}


# ------------------------------------------------------------
# Web Push 订阅
# ------------------------------------------------------------


def test_subscribe_push_enables_channel(notifier, customer) -> None:
    keys = PushKeys(p256dh="BNc", auth="tBH")
    notifier.subscribe_push(customer.id, "https://push.example/a", keys, device_type="android")
    prefs = notifier.subscribe_push(customer.id, "https://push.example/a", keys, device_type="desktop")

    assert prefs.push["enabled"] is True
    assert len(prefs.push_subscriptions) == 1
    assert prefs.push_subscriptions[0]["device_type"] == "desktop"


def test_gone_push_subscriptions_are_pruned(db, customer, senders) -> None:
    keys = PushKeys(p256dh="BNc", auth="tBH")
    senders[NotificationChannel.push] = FakeSender(gone=("https://push.example/old",))
    notifier = NotificationService(db, settings, senders=senders)
    notifier.subscribe_push(customer.id, "https://push.example/old", keys)
    notifier.subscribe_push(customer.id, "https://push.example/new", keys)

    result = notifier.dispatch(customer.id, _message(), (NotificationChannel.push,))

    assert result.success
    recipient, _ = senders[NotificationChannel.push].sent[0]
    assert len(recipient.push_subscriptions) == 2
    endpoints = [sub["endpoint"] for sub in notifier.get_preferences(customer.id).push_subscriptions]
    assert endpoints == ["https://push.example/new"]


def test_unsubscribe_last_endpoint_disables_push(notifier, customer) -> None:
    notifier.subscribe_push(customer.id, "https://push.example/a", PushKeys(p256dh="BNc", auth="tBH"))

    prefs = notifier.unsubscribe_push(customer.id, "https://push.example/a")

    assert prefs.push_subscriptions == []
    assert prefs.push["enabled"] is False
    with pytest.raises(NotFoundError) as exc:
        notifier.unsubscribe_push(customer.id, "https://push.example/a")
    assert exc.value.code == 404301


# ------------------------------------------------------------
# 历史与统计
# ------------------------------------------------------------


def test_history_filters_and_mark_read(notifier, customer) -> None:
    notifier.update_preferences(customer.id, {"sms": {"enabled": True}})
    notifier.dispatch(customer.id, _message())
    notifier.dispatch(customer.id, _message(category=NotificationCategory.welcome, title="Bienvenue"))

    rows, count = notifier.history(customer.id)
    assert count == 4
    sms_rows, sms_count = notifier.history(customer.id, channel=NotificationChannel.sms)
    assert sms_count == 2
    assert all(r.channel == NotificationChannel.sms for r in sms_rows)
    _, welcome_count = notifier.history(customer.id, category=NotificationCategory.welcome)
    assert welcome_count == 2

    log = notifier.mark_read(customer.id, rows[0].id)
    assert log.status == NotificationStatus.read
    first_read = log.read_at
    assert notifier.mark_read(customer.id, rows[0].id).read_at == first_read


def test_mark_read_checks_owner(notifier, customer) -> None:
    notifier.dispatch(customer.id, _message(), (NotificationChannel.email,))
    rows, _ = notifier.history(customer.id)

    with pytest.raises(NotFoundError) as exc:
        notifier.mark_read(customer.id + 1, rows[0].id)
    assert exc.value.code == 404302


def test_channel_stats(db, customer, senders) -> None:
    senders[NotificationChannel.sms] = FakeSender(success=False)
    notifier = NotificationService(db, settings, senders=senders)
    notifier.update_preferences(customer.id, {"sms": {"enabled": True}})
    notifier.dispatch(customer.id, _message())
    notifier.dispatch(customer.id, _message())

    stats = notifier.stats(customer_id=customer.id)

    assert stats["email"] == {"total": 2, "sent": 2}
    assert stats["sms"] == {"total": 2, "failed": 2}
    assert "push" not in stats


# ------------------------------------------------------------
# API
# ------------------------------------------------------------


def test_preferences_api(client, customer_headers) -> None:
    r = client.get("/api/v1/notifications/preferences", headers=customer_headers)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["email"]["enabled"] is True
    assert data["sms"]["enabled"] is False
    assert data["timezone"] == "Africa/Tunis"

    r = client.put(
        "/api/v1/notifications/preferences",
        headers=customer_headers,
        json={"sms": {"enabled": True, "delivery_updates": True}, "quiet_hours": {"enabled": True, "end": "07:00"}},
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["sms"]["enabled"] is True
    assert data["sms"]["delivery_updates"] is True
    assert data["sms"]["promotions"] is False
    assert data["quiet_hours"] == {"enabled": True, "start": "22:00", "end": "07:00"}


def test_preferences_api_validation(client, customer_headers) -> None:
    r = client.put(
        "/api/v1/notifications/preferences",
        headers=customer_headers,
        json={"timezone": "Mars/Olympus"},
    )
    assert r.status_code == 400
    assert r.json()["code"] == 400301

    r = client.put(
        "/api/v1/notifications/preferences",
        headers=customer_headers,
        json={"quiet_hours": {"start": "25:00"}},
    )
    assert r.status_code == 422
    assert r.json()["code"] == 422000


def test_preferences_api_requires_customer(client, admin_headers) -> None:
    r = client.get("/api/v1/notifications/preferences")
    assert r.status_code in (401, 403)
    r = client.get("/api/v1/notifications/preferences", headers=admin_headers)
    assert r.status_code == 403


def test_push_subscription_api(client, customer_headers) -> None:
    body = {
        "endpoint": "https://push.example/device-1",
        "keys": {"p256dh": "BNc", "auth": "tBH"},
        "user_agent": "Mozilla/5.0",
        "device_type": "mobile",
    }
    r = client.post("/api/v1/notifications/push/subscribe", headers=customer_headers, json=body)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["push"]["enabled"] is True
    assert data["push_subscriptions"][0]["endpoint"] == "https://push.example/device-1"
    assert "keys" not in data["push_subscriptions"][0]

    r = client.post(
        "/api/v1/notifications/push/unsubscribe",
        headers=customer_headers,
        json={"endpoint": "https://push.example/device-1"},
    )
    assert r.status_code == 200
    assert r.json()["data"]["push"]["enabled"] is False

    r = client.post(
        "/api/v1/notifications/push/unsubscribe",
        headers=customer_headers,
        json={"endpoint": "https://push.example/device-1"},
    )
    assert r.status_code == 404
    assert r.json()["code"] == 404301


def test_history_read_and_stats_api(client, notifier, customer, customer_headers) -> None:
    notifier.dispatch(customer.id, _message(title="Rappel panier"))

    r = client.get("/api/v1/notifications/history", headers=customer_headers)
    assert r.status_code == 200
    page = r.json()["data"]
    assert page["count"] == 1
    log = page["data"][0]
    assert log["title"] == "Rappel panier"
    assert log["status"] == "sent"

    r = client.get("/api/v1/notifications/stats", headers=customer_headers)
    assert r.json()["data"] == {"email": {"total": 1, "sent": 1}}

    r = client.post(f"/api/v1/notifications/{log['id']}/read", headers=customer_headers)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "read"
    assert r.json()["data"]["read_at"] is not None

    r = client.post("/api/v1/notifications/1/read", headers=customer_headers)
    assert r.status_code == 404
    assert r.json()["code"] == 404302


def test_admin_send_api(client, customer, admin_headers, customer_headers, senders) -> None:
    body = {
        "customer_id": customer.id,
        "category": "promotion",
        "title": "Soldes",
        "message": "-20% sur les robots",
    }
    r = client.post("/api/v1/notifications/admin/send", headers=customer_headers, json=body)
    assert r.status_code == 403

    r = client.post("/api/v1/notifications/admin/send", headers=admin_headers, json=body)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["success"] is True
    outcomes = {c["channel"]: c for c in data["channels"]}
    assert outcomes["email"]["success"] is True
    assert outcomes["email"]["log_id"] is not None
    assert outcomes["push"]["skipped"] is True
    assert len(senders[NotificationChannel.email].sent) == 1


def test_vapid_public_key_api(client) -> None:
    r = client.get("/api/v1/notifications/vapid-public-key")
    assert r.status_code == 200
    assert r.json()["data"] == {"public_key": settings.VAPID_PUBLIC_KEY}


def test_admin_logs_api(client, db, notifier, customer, senders, admin_headers, customer_headers) -> None:
    senders[NotificationChannel.sms] = FakeSender(success=False)
    notifier.update_preferences(customer.id, {"sms": {"enabled": True}})
    notifier.dispatch(customer.id, _message())
    other = Customer(first_name="Other", email="other@example.com", phone="+21622333444")
    db.add(other)
    db.commit()
    notifier.dispatch(other.id, _message(category=NotificationCategory.welcome), (NotificationChannel.email,))

    r = client.get("/api/v1/notifications/admin/logs", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["data"]["count"] == 3

    r = client.get(
        "/api/v1/notifications/admin/logs",
        headers=admin_headers,
        params={"status": "failed", "channel": "sms"},
    )
    rows = r.json()["data"]["data"]
    assert len(rows) == 1
    assert rows[0]["customer_id"] == customer.id
    assert rows[0]["failure_reason"]

    r = client.get(
        "/api/v1/notifications/admin/logs",
        headers=admin_headers,
        params={"customer_id": other.id, "category": "welcome"},
    )
    assert [row["customer_id"] for row in r.json()["data"]["data"]] == [other.id]

    r = client.get("/api/v1/notifications/admin/logs", headers=admin_headers, params={"page": 2, "page_size": 2})
    assert r.json()["data"]["count"] == 3
    assert len(r.json()["data"]["data"]) == 1

    r = client.get("/api/v1/notifications/admin/logs", headers=admin_headers, params={"page_size": 500})
    assert r.status_code == 422

    r = client.get("/api/v1/notifications/admin/logs", headers=customer_headers)
    assert r.status_code == 403
