"""
Web Push 发送（VAPID）

每个有效订阅独立发送；任一订阅成功即视为渠道成功。
推送服务返回 404/410 表示订阅已失效，端点通过 ChannelResult.gone_endpoints 返回，
由分发器从客户偏好中移除。
"""
from __future__ import annotations

import json
import logging

from pywebpush import WebPushException, webpush

from fulfillment.core.config import Settings

from .base import ChannelResult, NotificationMessage, Recipient

logger = logging.getLogger(__name__)

_GONE_STATUS_CODES = (404, 410)


class PushSender:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def configured(self) -> bool:
        return bool(self._settings.VAPID_PUBLIC_KEY and self._settings.VAPID_PRIVATE_KEY)

    def build_payload(self, notification: NotificationMessage) -> str:
        data = notification.data
        order_number = data.get("order_number")
        frontend = self._settings.FRONTEND_URL.rstrip("/")
        url = f"{frontend}/track-order?order={order_number}" if order_number else frontend
        return json.dumps(
            {
                "title": notification.title,
                "body": notification.message,
                "icon": "/icons/icon-192x192.png",
                "badge": "/icons/badge-72x72.png",
                "tag": f"order-{order_number}" if order_number else notification.category.value,
                "requireInteraction": notification.priority.value == "urgent",
                "data": {
                    "url": url,
                    "order_id": str(notification.order_id) if notification.order_id else None,
                    "category": notification.category.value,
                },
            }
        )

    def send(self, recipient: Recipient, notification: NotificationMessage) -> ChannelResult:
        if not self.configured():
            return ChannelResult(success=False, error="Push notifications not configured (missing VAPID keys)")
        subscriptions = [sub for sub in recipient.push_subscriptions if sub.is_active]
        if not subscriptions:
            return ChannelResult(success=False, error="No active push subscriptions")

        payload = self.build_payload(notification)
        sent = 0
        gone: list[str] = []
        errors: list[str] = []
        for sub in subscriptions:
            try:
                webpush(
                    subscription_info={
                        "endpoint": sub.endpoint,
                        "keys": {"p256dh": sub.keys.p256dh, "auth": sub.keys.auth},
                    },
                    data=payload,
                    vapid_private_key=self._settings.VAPID_PRIVATE_KEY,
                    vapid_claims={"sub": self._settings.VAPID_SUBJECT},
                    ttl=self._settings.PUSH_TTL_SECONDS,
                    timeout=self._settings.HTTP_TIMEOUT_SECONDS,
                )
                sent += 1
            except WebPushException as e:
                status = e.response.status_code if e.response is not None else None
                if status in _GONE_STATUS_CODES:
                    gone.append(sub.endpoint)
                    logger.info(f"Push subscription gone ({status}): {sub.endpoint}")
                else:
                    errors.append(str(e))
                    logger.warning(f"Push to {sub.endpoint} failed: {e}")

        if sent:
            return ChannelResult(
                success=True,
                provider="webpush",
                gone_endpoints=tuple(gone),
                details={"sent": sent, "total": len(subscriptions)},
            )
        error = "; ".join(errors) if errors else "All push subscriptions expired"
        return ChannelResult(
            success=False,
            error=error,
            provider="webpush",
            gone_endpoints=tuple(gone),
            details={"sent": 0, "total": len(subscriptions)},
        )
