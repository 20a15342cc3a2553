"""
D17 网关

- 发起：POST {base}/payments/create，签名 = HMAC-SHA256(merchant_id + amount + order_id + timestamp)
- 回调：{"transaction_id", "order_id", "status"}
- 查询：GET {base}/payments/{transaction_id}/status
"""
from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any

from fulfillment.api.errors import GatewayError
from fulfillment.enums import PaymentGateway, PaymentMethod, PaymentStatus

from .base import (
    GatewayNotification,
    HttpGatewayAdapter,
    InitiationResult,
    PaymentRequest,
    WebhookPayloadError,
    optional_str,
    to_millimes,
)


class D17Adapter(HttpGatewayAdapter):
    method = PaymentMethod.d17
    gateway = PaymentGateway.d17
    success_statuses = frozenset({"success", "completed", "paid"})
    failure_statuses = frozenset({"failed", "cancelled", "canceled", "declined", "expired"})

    def enabled(self) -> bool:
        s = self._settings
        return bool(s.D17_ENABLED and s.D17_MERCHANT_ID and s.D17_SECRET_KEY)

    def _base_url(self) -> str:
        return self._settings.D17_BASE_URL.rstrip("/")

    def sign(self, *, amount: int, order_id: str, timestamp: int) -> str:
        data = f"{self._settings.D17_MERCHANT_ID}{amount}{order_id}{timestamp}"
        secret = (self._settings.D17_SECRET_KEY or "").encode()
        return hmac.new(secret, data.encode(), hashlib.sha256).hexdigest()

    def initiate(self, request: PaymentRequest) -> InitiationResult:
        urls = self._return_urls()
        amount = to_millimes(request.amount)
        timestamp = int(time.time() * 1000)
        payload = {
            "merchant_id": self._settings.D17_MERCHANT_ID,
            "amount": amount,
            "currency": request.currency,
            "order_id": request.reference,
            "customer_email": request.email,
            "customer_phone": request.phone,
            "return_url": f"{urls['success']}?ref={request.reference}",
            "cancel_url": f"{urls['cancel']}?ref={request.reference}",
            "webhook_url": self._webhook_url(),
            "timestamp": timestamp,
            "signature": self.sign(amount=amount, order_id=request.reference, timestamp=timestamp),
        }
        data = self._request("POST", f"{self._base_url()}/payments/create", json=payload)
        transaction_id = optional_str(data.get("transaction_id"))
        payment_url = optional_str(data.get("payment_url"))
        if not transaction_id or not payment_url:
            raise GatewayError(self.gateway.value, str(data.get("message") or "missing transaction_id in response"))
        return InitiationResult(
            status=PaymentStatus.processing,
            message="Redirection vers D17 pour le paiement.",
            transaction_id=transaction_id,
            redirect_url=payment_url,
            raw=data,
        )

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayNotification:
        reference = optional_str(payload.get("order_id"))
        transaction_id = optional_str(payload.get("transaction_id"))
        if not reference and not transaction_id:
            raise WebhookPayloadError("d17 webhook without order_id or transaction_id")
        return GatewayNotification(
            reference=reference,
            transaction_id=transaction_id,
            gateway_status=optional_str(payload.get("status")),
            message=optional_str(payload.get("message")),
            raw=payload,
        )

    def fetch_status(self, transaction_id: str) -> GatewayNotification:
        data = self._request(
            "GET",
            f"{self._base_url()}/payments/{transaction_id}/status",
            headers={"X-Merchant-Id": self._settings.D17_MERCHANT_ID or ""},
        )
        return GatewayNotification(
            reference=optional_str(data.get("order_id")),
            transaction_id=transaction_id,
            gateway_status=optional_str(data.get("status")),
            message=optional_str(data.get("message")),
            raw=data,
        )
