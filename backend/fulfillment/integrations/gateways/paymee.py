"""
Paymee 网关

- 发起：POST {base}/payments，金额单位为毫米，Authorization: Token <api_key>
- 回调：{"payment_id", "status", "order_id"}，order_id 为本地支付流水号
- 查询：GET {base}/payments/{payment_id}/check
"""
from __future__ import annotations

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


class PaymeeAdapter(HttpGatewayAdapter):
    method = PaymentMethod.paymee
    gateway = PaymentGateway.paymee
    success_statuses = frozenset({"paid"})
    failure_statuses = frozenset({"failed", "cancelled"})

    def enabled(self) -> bool:
        return bool(self._settings.PAYMEE_ENABLED and self._settings.PAYMEE_API_KEY)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Token {self._settings.PAYMEE_API_KEY}",
            "Content-Type": "application/json",
        }

    def _base_url(self) -> str:
        return self._settings.PAYMEE_BASE_URL.rstrip("/")

    def initiate(self, request: PaymentRequest) -> InitiationResult:
        urls = self._return_urls()
        payload = {
            "amount": to_millimes(request.amount),
            "note": f"Commande {request.order_number}",
            "first_name": request.first_name,
            "last_name": request.last_name,
            "email": request.email,
            "phone": request.phone,
            "return_url": f"{urls['success']}?ref={request.reference}",
            "cancel_url": f"{urls['cancel']}?ref={request.reference}",
            "webhook_url": self._webhook_url(),
            "order_id": request.reference,
        }
        data = self._request("POST", f"{self._base_url()}/payments", json=payload, headers=self._headers())
        body = data.get("data") if isinstance(data.get("data"), dict) else data
        payment_id = optional_str(body.get("payment_id"))
        payment_url = optional_str(body.get("payment_url"))
        if not payment_id or not payment_url:
            raise GatewayError(self.gateway.value, str(data.get("message") or "missing payment_id in response"))
        return InitiationResult(
            status=PaymentStatus.processing,
            message="Redirection vers Paymee pour le paiement.",
            transaction_id=payment_id,
            redirect_url=payment_url,
            raw=data,
        )

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayNotification:
        reference = optional_str(payload.get("order_id"))
        transaction_id = optional_str(payload.get("payment_id"))
        if not reference and not transaction_id:
            raise WebhookPayloadError("paymee webhook without order_id or payment_id")
        return GatewayNotification(
            reference=reference,
            transaction_id=transaction_id,
            gateway_status=optional_str(payload.get("status")),
            message=optional_str(payload.get("message")),
            raw=payload,
        )

    def fetch_status(self, transaction_id: str) -> GatewayNotification:
        data = self._request(
            "GET", f"{self._base_url()}/payments/{transaction_id}/check", headers=self._headers()
        )
        body = data.get("data") if isinstance(data.get("data"), dict) else data
        return GatewayNotification(
            reference=optional_str(body.get("order_id")),
            transaction_id=transaction_id,
            gateway_status=optional_str(body.get("status")),
            message=optional_str(data.get("message")),
            raw=data,
        )
