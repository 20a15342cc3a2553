"""
Konnect 网关

- 发起：POST {base}/payments/init-payment，金额单位为毫米，x-api-key 认证
- 回调：只携带 payment_ref（静默回调），状态需要再调用 GET {base}/payments/{payment_ref} 获取
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


class KonnectAdapter(HttpGatewayAdapter):
    method = PaymentMethod.konnect
    gateway = PaymentGateway.konnect
    success_statuses = frozenset({"completed"})
    failure_statuses = frozenset({"failed", "expired", "canceled", "cancelled"})

    def enabled(self) -> bool:
        s = self._settings
        return bool(s.KONNECT_ENABLED and s.KONNECT_API_KEY and s.KONNECT_RECEIVER_ID)

    def _base_url(self) -> str:
        return self._settings.KONNECT_BASE_URL.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self._settings.KONNECT_API_KEY or "", "Content-Type": "application/json"}

    def initiate(self, request: PaymentRequest) -> InitiationResult:
        urls = self._return_urls()
        payload = {
            "receiverWalletId": self._settings.KONNECT_RECEIVER_ID,
            "description": f"Commande {request.order_number}",
            "amount": to_millimes(request.amount),
            "token": request.currency,
            "type": "immediate",
            "lifespan": self._settings.KONNECT_LIFESPAN_MINUTES,
            "checkoutForm": True,
            "addPaymentFeesToAmount": True,
            "firstName": request.first_name,
            "lastName": request.last_name,
            "phoneNumber": request.phone,
            "email": request.email,
            "orderId": request.reference,
            "webhook": self._webhook_url(),
            "silentWebhook": True,
            "successUrl": f"{urls['success']}?ref={request.reference}",
            "failUrl": f"{urls['failed']}?ref={request.reference}",
            "theme": "light",
        }
        data = self._request(
            "POST", f"{self._base_url()}/payments/init-payment", json=payload, headers=self._headers()
        )
        payment_ref = optional_str(data.get("paymentRef"))
        pay_url = optional_str(data.get("payUrl"))
        if not payment_ref or not pay_url:
            raise GatewayError(self.gateway.value, str(data.get("message") or "missing paymentRef in response"))
        return InitiationResult(
            status=PaymentStatus.processing,
            message="Redirection vers Konnect pour le paiement.",
            transaction_id=payment_ref,
            redirect_url=pay_url,
            raw=data,
        )

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayNotification:
        payment_ref = optional_str(payload.get("payment_ref") or payload.get("paymentRef"))
        if not payment_ref:
            raise WebhookPayloadError("konnect webhook without payment_ref")
        # 静默回调不携带状态，由编排器调用 fetch_status 补齐
        return GatewayNotification(
            reference=optional_str(payload.get("orderId")),
            transaction_id=payment_ref,
            gateway_status=optional_str(payload.get("status")),
            raw=payload,
        )

    def fetch_status(self, transaction_id: str) -> GatewayNotification:
        data = self._request("GET", f"{self._base_url()}/payments/{transaction_id}", headers=self._headers())
        payment = data.get("payment") if isinstance(data.get("payment"), dict) else {}
        return GatewayNotification(
            reference=optional_str(payment.get("orderId")),
            transaction_id=transaction_id,
            gateway_status=optional_str(payment.get("status")),
            raw=data,
        )
