"""
Flouci 网关

- 发起：POST {base}/generate_payment（app_token / app_secret 放在报文中）
- 回调：{"payment_id", "status", "developer_tracking_id"}
- 查询：GET {base}/verify_payment/{payment_id}
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


class FlouciAdapter(HttpGatewayAdapter):
    method = PaymentMethod.flouci
    gateway = PaymentGateway.flouci
    success_statuses = frozenset({"success"})
    failure_statuses = frozenset({"failed", "cancelled", "expired"})

    def enabled(self) -> bool:
        s = self._settings
        return bool(s.FLOUCI_ENABLED and s.FLOUCI_APP_TOKEN and s.FLOUCI_APP_SECRET)

    def _base_url(self) -> str:
        return self._settings.FLOUCI_BASE_URL.rstrip("/")

    def initiate(self, request: PaymentRequest) -> InitiationResult:
        urls = self._return_urls()
        payload = {
            "app_token": self._settings.FLOUCI_APP_TOKEN,
            "app_secret": self._settings.FLOUCI_APP_SECRET,
            "amount": to_millimes(request.amount),
            "accept_url": f"{urls['success']}?ref={request.reference}",
            "cancel_url": f"{urls['cancel']}?ref={request.reference}",
            "decline_url": f"{urls['failed']}?ref={request.reference}",
            "webhook_url": self._webhook_url(),
            "session_timeout_secs": self._settings.FLOUCI_SESSION_TIMEOUT_SECONDS,
            "developer_tracking_id": request.reference,
        }
        data = self._request("POST", f"{self._base_url()}/generate_payment", json=payload)
        result = data.get("result") if isinstance(data.get("result"), dict) else {}
        if not result.get("success"):
            raise GatewayError(
                self.gateway.value, str(result.get("message") or "Flouci payment initiation failed")
            )
        payment_id = optional_str(result.get("payment_id"))
        link = optional_str(result.get("link"))
        if not payment_id or not link:
            raise GatewayError(self.gateway.value, "missing payment_id in response")
        return InitiationResult(
            status=PaymentStatus.processing,
            message="Redirection vers Flouci pour le paiement.",
            transaction_id=payment_id,
            redirect_url=link,
            raw=data,
        )

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayNotification:
        reference = optional_str(payload.get("developer_tracking_id"))
        transaction_id = optional_str(payload.get("payment_id"))
        if not reference and not transaction_id:
            raise WebhookPayloadError("flouci webhook without developer_tracking_id or payment_id")
        return GatewayNotification(
            reference=reference,
            transaction_id=transaction_id,
            gateway_status=optional_str(payload.get("status")),
            raw=payload,
        )

    def fetch_status(self, transaction_id: str) -> GatewayNotification:
        headers = {
            "apppublic": self._settings.FLOUCI_APP_TOKEN or "",
            "appsecret": self._settings.FLOUCI_APP_SECRET or "",
        }
        data = self._request("GET", f"{self._base_url()}/verify_payment/{transaction_id}", headers=headers)
        result = data.get("result") if isinstance(data.get("result"), dict) else {}
        return GatewayNotification(
            reference=optional_str(result.get("developer_tracking_id")),
            transaction_id=transaction_id,
            gateway_status=optional_str(result.get("status")),
            raw=data,
        )
