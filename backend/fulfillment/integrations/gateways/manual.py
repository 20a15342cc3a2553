"""
线下支付方式：货到付款、银行转账

不调用任何外部服务，发起后保持 pending，由管理员确认收款（mark paid）。
"""
from __future__ import annotations

from decimal import Decimal

from fulfillment.enums import PaymentGateway, PaymentMethod, PaymentStatus
from fulfillment.services import config_service

from .base import InitiationResult, PaymentAdapter, PaymentRequest


class CashOnDeliveryAdapter(PaymentAdapter):
    method = PaymentMethod.cash_on_delivery
    gateway = PaymentGateway.internal
    is_manual = True

    def enabled(self) -> bool:
        return True

    def initiate(self, request: PaymentRequest) -> InitiationResult:
        amount = f"{Decimal(request.amount):.3f}"
        return InitiationResult(
            status=PaymentStatus.pending,
            message="Paiement à la livraison confirmé. Vous paierez lors de la réception de votre commande.",
            instructions=f"Préparez le montant exact lors de la livraison: {amount} {request.currency}",
        )


class BankTransferAdapter(PaymentAdapter):
    method = PaymentMethod.bank_transfer
    gateway = PaymentGateway.internal
    is_manual = True

    def enabled(self) -> bool:
        return True

    def initiate(self, request: PaymentRequest) -> InitiationResult:
        details = config_service.bank_details()
        details["reference"] = request.reference
        return InitiationResult(
            status=PaymentStatus.pending,
            message="Veuillez effectuer le virement avec les informations fournies.",
            instructions=f"Utilisez la référence {request.reference} lors du virement.",
            bank_details=details,
        )
