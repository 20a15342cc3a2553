"""
支付适配器注册表

build_adapters 根据配置实例化全部适配器，支付编排器按支付方式取用。
"""
from __future__ import annotations

from fulfillment.core.config import Settings
from fulfillment.enums import PaymentGateway, PaymentMethod

from .base import (
    GatewayNotification,
    HttpGatewayAdapter,
    InitiationResult,
    PaymentAdapter,
    PaymentRequest,
    WebhookPayloadError,
)
from .d17 import D17Adapter
from .flouci import FlouciAdapter
from .konnect import KonnectAdapter
from .manual import BankTransferAdapter, CashOnDeliveryAdapter
from .paymee import PaymeeAdapter

_ADAPTER_CLASSES: tuple[type[PaymentAdapter], ...] = (
    CashOnDeliveryAdapter,
    BankTransferAdapter,
    PaymeeAdapter,
    FlouciAdapter,
    D17Adapter,
    KonnectAdapter,
)


def build_adapters(settings: Settings) -> dict[PaymentMethod, PaymentAdapter]:
    return {cls.method: cls(settings) for cls in _ADAPTER_CLASSES}


def adapter_for_gateway(
    adapters: dict[PaymentMethod, PaymentAdapter], gateway: PaymentGateway
) -> PaymentAdapter | None:
    for adapter in adapters.values():
        if not adapter.is_manual and adapter.gateway == gateway:
            return adapter
    return None


__all__ = [
    "BankTransferAdapter",
    "CashOnDeliveryAdapter",
    "D17Adapter",
    "FlouciAdapter",
    "GatewayNotification",
    "HttpGatewayAdapter",
    "InitiationResult",
    "KonnectAdapter",
    "PaymeeAdapter",
    "PaymentAdapter",
    "PaymentRequest",
    "WebhookPayloadError",
    "adapter_for_gateway",
    "build_adapters",
]
