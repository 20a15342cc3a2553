"""
支付适配器基础定义

所有支付方式（线下 + 外部网关）实现同一套接口：
- initiate: 发起支付，返回 InitiationResult
- parse_webhook: 解析网关回调，提取关联字段和网关状态
- fetch_status: 主动向网关查询当前状态（verify 与无状态回调共用）
- map_status: 网关状态 -> 本地 PaymentStatus（成功族 -> completed，失败族 -> failed，其余 None）

网关调用失败统一抛出 GatewayError，由支付编排器持久化失败信息后继续上抛。
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from fulfillment.api.errors import GatewayError
from fulfillment.core.config import Settings
from fulfillment.enums import PaymentGateway, PaymentMethod, PaymentStatus


class WebhookPayloadError(ValueError):
    """回调报文缺少关联字段或格式错误"""


@dataclass(frozen=True)
class PaymentRequest:
    """
    发起支付所需的上下文

    reference 为本地支付流水号，会作为网关侧的订单号回传。
    """
    reference: str
    order_number: str
    amount: Decimal
    currency: str
    first_name: str
    last_name: str
    email: str
    phone: str


@dataclass(frozen=True)
class InitiationResult:
    """
    发起结果

    - 线下方式：status=pending，instructions / bank_details 返回给客户
    - 网关：status=processing，transaction_id + redirect_url
    """
    status: PaymentStatus
    message: str
    transaction_id: str | None = None
    redirect_url: str | None = None
    instructions: str | None = None
    bank_details: dict[str, Any] | None = None
    raw: dict[str, Any] | None = None


@dataclass(frozen=True)
class GatewayNotification:
    """从回调或状态查询中提取的信息"""
    reference: str | None
    transaction_id: str | None
    gateway_status: str | None
    message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def to_millimes(amount: Decimal) -> int:
    """TND -> 毫米（1 TND = 1000 millimes）"""
    return int((Decimal(amount) * 1000).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentAdapter(ABC):
    method: PaymentMethod
    gateway: PaymentGateway
    is_manual: bool = False

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @abstractmethod
    def enabled(self) -> bool: ...

    @abstractmethod
    def initiate(self, request: PaymentRequest) -> InitiationResult: ...

    def parse_webhook(self, payload: dict[str, Any]) -> GatewayNotification:
        raise WebhookPayloadError(f"{self.method.value} does not receive webhooks")

    def fetch_status(self, transaction_id: str) -> GatewayNotification:
        raise GatewayError(self.method.value, "status lookup not supported")

    def map_status(self, gateway_status: str | None) -> PaymentStatus | None:
        return None


class HttpGatewayAdapter(PaymentAdapter):
    """
    外部网关适配器基类

    封装 httpx 调用：超时读取配置，网络错误 / 非 2xx / 非 JSON 响应都转换为 GatewayError。
    """
    is_manual = False
    success_statuses: frozenset[str] = frozenset()
    failure_statuses: frozenset[str] = frozenset()

    def _return_urls(self) -> dict[str, str]:
        frontend = self._settings.FRONTEND_URL.rstrip("/")
        return {
            "success": f"{frontend}/payment/success",
            "cancel": f"{frontend}/payment/cancel",
            "failed": f"{frontend}/payment/failed",
        }

    def _webhook_url(self) -> str:
        backend = self._settings.BACKEND_URL.rstrip("/")
        return f"{backend}{self._settings.API_V1_STR}/payments/webhook/{self.gateway.value}"

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._settings.HTTP_TIMEOUT_SECONDS)

    def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            with self._client() as client:
                r = client.request(method, url, json=json, headers=headers)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPStatusError as e:
            raise GatewayError(
                self.gateway.value, f"HTTP {e.response.status_code}: {e.response.text[:500]}"
            )
        except httpx.HTTPError as e:
            raise GatewayError(self.gateway.value, f"request failed: {e}")
        except ValueError:
            raise GatewayError(self.gateway.value, "invalid JSON response")
        if not isinstance(data, dict):
            raise GatewayError(self.gateway.value, "unexpected response shape")
        return data

    def map_status(self, gateway_status: str | None) -> PaymentStatus | None:
        if gateway_status is None:
            return None
        normalized = str(gateway_status).strip().lower()
        if normalized in self.success_statuses:
            return PaymentStatus.completed
        if normalized in self.failure_statuses:
            return PaymentStatus.failed
        return None


def optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
