"""
内嵌文档模型

订单明细、状态历史、内部备注、退款记录、推送订阅等子文档以 JSON 列存储。
这里的 Pydantic 模型负责写入前校验和读出后解析：
- 写入：model.model_dump(mode="json")（Decimal/datetime 转为字符串）
- 读出：Model.model_validate(raw)
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from fulfillment.enums import OrderStatus, RefundStatus

from .base import utc_now


class ShippingAddress(BaseModel):
    street: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str | None = Field(default=None, max_length=100)
    postal_code: str | None = Field(default=None, max_length=20)
    country: str = Field(default="Tunisia", max_length=100)


class OrderItem(BaseModel):
    """
    订单明细

    价格在下单时固化，不随商品价格变化。
    product_id 为空表示非目录商品（例如定制服务）。
    """
    product_id: int | None = None
    name: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(ge=0)
    quantity: int = Field(ge=1)
    image: str | None = None

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class StatusHistoryEntry(BaseModel):
    """状态历史条目（只追加，不修改）"""
    status: OrderStatus
    timestamp: datetime = Field(default_factory=utc_now)
    note: str | None = None
    location: str | None = None
    updated_by: str = "system"
    notification_sent: bool = False


class InternalNote(BaseModel):
    note: str = Field(min_length=1, max_length=1000)
    added_by: str
    timestamp: datetime = Field(default_factory=utc_now)
    is_private: bool = True


class RefundRecord(BaseModel):
    """
    退款子记录

    状态：pending -> completed | failed（由管理员线下确认）
    只有 completed 的退款计入已退金额。
    """
    refund_id: str
    amount: Decimal
    reason: str | None = None
    status: RefundStatus = RefundStatus.pending
    processed_at: datetime | None = None
    gateway_refund_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionRecord(BaseModel):
    endpoint: str
    keys: PushKeys
    user_agent: str | None = None
    device_type: str | None = None
    is_active: bool = True
    last_used: datetime = Field(default_factory=utc_now)


class QuietHours(BaseModel):
    enabled: bool = False
    start: str = Field(default="22:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end: str = Field(default="08:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


def dump_documents(items: list[BaseModel]) -> list[dict[str, Any]]:
    """将子文档列表转换为可写入 JSON 列的结构"""
    return [item.model_dump(mode="json") for item in items]
