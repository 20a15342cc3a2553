"""
通知渠道发送器的公共数据结构

发送器只负责"发出去"：不读写偏好、不写日志。
发送失败以 ChannelResult(success=False) 返回，异常由分发器兜底转换。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from fulfillment.enums import NotificationCategory, NotificationPriority
from fulfillment.models.documents import PushSubscriptionRecord


@dataclass(frozen=True)
class NotificationMessage:
    """
    待发送的通知

    data 中可携带订单上下文（order_number、tracking_code、status、previous_status 等），
    各渠道据此选择模板。
    """
    category: NotificationCategory
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.normal
    order_id: int | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Recipient:
    customer_id: int
    name: str
    email: str | None = None
    phone: str | None = None
    push_subscriptions: tuple[PushSubscriptionRecord, ...] = ()


@dataclass(frozen=True)
class ChannelResult:
    success: bool
    error: str | None = None
    provider: str | None = None
    message_id: str | None = None
    # 推送服务返回 404/410 的订阅端点（需要从偏好中移除）
    gone_endpoints: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)


class ChannelSender(Protocol):
    def send(self, recipient: Recipient, notification: NotificationMessage) -> ChannelResult: ...
