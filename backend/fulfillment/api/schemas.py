"""
API 请求/响应数据模型（Schema）

定义所有 API 接口的请求和响应数据结构。
这些模型不是数据库表，只用于 API 数据交换；数据库模型到响应模型的转换在各路由模块中完成。
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, EmailStr, Field

from fulfillment.enums import (
    ActorRole,
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    OrderPaymentStatus,
    OrderStatus,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
)
from fulfillment.models.documents import PushKeys, QuietHours, ShippingAddress

# ============================================================
# 通用响应模型
# ============================================================


class Message(BaseModel):
    message: str


class TokenPayload(BaseModel):
    """
    JWT Token 载荷模型

    sub: 客户 ID（role=customer）或管理员账号（role=admin）
    """
    sub: str | None = None
    role: ActorRole = ActorRole.customer


class ApiEnvelope(BaseModel):
    """
    API 统一响应格式

    示例响应：
        {"code": 0, "message": "success", "data": {...}}
        {"code": 400200, "message": "Order cannot be cancelled", "data": None}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


# ============================================================
# 订单
# ============================================================


class CustomerContact(BaseModel):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(default="", max_length=50)
    email: EmailStr
    phone: str = Field(min_length=8, max_length=20)


class OrderItemInput(BaseModel):
    """
    下单商品

    关联商品（product_id）时名称/价格可省略，取商品目录当前值并固化到订单。
    """
    product_id: int | None = None
    name: str | None = Field(default=None, max_length=255)
    price: Decimal | None = Field(default=None, ge=0)
    quantity: int = Field(ge=1, le=1000)
    image: str | None = Field(default=None, max_length=1024)


class OrderCreateRequest(BaseModel):
    customer: CustomerContact
    shipping_address: ShippingAddress
    items: list[OrderItemInput] = Field(min_length=1)
    payment_method: PaymentMethod = PaymentMethod.cash_on_delivery
    is_urgent: bool = False
    notes: str | None = Field(default=None, max_length=500)
    delivery_instructions: str | None = Field(default=None, max_length=300)


class OrderStatusUpdateRequest(BaseModel):
    status: OrderStatus
    tracking_number: str | None = Field(default=None, max_length=64)
    note: str | None = Field(default=None, max_length=500)
    location: str | None = Field(default=None, max_length=200)
    send_notification: bool = True


class OrderCancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class InternalNoteRequest(BaseModel):
    note: str = Field(min_length=1, max_length=1000)
    is_private: bool = True


class OrderItemData(BaseModel):
    product_id: int | None = None
    name: str
    price: Decimal
    quantity: int
    image: str | None = None


class StatusHistoryData(BaseModel):
    status: OrderStatus
    label: str
    timestamp: datetime
    note: str | None = None
    location: str | None = None
    updated_by: str
    notification_sent: bool


class InternalNoteData(BaseModel):
    note: str
    added_by: str
    timestamp: datetime
    is_private: bool


class PricingData(BaseModel):
    subtotal: Decimal
    shipping_cost: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    payment_fee: Decimal
    total_amount: Decimal
    formatted_total: str


class OrderData(BaseModel):
    id: int
    order_number: str
    tracking_code: str
    customer_id: int | None = None
    customer_name: str
    customer_email: str
    customer_phone: str
    shipping_address: ShippingAddress
    items: list[OrderItemData]
    total_items: int
    status: OrderStatus
    status_label: str
    payment_method: PaymentMethod
    payment_status: OrderPaymentStatus
    pricing: PricingData
    is_urgent: bool
    is_delayed: bool
    notes: str | None = None
    delivery_instructions: str | None = None
    tracking_number: str | None = None
    shipping_provider: str
    estimated_delivery: datetime | None = None
    actual_delivery: datetime | None = None
    status_history: list[StatusHistoryData]
    internal_notes: list[InternalNoteData] | None = None
    created_at: datetime
    updated_at: datetime


class OrdersData(BaseModel):
    data: list[OrderData]
    count: int


class TimelineStepData(BaseModel):
    status: OrderStatus
    label: str
    completed: bool
    current: bool
    timestamp: datetime | None = None
    note: str | None = None
    location: str | None = None


class PublicOrderView(BaseModel):
    """公开追踪视图：不含完整地址和联系方式"""
    order_number: str
    tracking_code: str
    customer_name: str
    city: str
    total_items: int
    formatted_total: str
    status: OrderStatus
    status_label: str
    is_urgent: bool
    tracking_number: str | None = None
    shipping_provider: str
    estimated_delivery: datetime | None = None
    actual_delivery: datetime | None = None
    created_at: datetime


class TrackingData(BaseModel):
    order: PublicOrderView
    timeline: list[TimelineStepData]
    progress_percentage: int
    is_delayed: bool


class TrackingSearchRequest(BaseModel):
    email: EmailStr
    order_number: str | None = Field(default=None, max_length=64)


class OrderStatsData(BaseModel):
    total_orders: int
    by_status: dict[str, int]
    revenue: Decimal


class CustomerOrderStatsData(BaseModel):
    total_orders: int
    total_spent: Decimal
    average_order_value: Decimal
    by_status: dict[str, int]
    active_orders: int
    delivered_orders: int
    on_time_deliveries: int
    on_time_percentage: int


# ============================================================
# 支付
# ============================================================


class PaymentCustomerInfo(BaseModel):
    first_name: str | None = Field(default=None, max_length=50)
    last_name: str | None = Field(default=None, max_length=50)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=20)


class PaymentInitiateRequest(BaseModel):
    order_id: int
    payment_method: PaymentMethod
    customer_info: PaymentCustomerInfo | None = None


class PaymentResultData(BaseModel):
    payment_id: int
    payment_reference: str
    status: PaymentStatus
    message: str
    amount: Decimal
    currency: str
    redirect_url: str | None = None
    gateway_transaction_id: str | None = None
    instructions: str | None = None
    bank_details: dict[str, Any] | None = None


class RefundData(BaseModel):
    refund_id: str
    amount: Decimal
    reason: str | None = None
    status: RefundStatus
    processed_at: datetime | None = None
    gateway_refund_id: str | None = None
    created_at: datetime


class PaymentData(BaseModel):
    id: int
    order_id: int
    order_number: str
    payment_reference: str
    payment_method: PaymentMethod
    payment_gateway: PaymentGateway
    gateway_transaction_id: str | None = None
    amount: Decimal
    currency: str
    status: PaymentStatus
    status_display: str
    gateway_status: str | None = None
    gateway_message: str | None = None
    attempts: int
    refunds: list[RefundData]
    total_refunded: Decimal
    remaining_amount: Decimal
    initiated_at: datetime
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    created_at: datetime


class PaymentsData(BaseModel):
    data: list[PaymentData]
    count: int


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=500)


class RefundResultData(BaseModel):
    refund: RefundData
    payment_status: PaymentStatus
    remaining_amount: Decimal
    refundable_amount: Decimal


class RefundSettleRequest(BaseModel):
    succeeded: bool
    gateway_refund_id: str | None = Field(default=None, max_length=128)


class MarkPaidRequest(BaseModel):
    note: str | None = Field(default=None, max_length=500)


class PaymentMethodData(BaseModel):
    id: PaymentMethod
    name: str
    description: str
    fee: Decimal
    processing_time: str
    enabled: bool = True


class WebhookAckData(BaseModel):
    received: bool = True
    matched: bool
    payment_reference: str | None = None
    status: PaymentStatus | None = None


# ============================================================
# 通知
# ============================================================


class ChannelPreferencesUpdate(BaseModel):
    enabled: bool | None = None
    order_updates: bool | None = None
    delivery_updates: bool | None = None
    promotions: bool | None = None
    newsletter: bool | None = None


class QuietHoursUpdate(BaseModel):
    enabled: bool | None = None
    start: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class PreferencesUpdateRequest(BaseModel):
    email: ChannelPreferencesUpdate | None = None
    sms: ChannelPreferencesUpdate | None = None
    push: ChannelPreferencesUpdate | None = None
    quiet_hours: QuietHoursUpdate | None = None
    timezone: str | None = Field(default=None, max_length=64)


class ChannelPreferencesData(BaseModel):
    enabled: bool
    order_updates: bool
    delivery_updates: bool
    promotions: bool
    newsletter: bool


class PushSubscriptionData(BaseModel):
    endpoint: str
    user_agent: str | None = None
    device_type: str | None = None
    is_active: bool
    last_used: datetime


class PreferencesData(BaseModel):
    email: ChannelPreferencesData
    sms: ChannelPreferencesData
    push: ChannelPreferencesData
    quiet_hours: QuietHours
    timezone: str
    push_subscriptions: list[PushSubscriptionData]


class PushSubscribeRequest(BaseModel):
    endpoint: str = Field(min_length=1, max_length=2048)
    keys: PushKeys
    user_agent: str | None = Field(default=None, max_length=512)
    device_type: str | None = Field(default=None, max_length=32)


class PushUnsubscribeRequest(BaseModel):
    endpoint: str = Field(min_length=1, max_length=2048)


class NotificationLogData(BaseModel):
    id: int
    customer_id: int | None = None
    order_id: int | None = None
    channel: NotificationChannel
    category: NotificationCategory
    title: str
    message: str
    status: NotificationStatus
    priority: NotificationPriority
    sent_at: datetime | None = None
    read_at: datetime | None = None
    failure_reason: str | None = None
    created_at: datetime


class NotificationsData(BaseModel):
    data: list[NotificationLogData]
    count: int


class AdminNotificationRequest(BaseModel):
    customer_id: int
    category: NotificationCategory
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1, max_length=2000)
    priority: NotificationPriority = NotificationPriority.normal
    channels: list[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.email, NotificationChannel.push]
    )
    order_id: int | None = None


class ChannelOutcomeData(BaseModel):
    channel: NotificationChannel
    success: bool
    skipped: bool
    reason: str | None = None
    log_id: int | None = None


class DispatchResultData(BaseModel):
    success: bool
    reason: str | None = None
    channels: list[ChannelOutcomeData]
