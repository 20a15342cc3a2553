"""
订单模型模块

订单聚合：客户快照、商品明细、定价、履约状态、状态历史、内部备注。

状态历史、明细、备注等子文档存储在 JSON 列中（见 documents.py），
通过本模块的访问函数解析为 Pydantic 对象。

并发控制：version 列用于乐观锁，所有状态变更都通过
crud.order.apply_order_changes 以 "WHERE version = 旧版本" 的条件更新完成。
"""
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlmodel import Field, SQLModel

from fulfillment.core.snowflake import generate_id
from fulfillment.enums import OrderPaymentStatus, OrderStatus, PaymentMethod

from .base import ensure_utc, utc_now
from .documents import InternalNote, OrderItem, ShippingAddress, StatusHistoryEntry

# 履约主流程（时间线展示顺序）
FULFILLMENT_FLOW: tuple[OrderStatus, ...] = (
    OrderStatus.pending,
    OrderStatus.confirmed,
    OrderStatus.processing,
    OrderStatus.shipped,
    OrderStatus.delivered,
)

STATUS_LABELS: dict[OrderStatus, str] = {
    OrderStatus.pending: "Commande reçue",
    OrderStatus.confirmed: "Confirmée",
    OrderStatus.processing: "En préparation",
    OrderStatus.shipped: "Expédiée",
    OrderStatus.delivered: "Livrée",
    OrderStatus.cancelled: "Annulée",
}

# 状态变更时未指定备注/位置时使用的默认值
STATUS_NOTES: dict[OrderStatus, str] = {
    OrderStatus.pending: "Commande en attente de confirmation",
    OrderStatus.confirmed: "Commande confirmée et en cours de préparation",
    OrderStatus.processing: "Commande en cours de préparation",
    OrderStatus.shipped: "Commande expédiée et en route",
    OrderStatus.delivered: "Commande livrée avec succès",
    OrderStatus.cancelled: "Commande annulée",
}

STATUS_LOCATIONS: dict[OrderStatus, str] = {
    OrderStatus.pending: "STES - Centre de traitement",
    OrderStatus.confirmed: "STES - Entrepôt",
    OrderStatus.processing: "STES - Entrepôt",
    OrderStatus.shipped: "En transit",
    OrderStatus.delivered: "Adresse de livraison",
    OrderStatus.cancelled: "STES - Centre de traitement",
}


class Order(SQLModel, table=True):
    """
    订单模型

    字段说明：
    - order_number: 订单号（唯一，不可变）
    - tracking_code: 公开追踪码（唯一，不可变）
    - customer_id: 关联客户（游客下单时为空）
    - customer_*/shipping_address: 下单时的客户信息快照
    - items: 商品明细（价格下单时固化）
    - status_history: 状态历史（只追加），最后一条的 status 始终等于 status
    - 金额字段：total = subtotal + shipping + tax + payment_fee - discount
    - version: 乐观锁版本号
    """
    __tablename__ = "orders"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    order_number: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False)
    )
    tracking_code: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False)
    )
    customer_id: int | None = Field(
        default=None,
        sa_column=Column(
            BigInteger, ForeignKey("customers.id", ondelete="SET NULL"), index=True, nullable=True
        ),
    )

    # 客户信息快照
    customer_name: str = Field(sa_column=Column(String(128), nullable=False))
    customer_email: str = Field(sa_column=Column(String(255), index=True, nullable=False))
    customer_phone: str = Field(sa_column=Column(String(32), nullable=False))
    shipping_address: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))

    items: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    status: OrderStatus = Field(
        default=OrderStatus.pending, sa_column=Column(String(16), index=True, nullable=False)
    )
    status_history: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )

    payment_method: PaymentMethod = Field(sa_column=Column(String(32), nullable=False))
    payment_status: OrderPaymentStatus = Field(
        default=OrderPaymentStatus.pending, sa_column=Column(String(32), nullable=False)
    )

    # 定价（单位 TND，3 位小数）
    subtotal: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 3), nullable=False))
    shipping_cost: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 3), nullable=False))
    tax_rate: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(5, 4), nullable=False))
    tax_amount: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 3), nullable=False))
    discount_amount: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 3), nullable=False))
    payment_fee: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 3), nullable=False))
    total_amount: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 3), nullable=False))

    estimated_delivery: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    actual_delivery: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    is_urgent: bool = Field(default=False, sa_column=Column(Boolean, nullable=False))

    notes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    delivery_instructions: str | None = Field(default=None, sa_column=Column(String(300), nullable=True))
    tracking_number: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))
    shipping_provider: str = Field(
        default="STES Livraison", sa_column=Column(String(64), nullable=False)
    )
    internal_notes: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )

    version: int = Field(default=1, sa_column=Column(Integer, nullable=False))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


# ============================================================
# 访问函数（派生字段）
# ============================================================


def order_items(order: Order) -> list[OrderItem]:
    return [OrderItem.model_validate(raw) for raw in order.items]


def order_address(order: Order) -> ShippingAddress:
    return ShippingAddress.model_validate(order.shipping_address)


def history_entries(order: Order) -> list[StatusHistoryEntry]:
    return [StatusHistoryEntry.model_validate(raw) for raw in order.status_history]


def internal_note_entries(order: Order) -> list[InternalNote]:
    return [InternalNote.model_validate(raw) for raw in order.internal_notes]


def total_items(order: Order) -> int:
    return sum(item.quantity for item in order_items(order))


def formatted_total(order: Order) -> str:
    """格式化总价，如 "123.456 TND" """
    return f"{Decimal(order.total_amount):.3f} TND"


def status_label(status: OrderStatus | str) -> str:
    # 从数据库读回的是普通字符串
    return STATUS_LABELS[OrderStatus(status)]


def is_delayed(order: Order, now: datetime | None = None) -> bool:
    """超过预计送达时间且未送达/未取消"""
    estimated = ensure_utc(order.estimated_delivery)
    if estimated is None:
        return False
    if order.status in (OrderStatus.delivered, OrderStatus.cancelled):
        return False
    return (now or utc_now()) > estimated
