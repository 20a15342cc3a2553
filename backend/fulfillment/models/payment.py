"""
支付模型模块

一次支付尝试对应一条 Payment 记录，记录永不删除（审计用）。

同一订单同一时刻最多只有一条进行中（pending/processing）的支付：
由 order_id 上的部分唯一索引保证，并发创建时后写入者触发 IntegrityError。
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
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlmodel import Field, SQLModel

from fulfillment.core.snowflake import generate_id
from fulfillment.enums import PaymentGateway, PaymentMethod, PaymentStatus, RefundStatus

from .base import utc_now
from .documents import RefundRecord

_ACTIVE_PAYMENT_CLAUSE = "status IN ('pending', 'processing')"

STATUS_DISPLAY: dict[PaymentStatus, str] = {
    PaymentStatus.pending: "En attente",
    PaymentStatus.processing: "En cours",
    PaymentStatus.completed: "Terminé",
    PaymentStatus.failed: "Échoué",
    PaymentStatus.refunded: "Remboursé",
    PaymentStatus.partially_refunded: "Partiellement remboursé",
}


class Payment(SQLModel, table=True):
    """
    支付记录模型

    字段说明：
    - payment_reference: 本地支付流水号（唯一、不可变，回调 URL 中携带）
    - gateway_transaction_id: 网关交易号（发起成功后写入一次）
    - gateway_response / webhook_data / metadata_: 原始 JSON，仅用于审计
    - refunds: 退款子记录列表
    - attempts: 发起次数（从 1 开始，每次网关失败 +1）
    """
    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payment_active_order",
            "order_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PAYMENT_CLAUSE),
            sqlite_where=text(_ACTIVE_PAYMENT_CLAUSE),
        ),
    )
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    # 支付记录比订单活得久（订单可被删除），不加外键
    order_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    order_number: str = Field(sa_column=Column(String(64), index=True, nullable=False))
    customer_id: int | None = Field(default=None, sa_column=Column(BigInteger, index=True, nullable=True))
    customer_email: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))

    payment_method: PaymentMethod = Field(sa_column=Column(String(32), nullable=False))
    payment_gateway: PaymentGateway = Field(sa_column=Column(String(16), nullable=False))
    payment_reference: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False)
    )
    gateway_transaction_id: str | None = Field(
        default=None, sa_column=Column(String(128), index=True, nullable=True)
    )

    amount: Decimal = Field(sa_column=Column(Numeric(12, 3), nullable=False))
    currency: str = Field(default="TND", sa_column=Column(String(8), nullable=False))
    gateway_fee: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(12, 3), nullable=False))
    net_amount: Decimal | None = Field(default=None, sa_column=Column(Numeric(12, 3), nullable=True))

    status: PaymentStatus = Field(
        default=PaymentStatus.pending, sa_column=Column(String(32), index=True, nullable=False)
    )
    gateway_status: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))
    gateway_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    gateway_response: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))

    initiated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    last_attempt_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    attempts: int = Field(default=1, sa_column=Column(Integer, nullable=False))
    max_attempts: int = Field(default=3, sa_column=Column(Integer, nullable=False))

    refunds: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    ip_address: str | None = Field(default=None, sa_column=Column(String(64), nullable=True))
    user_agent: str | None = Field(default=None, sa_column=Column(String(512), nullable=True))
    # "metadata" 是 SQLAlchemy 保留属性名
    metadata_: dict[str, Any] | None = Field(
        default=None, sa_column=Column("metadata", JSON, nullable=True)
    )

    webhook_received: bool = Field(default=False, sa_column=Column(Boolean, nullable=False))
    webhook_data: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    notes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))

    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


def refund_records(payment: Payment) -> list[RefundRecord]:
    return [RefundRecord.model_validate(raw) for raw in payment.refunds]


def total_refunded(payment: Payment) -> Decimal:
    """已完成退款总额（pending/failed 不计入）"""
    return sum(
        (r.amount for r in refund_records(payment) if r.status == RefundStatus.completed),
        Decimal("0"),
    )


def pending_refunds(payment: Payment) -> Decimal:
    return sum(
        (r.amount for r in refund_records(payment) if r.status == RefundStatus.pending),
        Decimal("0"),
    )


def remaining_amount(payment: Payment) -> Decimal:
    return Decimal(payment.amount) - total_refunded(payment)


def refundable_amount(payment: Payment) -> Decimal:
    """还可以申请退款的金额（扣除已完成和处理中的退款）"""
    return Decimal(payment.amount) - total_refunded(payment) - pending_refunds(payment)


def status_display(payment: Payment) -> str:
    return STATUS_DISPLAY[PaymentStatus(payment.status)]
