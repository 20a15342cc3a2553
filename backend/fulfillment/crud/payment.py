"""支付 CRUD 操作"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from fulfillment.api.errors import DuplicatePaymentError
from fulfillment.enums import PaymentGateway, PaymentStatus
from fulfillment.models import Payment, utc_now

ACTIVE_STATUSES = (PaymentStatus.pending, PaymentStatus.processing)


def get(*, session: Session, payment_id: int) -> Payment | None:
    return session.get(Payment, payment_id)


def get_by_reference(*, session: Session, reference: str) -> Payment | None:
    return session.exec(select(Payment).where(Payment.payment_reference == reference)).first()


def get_by_transaction_id(
    *, session: Session, gateway: PaymentGateway, transaction_id: str
) -> Payment | None:
    return session.exec(
        select(Payment).where(
            Payment.payment_gateway == gateway,
            Payment.gateway_transaction_id == transaction_id,
        )
    ).first()


def get_active_for_order(*, session: Session, order_id: int) -> Payment | None:
    return session.exec(
        select(Payment).where(
            Payment.order_id == order_id,
            col(Payment.status).in_(ACTIVE_STATUSES),
        )
    ).first()


def insert(*, session: Session, payment: Payment) -> Payment:
    """
    写入新的支付记录

    部分唯一索引冲突说明并发请求已为同一订单创建了进行中的支付。

    Raises:
        DuplicatePaymentError: 订单已有 pending/processing 支付
    """
    session.add(payment)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicatePaymentError()
    session.refresh(payment)
    return payment


def save(*, session: Session, payment: Payment) -> Payment:
    payment.updated_at = utc_now()
    session.add(payment)
    session.commit()
    session.refresh(payment)
    return payment


def list_for_customer(
    *, session: Session, customer_id: int, page: int = 1, page_size: int = 10
) -> tuple[list[Payment], int]:
    count = session.exec(
        select(func.count()).select_from(Payment).where(Payment.customer_id == customer_id)
    ).one()
    rows = session.exec(
        select(Payment)
        .where(Payment.customer_id == customer_id)
        .order_by(col(Payment.created_at).desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return list(rows), count


def stats(*, session: Session, since: datetime | None = None) -> dict[str, Any]:
    """按状态和支付方式汇总笔数与金额"""
    conditions = []
    if since is not None:
        conditions.append(col(Payment.created_at) >= since)

    by_status = session.exec(
        select(Payment.status, func.count(), func.coalesce(func.sum(Payment.amount), 0))
        .where(*conditions)
        .group_by(Payment.status)
    ).all()
    by_method = session.exec(
        select(Payment.payment_method, func.count(), func.coalesce(func.sum(Payment.amount), 0))
        .where(*conditions)
        .group_by(Payment.payment_method)
    ).all()

    def _rows(rows: Any) -> list[dict[str, Any]]:
        return [
            {
                "key": str(getattr(key, "value", key)),
                "count": count,
                "total_amount": Decimal(str(total)),
            }
            for key, count, total in rows
        ]

    return {"by_status": _rows(by_status), "by_method": _rows(by_method)}
