"""订单 CRUD 操作"""
from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import or_, update
from sqlmodel import Session, col, func, select

from fulfillment.api.errors import ConflictError
from fulfillment.enums import OrderStatus
from fulfillment.models import Customer, Order, Product, utc_now


def get(*, session: Session, order_id: int) -> Order | None:
    return session.get(Order, order_id)


def get_by_number(*, session: Session, order_number: str) -> Order | None:
    return session.exec(select(Order).where(Order.order_number == order_number)).first()


def get_by_tracking_code(*, session: Session, tracking_code: str) -> Order | None:
    return session.exec(select(Order).where(Order.tracking_code == tracking_code)).first()


def find_by_identifier(*, session: Session, identifier: str) -> Order | None:
    """
    按公开标识查找订单

    TRK- 开头按追踪码，ORD- 开头按订单号，其余两者都试。
    """
    value = identifier.strip()
    upper = value.upper()
    if upper.startswith("TRK-"):
        return get_by_tracking_code(session=session, tracking_code=upper)
    if upper.startswith("ORD-"):
        return get_by_number(session=session, order_number=upper)
    return session.exec(
        select(Order).where(or_(Order.order_number == value, Order.tracking_code == value))
    ).first()


def apply_order_changes(*, session: Session, order: Order, changes: dict[str, Any]) -> Order:
    """
    以乐观锁方式更新订单

    UPDATE orders SET ..., version = version + 1 WHERE id = :id AND version = :expected
    影响行数不为 1 说明订单已被其他请求修改。

    Raises:
        ConflictError: 版本号不匹配
    """
    expected = order.version
    values = dict(changes)
    values["version"] = expected + 1
    values["updated_at"] = utc_now()
    stmt = (
        update(Order)
        .where(col(Order.id) == order.id, col(Order.version) == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.exec(stmt)  # type: ignore[call-overload]
    if result.rowcount != 1:
        session.rollback()
        raise ConflictError()
    session.commit()
    session.refresh(order)
    return order


def list_orders(
    *,
    session: Session,
    status: OrderStatus | None = None,
    search: str | None = None,
    customer_id: int | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Order], int]:
    """分页查询订单，search 匹配订单号、追踪码、客户姓名和邮箱"""
    conditions = []
    if status is not None:
        conditions.append(col(Order.status) == status)
    if customer_id is not None:
        conditions.append(col(Order.customer_id) == customer_id)
    if search:
        pattern = f"%{search}%"
        conditions.append(
            or_(
                col(Order.order_number).ilike(pattern),
                col(Order.tracking_code).ilike(pattern),
                col(Order.customer_name).ilike(pattern),
                col(Order.customer_email).ilike(pattern),
            )
        )

    count = session.exec(select(func.count()).select_from(Order).where(*conditions)).one()
    stmt = (
        select(Order)
        .where(*conditions)
        .order_by(col(Order.created_at).desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(session.exec(stmt).all()), count


def search_by_email(
    *, session: Session, email: str, order_number: str | None = None, limit: int = 10
) -> list[Order]:
    """游客按邮箱（可选订单号）查找订单"""
    stmt = select(Order).where(func.lower(Order.customer_email) == email.strip().lower())
    if order_number:
        stmt = stmt.where(Order.order_number == order_number.strip().upper())
    stmt = stmt.order_by(col(Order.created_at).desc()).limit(limit)
    return list(session.exec(stmt).all())


def get_customer_by_email(*, session: Session, email: str) -> Customer | None:
    return session.exec(
        select(Customer).where(func.lower(Customer.email) == email.strip().lower())
    ).first()


def adjust_product_stock(*, session: Session, product_id: int, delta: int) -> None:
    """调整商品库存（不提交事务）"""
    product = session.get(Product, product_id)
    if product is None:
        return
    product.stock_quantity = max(0, product.stock_quantity + delta)
    session.add(product)


def adjust_customer_totals(
    *, session: Session, customer_id: int, spent_delta: Decimal, count_delta: int
) -> None:
    """调整客户累计消费与订单数（不提交事务）"""
    customer = session.get(Customer, customer_id)
    if customer is None:
        return
    customer.total_spent = max(Decimal("0"), Decimal(customer.total_spent) + spent_delta)
    customer.order_count = max(0, customer.order_count + count_delta)
    session.add(customer)


def delete(*, session: Session, order: Order) -> None:
    session.delete(order)
    session.commit()


def status_counts(*, session: Session) -> dict[str, int]:
    rows = session.exec(select(Order.status, func.count()).group_by(Order.status)).all()
    return {str(getattr(status, "value", status)): count for status, count in rows}


def fulfilled_revenue(*, session: Session) -> Decimal:
    """已发货 + 已送达订单的总金额"""
    total = session.exec(
        select(func.coalesce(func.sum(Order.total_amount), 0)).where(
            col(Order.status).in_([OrderStatus.shipped, OrderStatus.delivered])
        )
    ).one()
    return Decimal(str(total))


def customer_status_totals(*, session: Session, customer_id: int) -> dict[str, tuple[int, Decimal]]:
    """按状态统计某个客户的订单数量和金额"""
    rows = session.exec(
        select(Order.status, func.count(), func.coalesce(func.sum(Order.total_amount), 0))
        .where(Order.customer_id == customer_id)
        .group_by(Order.status)
    ).all()
    return {
        str(getattr(status, "value", status)): (count, Decimal(str(amount)))
        for status, count, amount in rows
    }


def delivered_dates(*, session: Session, customer_id: int) -> list[tuple[Any, Any]]:
    """已送达订单的 (实际送达时间, 预计送达时间)"""
    rows = session.exec(
        select(Order.actual_delivery, Order.estimated_delivery).where(
            Order.customer_id == customer_id,
            Order.status == OrderStatus.delivered,
            col(Order.actual_delivery).is_not(None),
            col(Order.estimated_delivery).is_not(None),
        )
    ).all()
    return [(actual, estimated) for actual, estimated in rows]
