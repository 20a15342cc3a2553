"""
订单状态机服务

主流程：pending -> confirmed -> processing -> shipped -> delivered
- 客户只能在 pending/confirmed 时取消，管理员任意时刻可取消
- 管理员状态更新接受任意目标状态
- status_history 只追加：状态变化或携带备注/位置时追加一条，从不修改已有条目

并发控制：所有订单变更都经过 _update_with_retry，
每次尝试重新读取订单、重新计算变更，并以 version 条件更新写回；
版本冲突（ConflictError）最多重试 ORDER_UPDATE_MAX_RETRIES 次。
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlmodel import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random

from fulfillment import crud
from fulfillment.api.errors import ConflictError, InvalidStateError, ValidationError, order_not_found
from fulfillment.api.schemas import OrderCreateRequest
from fulfillment.core.config import Settings, settings as default_settings
from fulfillment.core.snowflake import generate_order_number, generate_tracking_code
from fulfillment.enums import OrderPaymentStatus, OrderStatus, PaymentMethod
from fulfillment.models import Customer, Order, Product, ensure_utc, quantize_money, utc_now
from fulfillment.models.documents import (
    InternalNote,
    OrderItem,
    StatusHistoryEntry,
    dump_documents,
)
from fulfillment.models.order import (
    FULFILLMENT_FLOW,
    STATUS_LOCATIONS,
    STATUS_NOTES,
    history_entries,
    order_items,
    status_label,
)
from fulfillment.services import config_service
from fulfillment.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

CUSTOMER_CANCELLABLE = (OrderStatus.pending, OrderStatus.confirmed)
DELETABLE = (OrderStatus.pending, OrderStatus.cancelled)


@dataclass(frozen=True)
class Pricing:
    subtotal: Decimal
    shipping_cost: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    payment_fee: Decimal

    @property
    def total_amount(self) -> Decimal:
        return quantize_money(
            self.subtotal + self.shipping_cost + self.tax_amount + self.payment_fee - self.discount_amount
        )


def add_business_days(start: datetime, days: int) -> datetime:
    """在 start 基础上增加 days 个工作日（跳过周六、周日）"""
    current = start
    added = 0
    while added < days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            added += 1
    return current


def compute_pricing(
    items: list[OrderItem],
    city: str,
    is_urgent: bool,
    payment_method: PaymentMethod,
    settings: Settings,
) -> Pricing:
    """
    服务端计算订单金额（不信任客户端提交的金额）

    运费 = round(基础运费 x 城市系数 x 加急系数)，取整到 TND。
    """
    subtotal = quantize_money(sum((item.line_total for item in items), Decimal("0")))
    multiplier = config_service.city_shipping_rate(city) * (2 if is_urgent else 1)
    shipping = quantize_money(
        (settings.BASE_SHIPPING_COST * multiplier).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    tax_rate = settings.TAX_RATE
    tax = quantize_money(subtotal * tax_rate)
    fee = quantize_money(settings.COD_FEE if payment_method == PaymentMethod.cash_on_delivery else 0)
    return Pricing(
        subtotal=subtotal,
        shipping_cost=shipping,
        tax_rate=tax_rate,
        tax_amount=tax,
        discount_amount=quantize_money(0),
        payment_fee=fee,
    )


class OrderService:
    """
    订单服务

    Args:
        session: 数据库会话
        settings: 配置
        notifier: 通知分发服务（为空时不发送状态通知）
        clock: 当前时间函数
    """

    def __init__(
        self,
        session: Session,
        settings: Settings = default_settings,
        notifier: NotificationService | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.settings = settings
        self.notifier = notifier
        self.clock = clock

    # ------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------

    def get(self, order_id: int) -> Order:
        order = crud.order.get(session=self.session, order_id=order_id)
        if order is None:
            raise order_not_found()
        return order

    def get_by_number(self, order_number: str) -> Order:
        order = crud.order.get_by_number(session=self.session, order_number=order_number.strip().upper())
        if order is None:
            raise order_not_found()
        return order

    def find(self, identifier: str) -> Order:
        order = crud.order.find_by_identifier(session=self.session, identifier=identifier)
        if order is None:
            raise order_not_found()
        return order

    def list_orders(
        self,
        status: OrderStatus | None = None,
        search: str | None = None,
        customer_id: int | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Order], int]:
        return crud.order.list_orders(
            session=self.session,
            status=status,
            search=search,
            customer_id=customer_id,
            page=page,
            page_size=page_size,
        )

    def search_by_email(self, email: str, order_number: str | None = None) -> list[Order]:
        return crud.order.search_by_email(session=self.session, email=email, order_number=order_number)

    # ------------------------------------------------------------
    # 创建
    # ------------------------------------------------------------

    def _resolve_items(self, body: OrderCreateRequest) -> list[OrderItem]:
        if not body.items:
            raise ValidationError("Order must contain at least one item", code=400101)

        items: list[OrderItem] = []
        for raw in body.items:
            if raw.product_id is not None:
                product = self.session.get(Product, raw.product_id)
                if product is None:
                    raise ValidationError(f"Product not found: {raw.product_id}", code=400102)
                if product.stock_quantity < raw.quantity:
                    raise ValidationError(f"Insufficient stock for product: {product.name}", code=400103)
                price = raw.price if raw.price is not None else product.price
                name = raw.name or product.name
                image = raw.image or product.image
            else:
                if raw.price is None or not raw.name:
                    raise ValidationError("Item name and price are required", code=400104)
                price, name, image = raw.price, raw.name, raw.image
            items.append(
                OrderItem(
                    product_id=raw.product_id,
                    name=name,
                    price=quantize_money(price),
                    quantity=raw.quantity,
                    image=image,
                )
            )
        return items

    def create(self, body: OrderCreateRequest, customer: Customer | None = None) -> Order:
        """
        创建订单

        游客下单时按邮箱关联已有客户；关联商品扣减库存，客户累计消费与订单数增加。
        """
        contact = body.customer
        address = body.shipping_address
        if not contact.first_name.strip() or not contact.email or not contact.phone.strip():
            raise ValidationError("Customer name, email and phone are required", code=400105)
        if not address.street.strip() or not address.city.strip():
            raise ValidationError("Shipping street and city are required", code=400106)

        items = self._resolve_items(body)
        pricing = compute_pricing(items, address.city, body.is_urgent, body.payment_method, self.settings)

        if customer is None:
            customer = crud.order.get_customer_by_email(session=self.session, email=contact.email)

        now = self.clock()
        days = self.settings.DELIVERY_DAYS_URGENT if body.is_urgent else self.settings.DELIVERY_DAYS_NORMAL
        first_entry = StatusHistoryEntry(
            status=OrderStatus.pending,
            timestamp=now,
            note="Commande créée",
            location=STATUS_LOCATIONS[OrderStatus.pending],
            updated_by="system",
        )
        order = Order(
            order_number=generate_order_number(),
            tracking_code=generate_tracking_code(),
            customer_id=customer.id if customer else None,
            customer_name=f"{contact.first_name} {contact.last_name}".strip(),
            customer_email=contact.email.lower(),
            customer_phone=contact.phone.strip(),
            shipping_address=address.model_dump(mode="json"),
            items=dump_documents(items),
            status=OrderStatus.pending,
            status_history=dump_documents([first_entry]),
            payment_method=body.payment_method,
            payment_status=OrderPaymentStatus.pending,
            subtotal=pricing.subtotal,
            shipping_cost=pricing.shipping_cost,
            tax_rate=pricing.tax_rate,
            tax_amount=pricing.tax_amount,
            discount_amount=pricing.discount_amount,
            payment_fee=pricing.payment_fee,
            total_amount=pricing.total_amount,
            estimated_delivery=add_business_days(now, days),
            is_urgent=body.is_urgent,
            notes=body.notes,
            delivery_instructions=body.delivery_instructions,
            created_at=now,
            updated_at=now,
        )

        self.session.add(order)
        for item in items:
            if item.product_id is not None:
                crud.order.adjust_product_stock(
                    session=self.session, product_id=item.product_id, delta=-item.quantity
                )
        if customer is not None:
            crud.order.adjust_customer_totals(
                session=self.session, customer_id=customer.id, spent_delta=pricing.total_amount, count_delta=1
            )
        self.session.commit()
        self.session.refresh(order)
        logger.info(
            f"Order created: {order.order_number} total={order.total_amount} "
            f"customer={order.customer_id or 'guest'}"
        )
        return order

    # ------------------------------------------------------------
    # 变更
    # ------------------------------------------------------------

    def _update_with_retry(self, order_id: int, mutate: Callable[[Order], dict[str, Any] | None]) -> Order:
        """
        乐观锁更新

        mutate 接收最新读取的订单，返回要写入的字段（None 表示无需更新）。
        每次重试都会重新读取订单并重新调用 mutate。
        """
        retrying = Retrying(
            retry=retry_if_exception_type(ConflictError),
            stop=stop_after_attempt(self.settings.ORDER_UPDATE_MAX_RETRIES),
            wait=wait_random(0, 0.05),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                order = self.session.get(Order, order_id, populate_existing=True)
                if order is None:
                    raise order_not_found()
                changes = mutate(order)
                if not changes:
                    return order
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        f"Retrying update of order {order.order_number} "
                        f"(attempt {attempt.retry_state.attempt_number})"
                    )
                return crud.order.apply_order_changes(session=self.session, order=order, changes=changes)
        raise AssertionError("unreachable")

    def transition(
        self,
        order_id: int,
        new_status: OrderStatus,
        *,
        note: str | None = None,
        location: str | None = None,
        actor: str = "system",
        tracking_number: str | None = None,
        notify: bool = True,
    ) -> Order:
        """
        更新订单状态

        状态变化或提供了备注/位置时追加历史条目；进入 delivered 时写入 actual_delivery（只写一次）。
        提交成功后按需发送状态通知。
        """
        new_status = OrderStatus(new_status)
        captured: dict[str, Any] = {}

        def mutate(order: Order) -> dict[str, Any] | None:
            captured["previous"] = OrderStatus(order.status)
            changes = self._status_changes(
                order, new_status, note=note, location=location, actor=actor, notify=notify
            )
            if tracking_number and tracking_number != order.tracking_number:
                changes["tracking_number"] = tracking_number
            return changes or None

        order = self._update_with_retry(order_id, mutate)
        self._after_transition(order, captured.get("previous"), new_status, actor=actor, notify=notify)
        return order

    def _status_changes(
        self,
        order: Order,
        new_status: OrderStatus,
        *,
        note: str | None,
        location: str | None,
        actor: str,
        notify: bool,
    ) -> dict[str, Any]:
        """计算状态变更需要写入的字段（历史条目只追加）"""
        changed = OrderStatus(order.status) != new_status
        changes: dict[str, Any] = {}
        if changed or note or location:
            entry = StatusHistoryEntry(
                status=new_status,
                timestamp=self.clock(),
                note=note or (STATUS_NOTES[new_status] if changed else None),
                location=location or (STATUS_LOCATIONS[new_status] if changed else None),
                updated_by=actor,
                notification_sent=notify and changed,
            )
            changes["status_history"] = list(order.status_history) + [entry.model_dump(mode="json")]
        if changed:
            changes["status"] = new_status
            if new_status == OrderStatus.delivered and order.actual_delivery is None:
                changes["actual_delivery"] = self.clock()
        return changes

    def _after_transition(
        self,
        order: Order,
        previous: OrderStatus | None,
        new_status: OrderStatus,
        *,
        actor: str,
        notify: bool,
    ) -> None:
        if previous is None or previous == new_status:
            return
        logger.info(f"Order {order.order_number}: {previous.value} -> {new_status.value} by {actor}")
        if notify and self.notifier is not None:
            self.notifier.notify_order_status(order, previous)

    def cancel(self, order_id: int, reason: str, *, actor: str, admin: bool = False) -> Order:
        """
        取消订单

        Raises:
            InvalidStateError: 客户取消非 pending/confirmed 订单，或订单已取消
        """
        captured: dict[str, Any] = {}

        def mutate(order: Order) -> dict[str, Any]:
            current = OrderStatus(order.status)
            if current == OrderStatus.cancelled:
                raise InvalidStateError("Order is already cancelled", code=400202)
            if not admin and current not in CUSTOMER_CANCELLABLE:
                raise InvalidStateError(f"Order cannot be cancelled in status {current.value}", code=400201)
            captured["previous"] = current
            changes = self._status_changes(
                order, OrderStatus.cancelled, note=reason, location=None, actor=actor, notify=True
            )
            line = f"Cancellation reason: {reason}"
            changes["notes"] = f"{order.notes}\n{line}" if order.notes else line
            return changes

        order = self._update_with_retry(order_id, mutate)
        self._after_transition(order, captured.get("previous"), OrderStatus.cancelled, actor=actor, notify=True)
        return order

    def mark_payment(
        self, order_id: int, payment_status: OrderPaymentStatus, *, confirm_pending: bool = False
    ) -> Order:
        """
        回写订单支付状态

        confirm_pending 为真且订单仍为 pending 时推进到 confirmed（不会回退已推进的订单）。
        """
        payment_status = OrderPaymentStatus(payment_status)
        advanced: dict[str, bool] = {}

        def mutate(order: Order) -> dict[str, Any] | None:
            changes: dict[str, Any] = {}
            if OrderPaymentStatus(order.payment_status) != payment_status:
                changes["payment_status"] = payment_status
            advance = confirm_pending and OrderStatus(order.status) == OrderStatus.pending
            advanced["value"] = advance
            if advance:
                entry = StatusHistoryEntry(
                    status=OrderStatus.confirmed,
                    timestamp=self.clock(),
                    note="Paiement reçu, commande confirmée",
                    location=STATUS_LOCATIONS[OrderStatus.confirmed],
                    updated_by="payment",
                    notification_sent=self.notifier is not None,
                )
                changes["status"] = OrderStatus.confirmed
                changes["status_history"] = list(order.status_history) + [entry.model_dump(mode="json")]
            return changes or None

        order = self._update_with_retry(order_id, mutate)
        if advanced.get("value"):
            logger.info(f"Order {order.order_number} confirmed after payment")
            if self.notifier is not None:
                self.notifier.notify_order_status(order, OrderStatus.pending)
        return order

    def add_internal_note(
        self, order_id: int, note: str, *, added_by: str, is_private: bool = True
    ) -> Order:
        entry = InternalNote(note=note, added_by=added_by, timestamp=self.clock(), is_private=is_private)

        def mutate(order: Order) -> dict[str, Any]:
            return {"internal_notes": list(order.internal_notes) + [entry.model_dump(mode="json")]}

        return self._update_with_retry(order_id, mutate)

    def delete(self, order_id: int) -> None:
        """
        删除订单（仅 pending/cancelled）

        pending 订单回补库存；关联客户的累计消费与订单数同步扣减。
        """
        order = self.get(order_id)
        status = OrderStatus(order.status)
        if status not in DELETABLE:
            raise InvalidStateError(
                f"Only pending or cancelled orders can be deleted (status: {status.value})", code=400203
            )
        if status == OrderStatus.pending:
            for item in order_items(order):
                if item.product_id is not None:
                    crud.order.adjust_product_stock(
                        session=self.session, product_id=item.product_id, delta=item.quantity
                    )
        if order.customer_id is not None:
            crud.order.adjust_customer_totals(
                session=self.session,
                customer_id=order.customer_id,
                spent_delta=-Decimal(order.total_amount),
                count_delta=-1,
            )
        number = order.order_number
        crud.order.delete(session=self.session, order=order)
        logger.info(f"Order deleted: {number}")

    # ------------------------------------------------------------
    # 追踪与统计
    # ------------------------------------------------------------

    def tracking_timeline(self, order: Order) -> tuple[list[dict[str, Any]], int]:
        """
        固定 5 步的追踪时间线

        Returns:
            (steps, progress_percentage)
        """
        entries = history_entries(order)
        current = OrderStatus(order.status)
        reached = {entry.status for entry in entries}
        current_index = FULFILLMENT_FLOW.index(current) if current in FULFILLMENT_FLOW else -1

        steps: list[dict[str, Any]] = []
        for index, status in enumerate(FULFILLMENT_FLOW):
            first = next((e for e in entries if e.status == status), None)
            completed = status in reached or (current_index >= 0 and index <= current_index)
            steps.append(
                {
                    "status": status,
                    "label": status_label(status),
                    "completed": completed,
                    "current": status == current,
                    "timestamp": ensure_utc(first.timestamp) if first else None,
                    "note": first.note if first else None,
                    "location": first.location if first else None,
                }
            )
        done = sum(1 for step in steps if step["completed"])
        return steps, round(done / len(FULFILLMENT_FLOW) * 100)

    def stats(self) -> dict[str, Any]:
        counts = crud.order.status_counts(session=self.session)
        return {
            "total_orders": sum(counts.values()),
            "by_status": {status.value: counts.get(status.value, 0) for status in OrderStatus},
            "revenue": quantize_money(crud.order.fulfilled_revenue(session=self.session)),
        }

    def customer_stats(self, customer_id: int) -> dict[str, Any]:
        """
        客户个人订单统计

        金额按全部订单汇总；准时率只看同时有预计和实际送达时间的已送达订单。
        """
        totals = crud.order.customer_status_totals(session=self.session, customer_id=customer_id)
        total_orders = sum(count for count, _ in totals.values())
        total_spent = sum((amount for _, amount in totals.values()), Decimal("0"))
        delivered = crud.order.delivered_dates(session=self.session, customer_id=customer_id)
        on_time = sum(1 for actual, estimated in delivered if ensure_utc(actual) <= ensure_utc(estimated))
        active = (OrderStatus.pending, OrderStatus.confirmed, OrderStatus.processing, OrderStatus.shipped)
        return {
            "total_orders": total_orders,
            "total_spent": quantize_money(total_spent),
            "average_order_value": quantize_money(total_spent / total_orders if total_orders else 0),
            "by_status": {status.value: totals.get(status.value, (0, 0))[0] for status in OrderStatus},
            "active_orders": sum(totals.get(status.value, (0, 0))[0] for status in active),
            "delivered_orders": len(delivered),
            "on_time_deliveries": on_time,
            "on_time_percentage": round(on_time / len(delivered) * 100) if delivered else 0,
        }
