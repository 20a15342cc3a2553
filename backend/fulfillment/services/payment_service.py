"""
支付编排服务

支付状态机：
    pending -> processing -> completed
    pending/processing -> failed
    completed -> refunded | partially_refunded
    partially_refunded -> refunded | partially_refunded
相同状态的更新视为无操作，其余转换抛出 InvalidStateError。

回调对账：
- 按 payment_reference 匹配，其次按 (gateway, gateway_transaction_id) 匹配
- 未匹配的回调只记录日志并确认接收（避免网关重试风暴）
- 重复回调不会重复推进订单（订单只会从 pending 推进到 confirmed）
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlmodel import Session

from fulfillment import crud
from fulfillment.api.errors import (
    DuplicatePaymentError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    payment_not_found,
)
from fulfillment.core.config import Settings, settings as default_settings
from fulfillment.core.snowflake import generate_payment_reference, generate_refund_id
from fulfillment.enums import (
    OrderPaymentStatus,
    OrderStatus,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
)
from fulfillment.integrations.gateways import (
    GatewayNotification,
    InitiationResult,
    PaymentAdapter,
    PaymentRequest,
    WebhookPayloadError,
    adapter_for_gateway,
    build_adapters,
)
from fulfillment.models import Order, Payment, quantize_money, utc_now
from fulfillment.models.documents import RefundRecord
from fulfillment.models.payment import refund_records, refundable_amount, remaining_amount, total_refunded
from fulfillment.services import config_service
from fulfillment.services.order_service import OrderService

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.pending: frozenset({PaymentStatus.processing, PaymentStatus.failed}),
    PaymentStatus.processing: frozenset({PaymentStatus.completed, PaymentStatus.failed}),
    PaymentStatus.completed: frozenset({PaymentStatus.refunded, PaymentStatus.partially_refunded}),
    PaymentStatus.partially_refunded: frozenset({PaymentStatus.refunded, PaymentStatus.partially_refunded}),
    PaymentStatus.failed: frozenset(),
    PaymentStatus.refunded: frozenset(),
}

REFUNDABLE_STATUSES = (PaymentStatus.completed, PaymentStatus.partially_refunded)


@dataclass(frozen=True)
class PaymentOutcome:
    payment: Payment
    result: InitiationResult


@dataclass(frozen=True)
class WebhookOutcome:
    matched: bool
    payment: Payment | None = None
    reason: str | None = None


@dataclass(frozen=True)
class RefundOutcome:
    refund: RefundRecord
    payment: Payment


def check_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    """
    校验支付状态转换

    Returns:
        True 表示需要变更，False 表示相同状态（无操作）

    Raises:
        InvalidStateError: 不允许的转换
    """
    current, target = PaymentStatus(current), PaymentStatus(target)
    if current == target:
        return False
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateError(
            f"Invalid payment status transition: {current.value} -> {target.value}", code=400210
        )
    return True


class PaymentService:
    """
    支付编排服务

    Args:
        session: 数据库会话
        settings: 配置
        adapters: 支付方式 -> 适配器（默认按配置构建）
        order_service: 订单服务（用于回写订单支付状态）
        clock: 当前时间函数
    """

    def __init__(
        self,
        session: Session,
        settings: Settings = default_settings,
        adapters: dict[PaymentMethod, PaymentAdapter] | None = None,
        order_service: OrderService | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.settings = settings
        self.adapters = adapters if adapters is not None else build_adapters(settings)
        self.order_service = order_service or OrderService(session, settings)
        self.clock = clock

    # ------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------

    def get(self, payment_id: int) -> Payment:
        payment = crud.payment.get(session=self.session, payment_id=payment_id)
        if payment is None:
            raise payment_not_found()
        return payment

    def get_by_reference(self, reference: str) -> Payment:
        payment = crud.payment.get_by_reference(session=self.session, reference=reference)
        if payment is None:
            raise payment_not_found()
        return payment

    def history(self, customer_id: int, page: int = 1, page_size: int = 10) -> tuple[list[Payment], int]:
        return crud.payment.list_for_customer(
            session=self.session, customer_id=customer_id, page=page, page_size=page_size
        )

    def stats(self, days: int = 30) -> dict[str, Any]:
        since = self.clock() - timedelta(days=days)
        data = crud.payment.stats(session=self.session, since=since)
        data["period_days"] = days
        return data

    def available_methods(self) -> list[dict[str, Any]]:
        """线下方式始终可用；网关方式需开启且配置了凭证"""
        methods: list[dict[str, Any]] = []
        for method, adapter in self.adapters.items():
            if not adapter.enabled():
                continue
            info = config_service.payment_method_info(method.value)
            fee = self.settings.COD_FEE if method == PaymentMethod.cash_on_delivery else Decimal("0")
            methods.append(
                {
                    "id": method,
                    "name": info.get("name", method.value),
                    "description": info.get("description", ""),
                    "fee": quantize_money(fee),
                    "processing_time": info.get("processing_time", ""),
                    "enabled": True,
                }
            )
        return methods

    def _adapter(self, method: PaymentMethod | str) -> PaymentAdapter:
        adapter = self.adapters.get(PaymentMethod(method))
        if adapter is None:
            raise ValidationError(f"Unsupported payment method: {method}", code=400110)
        return adapter

    # ------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------

    def _set_status(self, payment: Payment, target: PaymentStatus) -> bool:
        if not check_transition(payment.status, target):
            return False
        now = self.clock()
        payment.status = target
        if target == PaymentStatus.processing:
            payment.processed_at = now
        elif target == PaymentStatus.completed:
            payment.completed_at = now
            payment.net_amount = quantize_money(Decimal(payment.amount) - Decimal(payment.gateway_fee))
        elif target == PaymentStatus.failed:
            payment.failed_at = now
        return True

    def _reflect_on_order(
        self, payment: Payment, payment_status: OrderPaymentStatus, *, confirm_pending: bool = False
    ) -> Order | None:
        try:
            return self.order_service.mark_payment(
                payment.order_id, payment_status, confirm_pending=confirm_pending
            )
        except NotFoundError:
            # 订单可能已被删除，支付记录单独保留
            logger.warning(
                f"Order {payment.order_number} not found while reflecting payment {payment.payment_reference}"
            )
            return None

    # ------------------------------------------------------------
    # 发起
    # ------------------------------------------------------------

    def initiate(
        self,
        order_id: int,
        method: PaymentMethod,
        customer_info: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> PaymentOutcome:
        """
        发起支付

        Raises:
            ValidationError: 支付方式不支持或未开启
            InvalidStateError: 订单已支付或已取消
            DuplicatePaymentError: 订单已有进行中的支付
            GatewayError: 网关调用失败（失败信息已持久化）
        """
        method = PaymentMethod(method)
        adapter = self._adapter(method)
        if not adapter.enabled():
            raise ValidationError(f"Payment method not available: {method.value}", code=400111)

        order = self.order_service.get(order_id)
        if OrderPaymentStatus(order.payment_status) == OrderPaymentStatus.paid:
            raise InvalidStateError("Order is already paid", code=400211)
        if OrderStatus(order.status) == OrderStatus.cancelled:
            raise InvalidStateError("Cannot pay for a cancelled order", code=400212)
        if crud.payment.get_active_for_order(session=self.session, order_id=order.id) is not None:
            raise DuplicatePaymentError()

        info = {k: v for k, v in (customer_info or {}).items() if v}
        first_name, _, last_name = order.customer_name.partition(" ")
        now = self.clock()
        payment = Payment(
            order_id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            customer_email=info.get("email") or order.customer_email,
            payment_method=method,
            payment_gateway=adapter.gateway,
            payment_reference=generate_payment_reference(),
            amount=quantize_money(order.total_amount),
            currency=self.settings.CURRENCY,
            status=PaymentStatus.pending,
            max_attempts=self.settings.PAYMENT_MAX_ATTEMPTS,
            initiated_at=now,
            last_attempt_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata_=metadata,
        )
        payment = crud.payment.insert(session=self.session, payment=payment)

        request = PaymentRequest(
            reference=payment.payment_reference,
            order_number=order.order_number,
            amount=Decimal(payment.amount),
            currency=payment.currency,
            first_name=info.get("first_name") or first_name,
            last_name=info.get("last_name") or last_name,
            email=info.get("email") or order.customer_email,
            phone=info.get("phone") or order.customer_phone,
        )
        try:
            result = adapter.initiate(request)
        except GatewayError as e:
            payment.attempts += 1
            payment.gateway_message = e.gateway_message
            self._set_status(payment, PaymentStatus.failed)
            crud.payment.save(session=self.session, payment=payment)
            self._reflect_on_order(payment, OrderPaymentStatus.failed)
            logger.error(f"Payment {payment.payment_reference} initiation failed: {e.message}")
            raise

        payment.gateway_transaction_id = result.transaction_id
        payment.gateway_response = result.raw
        payment.gateway_message = result.message
        if result.status == PaymentStatus.processing:
            self._set_status(payment, PaymentStatus.processing)
        payment = crud.payment.save(session=self.session, payment=payment)
        if not adapter.is_manual:
            self._reflect_on_order(payment, OrderPaymentStatus.processing)

        logger.info(
            f"Payment initiated: {payment.payment_reference} order={order.order_number} "
            f"method={method.value} status={PaymentStatus(payment.status).value}"
        )
        return PaymentOutcome(payment=payment, result=result)

    # ------------------------------------------------------------
    # 回调对账
    # ------------------------------------------------------------

    def _match_webhook(self, gateway: PaymentGateway, notice: GatewayNotification) -> Payment | None:
        if notice.reference:
            payment = crud.payment.get_by_reference(session=self.session, reference=notice.reference)
            if payment is not None:
                if PaymentGateway(payment.payment_gateway) != gateway:
                    logger.error(
                        f"{gateway.value} webhook for {notice.reference} but payment belongs to "
                        f"{PaymentGateway(payment.payment_gateway).value}"
                    )
                    return None
                if payment.gateway_transaction_id is None:
                    logger.warning(
                        f"{gateway.value} webhook for {notice.reference}: payment exists but has no "
                        f"gateway transaction id yet (initiation still in flight)"
                    )
                    return None
                if notice.transaction_id and notice.transaction_id != payment.gateway_transaction_id:
                    logger.error(
                        f"{gateway.value} webhook transaction id mismatch for {notice.reference}: "
                        f"got {notice.transaction_id}, expected {payment.gateway_transaction_id}"
                    )
                    return None
                return payment

        if notice.transaction_id:
            payment = crud.payment.get_by_transaction_id(
                session=self.session, gateway=gateway, transaction_id=notice.transaction_id
            )
            if payment is not None:
                return payment

        logger.warning(
            f"{gateway.value} webhook: no payment with reference={notice.reference} "
            f"transaction_id={notice.transaction_id}"
        )
        return None

    def reconcile_webhook(self, gateway: PaymentGateway, payload: Any) -> WebhookOutcome:
        """
        处理网关回调

        匹配到的支付记录总会保存原始报文；状态按适配器映射后应用。
        非法状态转换和格式错误的报文只记录日志，仍然确认接收。
        """
        gateway = PaymentGateway(gateway)
        adapter = adapter_for_gateway(self.adapters, gateway)
        if adapter is None:
            logger.error(f"Webhook received for unknown gateway {gateway.value}")
            return WebhookOutcome(matched=False, reason="unknown_gateway")

        if not isinstance(payload, dict):
            logger.error(f"Malformed {gateway.value} webhook: body is not a JSON object")
            return WebhookOutcome(matched=False, reason="malformed_payload")

        try:
            notice = adapter.parse_webhook(payload)
        except WebhookPayloadError as e:
            logger.error(f"Malformed {gateway.value} webhook: {e}")
            return WebhookOutcome(matched=False, reason="malformed_payload")

        payment = self._match_webhook(gateway, notice)
        if payment is None:
            return WebhookOutcome(matched=False, reason="payment_not_found")

        payment.webhook_received = True
        payment.webhook_data = payload
        crud.payment.save(session=self.session, payment=payment)

        if notice.gateway_status is None:
            # 静默回调：向网关查询状态
            try:
                notice = adapter.fetch_status(payment.gateway_transaction_id or notice.transaction_id or "")
            except GatewayError as e:
                logger.error(f"Status lookup after {gateway.value} webhook failed: {e.message}")
                return WebhookOutcome(matched=True, payment=payment, reason="status_lookup_failed")

        payment = self._apply_gateway_status(payment, adapter, notice)
        return WebhookOutcome(matched=True, payment=payment)

    def _apply_gateway_status(
        self, payment: Payment, adapter: PaymentAdapter, notice: GatewayNotification
    ) -> Payment:
        payment.gateway_status = notice.gateway_status
        if notice.message:
            payment.gateway_message = notice.message
        target = adapter.map_status(notice.gateway_status)

        changed = False
        if target is not None:
            try:
                changed = self._set_status(payment, target)
            except InvalidStateError as e:
                logger.warning(f"Ignoring gateway status for {payment.payment_reference}: {e.message}")
        payment = crud.payment.save(session=self.session, payment=payment)

        if changed:
            logger.info(
                f"Payment {payment.payment_reference} -> {PaymentStatus(payment.status).value} "
                f"(gateway status {notice.gateway_status})"
            )
            if payment.status == PaymentStatus.completed:
                self._reflect_on_order(payment, OrderPaymentStatus.paid, confirm_pending=True)
            elif payment.status == PaymentStatus.failed:
                self._reflect_on_order(payment, OrderPaymentStatus.failed)
        return payment

    def verify(self, reference: str) -> Payment:
        """
        主动向网关查询并应用最新状态

        线下方式、尚无网关交易号或已终态的支付原样返回。
        """
        payment = self.get_by_reference(reference)
        adapter = self._adapter(payment.payment_method)
        if adapter.is_manual or not payment.gateway_transaction_id:
            return payment
        if PaymentStatus(payment.status) not in (PaymentStatus.pending, PaymentStatus.processing):
            return payment
        notice = adapter.fetch_status(payment.gateway_transaction_id)
        return self._apply_gateway_status(payment, adapter, notice)

    # ------------------------------------------------------------
    # 人工确认
    # ------------------------------------------------------------

    def mark_paid(self, payment_id: int, note: str | None = None) -> Payment:
        """
        管理员确认线下支付已收款（pending -> processing -> completed）

        Raises:
            InvalidStateError: 非线下方式，或支付已失败/已退款
        """
        payment = self.get(payment_id)
        adapter = self._adapter(payment.payment_method)
        if not adapter.is_manual:
            raise InvalidStateError("Only manual payments can be marked as paid", code=400213)
        if PaymentStatus(payment.status) == PaymentStatus.completed:
            return payment

        if PaymentStatus(payment.status) == PaymentStatus.pending:
            self._set_status(payment, PaymentStatus.processing)
        self._set_status(payment, PaymentStatus.completed)
        if note:
            payment.notes = f"{payment.notes}\n{note}" if payment.notes else note
        payment = crud.payment.save(session=self.session, payment=payment)
        logger.info(f"Manual payment {payment.payment_reference} marked as paid")
        self._reflect_on_order(payment, OrderPaymentStatus.paid, confirm_pending=True)
        return payment

    # ------------------------------------------------------------
    # 退款
    # ------------------------------------------------------------

    def refund(self, payment_id: int, amount: Decimal | None = None, reason: str | None = None) -> RefundOutcome:
        """
        申请退款（追加一条 pending 退款子记录）

        amount 为空时退还全部可退金额；可退金额 = 支付金额 - 已完成退款 - 处理中退款。
        """
        payment = self.get(payment_id)
        if PaymentStatus(payment.status) not in REFUNDABLE_STATUSES:
            raise InvalidStateError(
                f"Payment cannot be refunded in status {PaymentStatus(payment.status).value}", code=400220
            )
        refundable = refundable_amount(payment)
        value = quantize_money(amount) if amount is not None else quantize_money(refundable)
        if value <= 0:
            raise ValidationError("Refund amount must be positive", code=400120)
        if value > refundable:
            raise InvalidStateError(
                f"Refund amount {value} exceeds refundable amount {quantize_money(refundable)}", code=400221
            )

        record = RefundRecord(
            refund_id=generate_refund_id(),
            amount=value,
            reason=reason,
            status=RefundStatus.pending,
            created_at=self.clock(),
        )
        payment.refunds = list(payment.refunds) + [record.model_dump(mode="json")]
        payment = crud.payment.save(session=self.session, payment=payment)
        logger.info(f"Refund {record.refund_id} requested for {payment.payment_reference}: {value}")
        return RefundOutcome(refund=record, payment=payment)

    def settle_refund(
        self,
        payment_id: int,
        refund_id: str,
        succeeded: bool,
        gateway_refund_id: str | None = None,
    ) -> RefundOutcome:
        """
        确认退款结果（管理员线下确认）

        成功后按已退金额重新计算支付状态：全额 -> refunded，部分 -> partially_refunded。
        """
        payment = self.get(payment_id)
        records = refund_records(payment)
        record = next((r for r in records if r.refund_id == refund_id), None)
        if record is None:
            raise NotFoundError("Refund not found", code=404202)
        if record.status != RefundStatus.pending:
            raise InvalidStateError(f"Refund {refund_id} is already {record.status.value}", code=400222)

        record.status = RefundStatus.completed if succeeded else RefundStatus.failed
        record.processed_at = self.clock()
        record.gateway_refund_id = gateway_refund_id
        payment.refunds = [r.model_dump(mode="json") for r in records]

        order_status: OrderPaymentStatus | None = None
        if succeeded:
            fully = total_refunded(payment) >= Decimal(payment.amount)
            target = PaymentStatus.refunded if fully else PaymentStatus.partially_refunded
            self._set_status(payment, target)
            order_status = OrderPaymentStatus.refunded if fully else OrderPaymentStatus.partially_refunded
        payment = crud.payment.save(session=self.session, payment=payment)

        logger.info(
            f"Refund {refund_id} on {payment.payment_reference} settled: "
            f"{'completed' if succeeded else 'failed'}, remaining {remaining_amount(payment)}"
        )
        if order_status is not None:
            self._reflect_on_order(payment, order_status)
        return RefundOutcome(refund=record, payment=payment)
