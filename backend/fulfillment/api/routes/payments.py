"""
支付路由模块

- 支付方式列表、发起支付、查询/主动核验支付状态、客户支付历史、客户退款申请
- 管理员：退款确认、线下支付确认、支付统计
- 网关回调：POST /payments/webhook/{gateway}（未匹配的回调也返回 200）
"""
from __future__ import annotations

import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request

from fulfillment.api.deps import (
    CurrentAdmin,
    CurrentCustomer,
    OptionalCustomer,
    PaymentServiceDep,
)
from fulfillment.api.errors import order_not_found, payment_not_found
from fulfillment.api.schemas import (
    ApiEnvelope,
    MarkPaidRequest,
    PaymentData,
    PaymentInitiateRequest,
    PaymentMethodData,
    PaymentResultData,
    PaymentsData,
    RefundData,
    RefundRequest,
    RefundResultData,
    RefundSettleRequest,
    WebhookAckData,
)
from fulfillment.enums import PaymentGateway, PaymentStatus
from fulfillment.models import Payment, ensure_utc
from fulfillment.models.payment import (
    refund_records,
    refundable_amount,
    remaining_amount,
    status_display,
    total_refunded,
)
from fulfillment.models.documents import RefundRecord

router = APIRouter(prefix="/payments", tags=["payments"])


def _refund_data(record: RefundRecord) -> RefundData:
    return RefundData(
        refund_id=record.refund_id,
        amount=record.amount,
        reason=record.reason,
        status=record.status,
        processed_at=ensure_utc(record.processed_at),
        gateway_refund_id=record.gateway_refund_id,
        created_at=ensure_utc(record.created_at),
    )


def to_payment_data(payment: Payment) -> PaymentData:
    return PaymentData(
        id=payment.id,
        order_id=payment.order_id,
        order_number=payment.order_number,
        payment_reference=payment.payment_reference,
        payment_method=payment.payment_method,
        payment_gateway=payment.payment_gateway,
        gateway_transaction_id=payment.gateway_transaction_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        status_display=status_display(payment),
        gateway_status=payment.gateway_status,
        gateway_message=payment.gateway_message,
        attempts=payment.attempts,
        refunds=[_refund_data(r) for r in refund_records(payment)],
        total_refunded=total_refunded(payment),
        remaining_amount=remaining_amount(payment),
        initiated_at=ensure_utc(payment.initiated_at),
        completed_at=ensure_utc(payment.completed_at),
        failed_at=ensure_utc(payment.failed_at),
        created_at=ensure_utc(payment.created_at),
    )


@router.get("/methods", response_model=ApiEnvelope)
def payment_methods(payments: PaymentServiceDep) -> ApiEnvelope:
    """可用支付方式（未开启或未配置凭证的网关不返回）"""
    return ApiEnvelope(data=[PaymentMethodData(**m) for m in payments.available_methods()])


@router.post("/initiate", response_model=ApiEnvelope)
def initiate_payment(
    payments: PaymentServiceDep,
    customer: OptionalCustomer,
    body: PaymentInitiateRequest,
    request: Request,
) -> ApiEnvelope:
    """
    发起支付

    请求路径: POST /api/v1/payments/initiate
    线下方式返回付款说明；网关方式返回跳转链接。
    """
    order = payments.order_service.get(body.order_id)
    if customer is not None and order.customer_id not in (None, customer.id):
        raise order_not_found()

    outcome = payments.initiate(
        body.order_id,
        body.payment_method,
        customer_info=body.customer_info.model_dump(exclude_none=True) if body.customer_info else None,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    payment, result = outcome.payment, outcome.result
    return ApiEnvelope(
        message="Payment initiated",
        data=PaymentResultData(
            payment_id=payment.id,
            payment_reference=payment.payment_reference,
            status=payment.status,
            message=result.message,
            amount=payment.amount,
            currency=payment.currency,
            redirect_url=result.redirect_url,
            gateway_transaction_id=payment.gateway_transaction_id,
            instructions=result.instructions,
            bank_details=result.bank_details,
        ),
    )


@router.get("/customer/history", response_model=ApiEnvelope)
def payment_history(
    payments: PaymentServiceDep,
    customer: CurrentCustomer,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=50),
) -> ApiEnvelope:
    rows, count = payments.history(customer.id, page=page, page_size=page_size)
    return ApiEnvelope(data=PaymentsData(data=[to_payment_data(p) for p in rows], count=count))


@router.get("/stats", response_model=ApiEnvelope)
def payment_stats(
    payments: PaymentServiceDep,
    _: CurrentAdmin,
    days: int = Query(default=30, ge=1, le=365),
) -> ApiEnvelope:
    return ApiEnvelope(data=payments.stats(days=days))


@router.get("/{reference}/status", response_model=ApiEnvelope)
def payment_status(payments: PaymentServiceDep, reference: str) -> ApiEnvelope:
    return ApiEnvelope(data=to_payment_data(payments.get_by_reference(reference)))


@router.post("/{reference}/verify", response_model=ApiEnvelope)
def verify_payment(payments: PaymentServiceDep, reference: str) -> ApiEnvelope:
    """向网关查询最新状态并应用（支付返回页调用）"""
    return ApiEnvelope(data=to_payment_data(payments.verify(reference)))


@router.post("/{payment_id}/refund", response_model=ApiEnvelope)
def refund_payment(
    payments: PaymentServiceDep, customer: CurrentCustomer, payment_id: int, body: RefundRequest
) -> ApiEnvelope:
    """
    客户申请退款

    只能针对自己的支付记录；退款由管理员确认后结算。
    """
    if payments.get(payment_id).customer_id != customer.id:
        raise payment_not_found()
    outcome = payments.refund(payment_id, body.amount, body.reason)
    return ApiEnvelope(
        message="Refund requested",
        data=RefundResultData(
            refund=_refund_data(outcome.refund),
            payment_status=outcome.payment.status,
            remaining_amount=remaining_amount(outcome.payment),
            refundable_amount=refundable_amount(outcome.payment),
        ),
    )


@router.post("/{payment_id}/refunds/{refund_id}/settle", response_model=ApiEnvelope)
def settle_refund(
    payments: PaymentServiceDep,
    _: CurrentAdmin,
    payment_id: int,
    refund_id: str,
    body: RefundSettleRequest,
) -> ApiEnvelope:
    outcome = payments.settle_refund(payment_id, refund_id, body.succeeded, body.gateway_refund_id)
    return ApiEnvelope(
        message="Refund settled",
        data=RefundResultData(
            refund=_refund_data(outcome.refund),
            payment_status=outcome.payment.status,
            remaining_amount=remaining_amount(outcome.payment),
            refundable_amount=refundable_amount(outcome.payment),
        ),
    )


@router.post("/{payment_id}/mark-paid", response_model=ApiEnvelope)
def mark_paid(
    payments: PaymentServiceDep, _: CurrentAdmin, payment_id: int, body: MarkPaidRequest
) -> ApiEnvelope:
    """管理员确认线下支付（货到付款、银行转账）已收款"""
    payment = payments.mark_paid(payment_id, body.note)
    return ApiEnvelope(message="Payment marked as paid", data=to_payment_data(payment))


async def webhook_payload(request: Request) -> Any:
    """回调报文：表单按字段解析，其余按 JSON 解析；无法解析时返回 None"""
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return {k: v for k, v in form.items() if isinstance(v, str)}
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


@router.post("/webhook/{gateway}", response_model=ApiEnvelope)
def payment_webhook(
    payments: PaymentServiceDep, gateway: PaymentGateway, payload: Annotated[Any, Depends(webhook_payload)]
) -> ApiEnvelope:
    """
    网关回调

    请求路径: POST /api/v1/payments/webhook/{paymee|flouci|d17|konnect}
    未匹配或格式错误的回调记录日志后仍返回 200。
    """
    outcome = payments.reconcile_webhook(gateway, payload)
    payment = outcome.payment
    return ApiEnvelope(
        data=WebhookAckData(
            matched=outcome.matched,
            payment_reference=payment.payment_reference if payment else None,
            status=PaymentStatus(payment.status) if payment else None,
        )
    )
