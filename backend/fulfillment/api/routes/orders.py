"""
订单路由模块

- 下单（游客或登录客户）
- 按 ID / 订单号查询（管理员和本人看完整订单，其余看公开视图）
- 管理员：列表、状态更新、取消、内部备注、时间线、删除、统计
"""
from __future__ import annotations

from fastapi import APIRouter, Query

from fulfillment.api.deps import CurrentAdmin, OptionalActor, OptionalCustomer, OrderServiceDep
from fulfillment.api.schemas import (
    ApiEnvelope,
    InternalNoteData,
    InternalNoteRequest,
    OrderCancelRequest,
    OrderCreateRequest,
    OrderData,
    OrdersData,
    OrderStatsData,
    OrderStatusUpdateRequest,
    OrderItemData,
    PricingData,
    PublicOrderView,
    StatusHistoryData,
    TimelineStepData,
    TokenPayload,
)
from fulfillment.enums import ActorRole, OrderStatus
from fulfillment.models import Order, ensure_utc
from fulfillment.models.order import (
    formatted_total,
    history_entries,
    internal_note_entries,
    is_delayed,
    order_address,
    order_items,
    status_label,
    total_items,
)
from fulfillment.services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


def to_order_data(order: Order, *, include_internal: bool = False) -> OrderData:
    """
    将订单模型转换为响应数据

    Args:
        order: 订单数据库模型
        include_internal: 是否包含内部备注（仅管理员）
    """
    return OrderData(
        id=order.id,
        order_number=order.order_number,
        tracking_code=order.tracking_code,
        customer_id=order.customer_id,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        customer_phone=order.customer_phone,
        shipping_address=order_address(order),
        items=[OrderItemData(**item.model_dump()) for item in order_items(order)],
        total_items=total_items(order),
        status=order.status,
        status_label=status_label(order.status),
        payment_method=order.payment_method,
        payment_status=order.payment_status,
        pricing=PricingData(
            subtotal=order.subtotal,
            shipping_cost=order.shipping_cost,
            tax_rate=order.tax_rate,
            tax_amount=order.tax_amount,
            discount_amount=order.discount_amount,
            payment_fee=order.payment_fee,
            total_amount=order.total_amount,
            formatted_total=formatted_total(order),
        ),
        is_urgent=order.is_urgent,
        is_delayed=is_delayed(order),
        notes=order.notes,
        delivery_instructions=order.delivery_instructions,
        tracking_number=order.tracking_number,
        shipping_provider=order.shipping_provider,
        estimated_delivery=ensure_utc(order.estimated_delivery),
        actual_delivery=ensure_utc(order.actual_delivery),
        status_history=[
            StatusHistoryData(
                status=entry.status,
                label=status_label(entry.status),
                timestamp=ensure_utc(entry.timestamp),
                note=entry.note,
                location=entry.location,
                updated_by=entry.updated_by,
                notification_sent=entry.notification_sent,
            )
            for entry in history_entries(order)
        ],
        internal_notes=(
            [InternalNoteData(**note.model_dump()) for note in internal_note_entries(order)]
            if include_internal
            else None
        ),
        created_at=ensure_utc(order.created_at),
        updated_at=ensure_utc(order.updated_at),
    )


def to_public_view(order: Order) -> PublicOrderView:
    return PublicOrderView(
        order_number=order.order_number,
        tracking_code=order.tracking_code,
        customer_name=order.customer_name,
        city=order_address(order).city,
        total_items=total_items(order),
        formatted_total=formatted_total(order),
        status=order.status,
        status_label=status_label(order.status),
        is_urgent=order.is_urgent,
        tracking_number=order.tracking_number,
        shipping_provider=order.shipping_provider,
        estimated_delivery=ensure_utc(order.estimated_delivery),
        actual_delivery=ensure_utc(order.actual_delivery),
        created_at=ensure_utc(order.created_at),
    )


def order_view(order: Order, actor: TokenPayload | None) -> OrderData | PublicOrderView:
    """管理员和下单客户看到完整订单，其他调用方只看到公开视图"""
    if actor is not None and actor.role == ActorRole.admin:
        return to_order_data(order, include_internal=True)
    if actor is not None and order.customer_id is not None and actor.sub == str(order.customer_id):
        return to_order_data(order)
    return to_public_view(order)


def timeline_data(orders: OrderService, order: Order) -> tuple[list[TimelineStepData], int]:
    steps, progress = orders.tracking_timeline(order)
    return [TimelineStepData(**step) for step in steps], progress


@router.post("", response_model=ApiEnvelope)
def create_order(
    orders: OrderServiceDep, customer: OptionalCustomer, body: OrderCreateRequest
) -> ApiEnvelope:
    """
    创建订单（游客或登录客户）

    请求路径: POST /api/v1/orders
    金额全部由服务端计算。
    """
    order = orders.create(body, customer)
    return ApiEnvelope(message="Order created", data=to_order_data(order))


@router.get("", response_model=ApiEnvelope)
def list_orders(
    orders: OrderServiceDep,
    _: CurrentAdmin,
    status: OrderStatus | None = None,
    search: str | None = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> ApiEnvelope:
    """订单列表（管理员），search 匹配订单号、追踪码、客户姓名和邮箱"""
    rows, count = orders.list_orders(status=status, search=search, page=page, page_size=page_size)
    return ApiEnvelope(
        data=OrdersData(data=[to_order_data(o, include_internal=True) for o in rows], count=count)
    )


@router.get("/stats/summary", response_model=ApiEnvelope)
def order_stats(orders: OrderServiceDep, _: CurrentAdmin) -> ApiEnvelope:
    return ApiEnvelope(data=OrderStatsData(**orders.stats()))


@router.get("/number/{order_number}", response_model=ApiEnvelope)
def get_order_by_number(orders: OrderServiceDep, actor: OptionalActor, order_number: str) -> ApiEnvelope:
    """
    按订单号查询

    请求路径: GET /api/v1/orders/number/{order_number}
    未登录或非本人只返回公开视图。
    """
    return ApiEnvelope(data=order_view(orders.get_by_number(order_number), actor))


@router.get("/{order_id}", response_model=ApiEnvelope)
def get_order(orders: OrderServiceDep, actor: OptionalActor, order_id: int) -> ApiEnvelope:
    return ApiEnvelope(data=order_view(orders.get(order_id), actor))


@router.put("/{order_id}/status", response_model=ApiEnvelope)
def update_order_status(
    orders: OrderServiceDep, admin: CurrentAdmin, order_id: int, body: OrderStatusUpdateRequest
) -> ApiEnvelope:
    """
    更新订单状态（管理员）

    接受任意目标状态；状态变化时追加历史并按需通知客户。
    """
    order = orders.transition(
        order_id,
        body.status,
        note=body.note,
        location=body.location,
        actor=admin.sub or "admin",
        tracking_number=body.tracking_number,
        notify=body.send_notification,
    )
    return ApiEnvelope(message="Order status updated", data=to_order_data(order, include_internal=True))


@router.post("/{order_id}/cancel", response_model=ApiEnvelope)
def cancel_order(
    orders: OrderServiceDep, admin: CurrentAdmin, order_id: int, body: OrderCancelRequest
) -> ApiEnvelope:
    order = orders.cancel(order_id, body.reason, actor=admin.sub or "admin", admin=True)
    return ApiEnvelope(message="Order cancelled", data=to_order_data(order, include_internal=True))


@router.post("/{order_id}/notes", response_model=ApiEnvelope)
def add_internal_note(
    orders: OrderServiceDep, admin: CurrentAdmin, order_id: int, body: InternalNoteRequest
) -> ApiEnvelope:
    order = orders.add_internal_note(
        order_id, body.note, added_by=admin.sub or "admin", is_private=body.is_private
    )
    return ApiEnvelope(message="Note added", data=to_order_data(order, include_internal=True))


@router.get("/{order_id}/timeline", response_model=ApiEnvelope)
def order_timeline(orders: OrderServiceDep, _: CurrentAdmin, order_id: int) -> ApiEnvelope:
    order = orders.get(order_id)
    steps, progress = timeline_data(orders, order)
    return ApiEnvelope(
        data={
            "order_number": order.order_number,
            "status": order.status,
            "timeline": steps,
            "progress_percentage": progress,
            "is_delayed": is_delayed(order),
        }
    )


@router.delete("/{order_id}", response_model=ApiEnvelope)
def delete_order(orders: OrderServiceDep, _: CurrentAdmin, order_id: int) -> ApiEnvelope:
    """删除订单（仅 pending/cancelled），回补库存并扣减客户累计"""
    orders.delete(order_id)
    return ApiEnvelope(message="Order deleted")
