"""
客户订单路由模块

登录客户查看和取消自己的订单。
"""
from fastapi import APIRouter, Query

from fulfillment.api.deps import CurrentCustomer, OrderServiceDep
from fulfillment.api.errors import order_not_found
from fulfillment.api.routes.orders import timeline_data, to_order_data
from fulfillment.api.schemas import ApiEnvelope, CustomerOrderStatsData, OrderCancelRequest, OrdersData
from fulfillment.enums import OrderStatus
from fulfillment.models import Customer, Order
from fulfillment.services.order_service import OrderService

router = APIRouter(prefix="/customer-orders", tags=["customer-orders"])


def _own_order(orders: OrderService, customer: Customer, order_id: int) -> Order:
    order = orders.get(order_id)
    if order.customer_id != customer.id:
        # 不暴露他人订单是否存在
        raise order_not_found()
    return order


@router.get("", response_model=ApiEnvelope)
def list_my_orders(
    orders: OrderServiceDep,
    customer: CurrentCustomer,
    status: OrderStatus | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=50),
) -> ApiEnvelope:
    rows, count = orders.list_orders(
        status=status, customer_id=customer.id, page=page, page_size=page_size
    )
    return ApiEnvelope(data=OrdersData(data=[to_order_data(o) for o in rows], count=count))


@router.get("/stats", response_model=ApiEnvelope)
def my_order_stats(orders: OrderServiceDep, customer: CurrentCustomer) -> ApiEnvelope:
    return ApiEnvelope(data=CustomerOrderStatsData(**orders.customer_stats(customer.id)))


@router.get("/{order_id}", response_model=ApiEnvelope)
def get_my_order(orders: OrderServiceDep, customer: CurrentCustomer, order_id: int) -> ApiEnvelope:
    order = _own_order(orders, customer, order_id)
    steps, progress = timeline_data(orders, order)
    return ApiEnvelope(
        data={"order": to_order_data(order), "timeline": steps, "progress_percentage": progress}
    )


@router.post("/{order_id}/cancel", response_model=ApiEnvelope)
def cancel_my_order(
    orders: OrderServiceDep, customer: CurrentCustomer, order_id: int, body: OrderCancelRequest
) -> ApiEnvelope:
    """
    客户取消订单

    只允许 pending/confirmed 状态，其余返回 400。
    """
    _own_order(orders, customer, order_id)
    order = orders.cancel(order_id, body.reason, actor=f"customer:{customer.id}", admin=False)
    return ApiEnvelope(message="Order cancelled", data=to_order_data(order))
