"""
公开追踪路由模块

无需登录；返回的订单视图不含完整地址和联系方式（只有姓名和城市）。
"""
from fastapi import APIRouter

from fulfillment.api.deps import OrderServiceDep
from fulfillment.api.errors import order_not_found
from fulfillment.api.routes.orders import timeline_data, to_public_view
from fulfillment.api.schemas import (
    ApiEnvelope,
    TrackingData,
    TrackingSearchRequest,
)
from fulfillment.models import Order
from fulfillment.models.order import is_delayed
from fulfillment.services.order_service import OrderService

router = APIRouter(prefix="/tracking", tags=["tracking"])


def _tracking_data(orders: OrderService, order: Order) -> TrackingData:
    steps, progress = timeline_data(orders, order)
    return TrackingData(
        order=to_public_view(order),
        timeline=steps,
        progress_percentage=progress,
        is_delayed=is_delayed(order),
    )


@router.get("/{identifier}", response_model=ApiEnvelope)
def track_order(orders: OrderServiceDep, identifier: str) -> ApiEnvelope:
    """
    按追踪码或订单号追踪

    请求路径: GET /api/v1/tracking/{identifier}
    TRK- 开头按追踪码，ORD- 开头按订单号，其余两者都试。
    """
    return ApiEnvelope(data=_tracking_data(orders, orders.find(identifier)))


@router.post("/search", response_model=ApiEnvelope)
def search_orders(orders: OrderServiceDep, body: TrackingSearchRequest) -> ApiEnvelope:
    """游客按邮箱（可选订单号）查找订单"""
    rows = orders.search_by_email(body.email, body.order_number)
    if not rows:
        raise order_not_found()
    return ApiEnvelope(data=[_tracking_data(orders, order) for order in rows])
