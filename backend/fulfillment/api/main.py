"""
API 路由聚合模块

将所有业务路由模块聚合到一个统一的 router 中，
由 fulfillment/main.py 以 /api/v1 前缀注册到主应用。

路由模块说明：
- orders: 下单与订单管理
- customer_orders: 客户自己的订单
- tracking: 公开追踪
- payments: 支付、退款与网关回调
- notifications: 通知偏好、推送订阅、通知历史
- utils: 健康检查
"""
from fastapi import APIRouter

from fulfillment.api.routes import (
    customer_orders,
    notifications,
    orders,
    payments,
    tracking,
    utils,
)

api_router = APIRouter()

api_router.include_router(orders.router)  # /orders/*
api_router.include_router(customer_orders.router)  # /customer-orders/*
api_router.include_router(tracking.router)  # /tracking/*
api_router.include_router(payments.router)  # /payments/*
api_router.include_router(notifications.router)  # /notifications/*
api_router.include_router(utils.router)  # /utils/*
