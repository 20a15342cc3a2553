"""
数据库模型定义模块

模型按功能拆分：
- customer.py: 客户与商品（外部服务的最小镜像）
- order.py: 订单聚合
- payment.py: 支付记录与退款
- notification.py: 通知偏好与通知日志
- documents.py: JSON 列中的内嵌子文档
"""
from sqlmodel import SQLModel

from .base import ensure_utc, quantize_money, utc_now
from .customer import Customer, Product
from .notification import NotificationLog, NotificationPreferences
from .order import Order
from .payment import Payment

__all__ = [
    "SQLModel",
    "utc_now",
    "ensure_utc",
    "quantize_money",
    "Customer",
    "Product",
    "Order",
    "Payment",
    "NotificationPreferences",
    "NotificationLog",
]
