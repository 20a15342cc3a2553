"""
枚举类型定义模块

所有枚举都继承自 str 和 Enum，既可以直接存库/序列化为字符串，又具有枚举的类型安全。
"""
from enum import Enum


class OrderStatus(str, Enum):
    """
    订单履约状态

    正常流程：pending -> confirmed -> processing -> shipped -> delivered
    cancelled：客户可在 pending/confirmed 时取消，管理员任意时刻可取消
    """
    pending = "pending"
    confirmed = "confirmed"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class OrderPaymentStatus(str, Enum):
    """订单上的支付状态（由支付编排器回写）"""
    pending = "pending"
    processing = "processing"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"
    partially_refunded = "partially_refunded"


class PaymentMethod(str, Enum):
    """
    支付方式

    - cash_on_delivery / bank_transfer: 线下（人工确认）方式
    - paymee / flouci / d17 / konnect: 外部支付网关
    """
    cash_on_delivery = "cash_on_delivery"
    bank_transfer = "bank_transfer"
    paymee = "paymee"
    flouci = "flouci"
    d17 = "d17"
    konnect = "konnect"


class PaymentGateway(str, Enum):
    internal = "internal"
    paymee = "paymee"
    flouci = "flouci"
    d17 = "d17"
    konnect = "konnect"


class PaymentStatus(str, Enum):
    """
    支付记录状态

    pending -> processing -> completed
    pending/processing -> failed
    completed -> refunded | partially_refunded
    partially_refunded -> refunded | partially_refunded
    """
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"
    partially_refunded = "partially_refunded"


class RefundStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class NotificationChannel(str, Enum):
    email = "email"
    sms = "sms"
    push = "push"


class NotificationCategory(str, Enum):
    """通知日志上的分类"""
    order_update = "order_update"
    delivery = "delivery"
    promotion = "promotion"
    newsletter = "newsletter"
    reminder = "reminder"
    welcome = "welcome"


class PreferenceCategory(str, Enum):
    """偏好设置矩阵中的分类（每个渠道一组开关）"""
    order_updates = "order_updates"
    delivery_updates = "delivery_updates"
    promotions = "promotions"
    newsletter = "newsletter"


class NotificationStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    delivered = "delivered"
    failed = "failed"
    read = "read"


class NotificationPriority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class ActorRole(str, Enum):
    """JWT 中的角色声明"""
    customer = "customer"
    admin = "admin"
