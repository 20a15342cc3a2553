"""
自定义异常模块

所有业务异常都继承自 AppError，在 main.py 中有统一的异常处理器，
渲染为 {"code": ..., "message": ..., "data": None}。

错误码约定：HTTP 状态码 * 1000 + 序号
- 400xxx: 参数 / 状态错误
- 404xxx: 资源不存在
- 409xxx: 重复 / 并发冲突
- 502xxx: 外部支付网关错误
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常类

    使用示例：
        raise AppError(code=400101, message="Order has no items", status_code=400)
    """

    def __init__(self, *, code: int, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class ValidationError(AppError):
    """业务输入校验失败（字段格式之外的规则，如商品不存在）"""

    def __init__(self, message: str, *, code: int = 400100) -> None:
        super().__init__(code=code, message=message, status_code=400)


class InvalidStateError(AppError):
    """当前状态不允许该操作（如已发货订单由客户取消、重复退款）"""

    def __init__(self, message: str, *, code: int = 400200) -> None:
        super().__init__(code=code, message=message, status_code=400)


class NotFoundError(AppError):
    def __init__(self, message: str, *, code: int = 404100) -> None:
        super().__init__(code=code, message=message, status_code=404)


class DuplicatePaymentError(AppError):
    """订单已存在进行中的支付"""

    def __init__(self, message: str = "A payment is already in progress for this order") -> None:
        super().__init__(code=409100, message=message, status_code=409)


class ConflictError(AppError):
    """乐观锁冲突（记录已被其他请求修改）"""

    def __init__(self, message: str = "Order was modified concurrently") -> None:
        super().__init__(code=409200, message=message, status_code=409)


class GatewayError(AppError):
    """
    支付网关调用失败

    保留网关名称和原始错误信息，便于日志排查。
    """

    def __init__(self, gateway: str, message: str) -> None:
        super().__init__(code=502100, message=f"{gateway}: {message}", status_code=502)
        self.gateway = gateway
        self.gateway_message = message


def order_not_found() -> NotFoundError:
    return NotFoundError("Order not found", code=404101)


def payment_not_found() -> NotFoundError:
    return NotFoundError("Payment not found", code=404201)
