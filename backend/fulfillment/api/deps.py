"""
FastAPI 依赖注入模块

提供可复用的依赖项：
- SessionDep: 数据库会话
- CurrentCustomer / OptionalCustomer: 客户身份（JWT role=customer）
- CurrentAdmin: 管理员身份（JWT role=admin）
- *ServiceDep: 业务服务（共享同一个数据库会话）

令牌由外部认证服务签发，这里只负责校验与解析。
"""
from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlmodel import Session

from fulfillment.api.schemas import TokenPayload
from fulfillment.core import security
from fulfillment.core.config import settings
from fulfillment.core.db import engine
from fulfillment.enums import ActorRole
from fulfillment.models import Customer
from fulfillment.services.notification_service import NotificationService
from fulfillment.services.order_service import OrderService
from fulfillment.services.payment_service import PaymentService

# Authorization: Bearer <token>
reusable_oauth2 = HTTPBearer()
optional_oauth2 = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """
    获取数据库会话（依赖注入）

    使用 yield 确保会话在请求结束后自动关闭。
    """
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]
TokenDep = Annotated[HTTPAuthorizationCredentials, Depends(reusable_oauth2)]
OptionalTokenDep = Annotated[HTTPAuthorizationCredentials | None, Depends(optional_oauth2)]


def _credentials_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
    )


def _decode(token: HTTPAuthorizationCredentials) -> TokenPayload:
    try:
        payload = security.decode_access_token(token.credentials)
        token_data = TokenPayload(**payload)
    except (InvalidTokenError, ValidationError):
        raise _credentials_error()
    if not token_data.sub:
        raise _credentials_error()
    return token_data


def _load_customer(session: Session, token_data: TokenPayload) -> Customer:
    if token_data.role != ActorRole.customer:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Customer access required")
    try:
        customer_id = int(token_data.sub or "")
    except ValueError:
        raise _credentials_error()
    customer = session.get(Customer, customer_id)
    if not customer:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Customer not found")
    return customer


def get_current_customer(session: SessionDep, token: TokenDep) -> Customer:
    """
    获取当前登录客户

    Raises:
        HTTPException: 401 令牌无效或客户不存在；403 非客户令牌
    """
    return _load_customer(session, _decode(token))


def get_optional_customer(session: SessionDep, token: OptionalTokenDep) -> Customer | None:
    """游客可访问的接口：带令牌时解析客户，不带令牌返回 None"""
    if token is None:
        return None
    return _load_customer(session, _decode(token))


def get_current_admin(token: TokenDep) -> TokenPayload:
    token_data = _decode(token)
    if token_data.role != ActorRole.admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return token_data


def get_optional_actor(token: OptionalTokenDep) -> TokenPayload | None:
    """公开接口按调用方身份裁剪返回内容；不带令牌返回 None"""
    if token is None:
        return None
    return _decode(token)


CurrentCustomer = Annotated[Customer, Depends(get_current_customer)]
OptionalCustomer = Annotated[Customer | None, Depends(get_optional_customer)]
CurrentAdmin = Annotated[TokenPayload, Depends(get_current_admin)]
OptionalActor = Annotated[TokenPayload | None, Depends(get_optional_actor)]


def get_notification_service(session: SessionDep) -> NotificationService:
    return NotificationService(session, settings)


NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]


def get_order_service(session: SessionDep, notifier: NotificationServiceDep) -> OrderService:
    return OrderService(session, settings, notifier=notifier)


OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]


def get_payment_service(session: SessionDep, orders: OrderServiceDep) -> PaymentService:
    return PaymentService(session, settings, order_service=orders)


PaymentServiceDep = Annotated[PaymentService, Depends(get_payment_service)]
