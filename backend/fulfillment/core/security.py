"""
JWT 工具

令牌由外部认证服务签发，本服务只负责校验。
载荷格式：{"sub": "<客户 ID 或管理员账号>", "role": "customer" | "admin", "exp": ...}
"""
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from fulfillment.core.config import settings

ALGORITHM = "HS256"


def decode_access_token(token: str) -> dict[str, Any]:
    """
    解码并校验访问令牌

    Raises:
        jwt.InvalidTokenError: 签名错误、过期或格式错误
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])


def create_access_token(subject: str | Any, role: str, expires_delta: timedelta) -> str:
    """
    签发访问令牌（供内部工具与测试使用）

    Args:
        subject: 客户 ID 或管理员账号
        role: customer 或 admin
        expires_delta: 有效期
    """
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"exp": expire, "sub": str(subject), "role": role}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)
