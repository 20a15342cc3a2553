"""
工具路由模块

健康检查等系统端点。
"""
from fastapi import APIRouter
from sqlmodel import select

from fulfillment.api.deps import SessionDep

router = APIRouter(prefix="/utils", tags=["utils"])


@router.get("/health-check/")
def health_check(session: SessionDep) -> bool:
    """
    健康检查端点

    请求路径: GET /api/v1/utils/health-check/
    同时检查数据库连接；数据库不可用时由全局异常处理返回 500。
    """
    session.exec(select(1))
    return True
