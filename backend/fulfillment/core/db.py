"""
数据库连接模块

管理数据库引擎和会话的创建。
使用 SQLModel 的 create_engine 创建数据库连接池。

重要提示：
- 确保在使用前导入所有模型（fulfillment.models），否则表结构无法注册到 metadata
"""
import logging

from sqlmodel import Session, SQLModel, create_engine

from fulfillment import models  # noqa: F401  注册所有表模型
from fulfillment.core.config import settings

logger = logging.getLogger(__name__)

# 创建数据库引擎（连接池）
engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


def init_db(session: Session) -> None:
    """
    初始化数据库

    根据已注册的模型创建缺失的表（已存在的表不会被修改）。

    Args:
        session: 数据库会话
    """
    SQLModel.metadata.create_all(session.get_bind())
    logger.info("Database tables ensured")
