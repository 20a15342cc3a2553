"""
应用启动前检查脚本

1. 等待数据库就绪（Docker Compose 启动时数据库容器可能还在初始化）
2. 创建缺失的表

使用方式（见 scripts/prestart.sh）：
    python -m fulfillment.backend_pre_start
"""
import logging

from sqlalchemy import Engine
from sqlmodel import Session, select
from tenacity import after_log, before_log, retry, stop_after_attempt, wait_fixed

from fulfillment.core.db import engine, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

max_tries = 60 * 5  # 5 分钟
wait_seconds = 1


@retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)
def init(db_engine: Engine) -> None:
    """
    检查数据库连接

    执行 select(1)，失败时由 tenacity 重试，直到成功或达到最大次数。
    """
    try:
        with Session(db_engine) as session:
            session.exec(select(1))
    except Exception as e:
        logger.error(e)
        raise e


def main() -> None:
    logger.info("Initializing service")
    init(engine)
    with Session(engine) as session:
        init_db(session)
    logger.info("Service finished initializing")


if __name__ == "__main__":  # pragma: no cover
    main()
