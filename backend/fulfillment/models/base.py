"""
基础模型模块

定义所有模型共用的基础类和工具函数。
"""
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlmodel import SQLModel

# 金额统一保留 3 位小数（1 TND = 1000 millimes）
MONEY_QUANT = Decimal("0.001")


def utc_now() -> datetime:
    """
    获取当前 UTC 时间

    Returns:
        当前 UTC 时区的日期时间对象
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    补齐时区信息

    SQLite 读回的 DateTime(timezone=True) 不带时区，统一视为 UTC。
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def quantize_money(value: Decimal | int | float | str) -> Decimal:
    """金额量化到 3 位小数（四舍五入）"""
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


__all__ = ["SQLModel", "utc_now", "ensure_utc", "quantize_money", "MONEY_QUANT"]
