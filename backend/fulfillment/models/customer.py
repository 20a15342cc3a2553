"""
客户与商品模型

客户账户与商品目录由外部服务维护，这里只保留履约流程需要的字段：
- Customer：联系方式（通知用）与累计消费统计
- Product：价格与库存（下单校验、删除订单时回补库存）
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Column, DateTime, Integer, Numeric, String
from sqlmodel import Field, SQLModel

from fulfillment.core.snowflake import generate_id

from .base import utc_now


class Customer(SQLModel, table=True):
    __tablename__ = "customers"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    first_name: str = Field(sa_column=Column(String(64), nullable=False))
    last_name: str = Field(default="", sa_column=Column(String(64), nullable=False))
    email: str = Field(sa_column=Column(String(255), unique=True, index=True, nullable=False))
    phone: str | None = Field(default=None, sa_column=Column(String(32), nullable=True))
    total_spent: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(14, 3), nullable=False),
    )
    order_count: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Product(SQLModel, table=True):
    __tablename__ = "products"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    name: str = Field(sa_column=Column(String(255), nullable=False))
    price: Decimal = Field(sa_column=Column(Numeric(12, 3), nullable=False))
    stock_quantity: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    image: str | None = Field(default=None, sa_column=Column(String(1024), nullable=True))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
