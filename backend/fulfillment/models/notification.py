"""
通知模型模块

- NotificationPreferences: 每个客户一条，首次使用时创建（渠道 x 分类开关、推送订阅、免打扰）
- NotificationLog: 每个渠道的每次发送尝试一条（只追加）
"""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Index, String, Text
from sqlmodel import Field, SQLModel

from fulfillment.core.snowflake import generate_id
from fulfillment.enums import (
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    PreferenceCategory,
)

from .base import utc_now
from .documents import PushSubscriptionRecord, QuietHours


def default_channel_preferences(channel: NotificationChannel) -> dict[str, bool]:
    """
    渠道默认开关

    邮件默认全部开启；短信与推送默认关闭（需客户主动开启）。
    """
    on = channel == NotificationChannel.email
    prefs = {"enabled": on}
    for category in PreferenceCategory:
        prefs[category.value] = on
    return prefs


def _email_defaults() -> dict[str, bool]:
    return default_channel_preferences(NotificationChannel.email)


def _sms_defaults() -> dict[str, bool]:
    return default_channel_preferences(NotificationChannel.sms)


def _push_defaults() -> dict[str, bool]:
    return default_channel_preferences(NotificationChannel.push)


def _quiet_hours_defaults() -> dict[str, Any]:
    return QuietHours().model_dump()


class NotificationPreferences(SQLModel, table=True):
    __tablename__ = "notification_preferences"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    customer_id: int = Field(
        sa_column=Column(
            BigInteger,
            ForeignKey("customers.id", ondelete="CASCADE"),
            unique=True,
            index=True,
            nullable=False,
        )
    )
    email: dict[str, bool] = Field(default_factory=_email_defaults, sa_column=Column(JSON, nullable=False))
    sms: dict[str, bool] = Field(default_factory=_sms_defaults, sa_column=Column(JSON, nullable=False))
    push: dict[str, bool] = Field(default_factory=_push_defaults, sa_column=Column(JSON, nullable=False))
    push_subscriptions: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    quiet_hours: dict[str, Any] = Field(
        default_factory=_quiet_hours_defaults, sa_column=Column(JSON, nullable=False)
    )
    timezone: str = Field(default="Africa/Tunis", sa_column=Column(String(64), nullable=False))
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class NotificationLog(SQLModel, table=True):
    """
    通知日志

    终态后只允许修改 read_at / status=read。
    """
    __tablename__ = "notification_logs"
    __table_args__ = (
        Index("idx_notification_customer_created", "customer_id", "created_at"),
        Index("idx_notification_status_created", "status", "created_at"),
    )
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    customer_id: int = Field(
        sa_column=Column(BigInteger, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    )
    order_id: int | None = Field(default=None, sa_column=Column(BigInteger, index=True, nullable=True))
    channel: NotificationChannel = Field(sa_column=Column(String(16), nullable=False))
    category: NotificationCategory = Field(sa_column=Column(String(32), nullable=False))
    title: str = Field(sa_column=Column(String(255), nullable=False))
    message: str = Field(sa_column=Column(Text, nullable=False))
    status: NotificationStatus = Field(
        default=NotificationStatus.pending, sa_column=Column(String(16), nullable=False)
    )
    priority: NotificationPriority = Field(
        default=NotificationPriority.normal, sa_column=Column(String(16), nullable=False)
    )
    sent_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    delivered_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    read_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    failure_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    metadata_: dict[str, Any] | None = Field(
        default=None, sa_column=Column("metadata", JSON, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


def push_subscription_records(prefs: NotificationPreferences) -> list[PushSubscriptionRecord]:
    return [PushSubscriptionRecord.model_validate(raw) for raw in prefs.push_subscriptions]


def quiet_hours_of(prefs: NotificationPreferences) -> QuietHours:
    return QuietHours.model_validate(prefs.quiet_hours)
