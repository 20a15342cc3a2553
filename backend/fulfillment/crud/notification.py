"""通知偏好与通知日志 CRUD 操作"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from fulfillment.enums import NotificationCategory, NotificationChannel, NotificationStatus
from fulfillment.models import NotificationLog, NotificationPreferences, utc_now


def get_preferences(*, session: Session, customer_id: int) -> NotificationPreferences | None:
    return session.exec(
        select(NotificationPreferences).where(NotificationPreferences.customer_id == customer_id)
    ).first()


def get_or_create_preferences(*, session: Session, customer_id: int) -> NotificationPreferences:
    """获取客户通知偏好，不存在则按默认值创建"""
    prefs = get_preferences(session=session, customer_id=customer_id)
    if prefs:
        return prefs
    prefs = NotificationPreferences(customer_id=customer_id)
    session.add(prefs)
    try:
        session.commit()
    except IntegrityError:
        # 并发请求已经创建
        session.rollback()
        existing = get_preferences(session=session, customer_id=customer_id)
        if existing is None:
            raise
        return existing
    session.refresh(prefs)
    return prefs


def save_preferences(*, session: Session, prefs: NotificationPreferences) -> NotificationPreferences:
    prefs.updated_at = utc_now()
    session.add(prefs)
    session.commit()
    session.refresh(prefs)
    return prefs


def add_log(*, session: Session, log: NotificationLog) -> NotificationLog:
    """写入并立即提交一条通知日志"""
    session.add(log)
    session.commit()
    session.refresh(log)
    return log


def list_logs(
    *,
    session: Session,
    customer_id: int | None = None,
    channel: NotificationChannel | None = None,
    category: NotificationCategory | None = None,
    status: NotificationStatus | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[NotificationLog], int]:
    """通知日志分页查询，按创建时间倒序；customer_id 为空时不限客户"""
    conditions: list[Any] = []
    if customer_id is not None:
        conditions.append(col(NotificationLog.customer_id) == customer_id)
    if status is not None:
        conditions.append(col(NotificationLog.status) == status)
    if channel is not None:
        conditions.append(col(NotificationLog.channel) == channel)
    if category is not None:
        conditions.append(col(NotificationLog.category) == category)

    count = session.exec(select(func.count()).select_from(NotificationLog).where(*conditions)).one()
    rows = session.exec(
        select(NotificationLog)
        .where(*conditions)
        .order_by(col(NotificationLog.created_at).desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return list(rows), count


def list_for_order(*, session: Session, order_id: int) -> list[NotificationLog]:
    return list(
        session.exec(
            select(NotificationLog)
            .where(NotificationLog.order_id == order_id)
            .order_by(col(NotificationLog.created_at))
        ).all()
    )


def mark_read(*, session: Session, log: NotificationLog) -> NotificationLog:
    if log.read_at is None:
        log.read_at = utc_now()
        log.status = NotificationStatus.read
        session.add(log)
        session.commit()
        session.refresh(log)
    return log


def channel_stats(
    *, session: Session, customer_id: int | None = None, since: datetime | None = None
) -> dict[str, dict[str, int]]:
    """按渠道统计各状态的通知数量"""
    conditions: list[Any] = []
    if customer_id is not None:
        conditions.append(col(NotificationLog.customer_id) == customer_id)
    if since is not None:
        conditions.append(col(NotificationLog.created_at) >= since)
    rows = session.exec(
        select(NotificationLog.channel, NotificationLog.status, func.count())
        .where(*conditions)
        .group_by(NotificationLog.channel, NotificationLog.status)
    ).all()

    result: dict[str, dict[str, int]] = {}
    for channel, status, count in rows:
        key = str(getattr(channel, "value", channel))
        bucket = result.setdefault(key, {"total": 0})
        bucket[str(getattr(status, "value", status))] = count
        bucket["total"] += count
    return result
