"""
通知分发服务

对每次分发先判断免打扰时段（urgent 优先级不受限制），处于时段内则整体跳过；
之后对每个请求的渠道依次判断：
1. 渠道总开关 + 分类开关（reminder/welcome 只看总开关）
2. 调用渠道发送器，每个渠道写一条 NotificationLog

被偏好或免打扰跳过的渠道不写日志。
单个渠道失败不影响其他渠道；发送器抛出的异常转换为失败结果。
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlmodel import Session

from fulfillment import crud
from fulfillment.api.errors import NotFoundError, ValidationError
from fulfillment.core.config import Settings, settings as default_settings
from fulfillment.enums import (
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    OrderStatus,
    PreferenceCategory,
)
from fulfillment.integrations.channels import (
    ChannelResult,
    ChannelSender,
    EmailSender,
    NotificationMessage,
    PushSender,
    Recipient,
    SmsSender,
)
from fulfillment.models import Customer, NotificationLog, NotificationPreferences, Order, utc_now
from fulfillment.models.documents import PushKeys, PushSubscriptionRecord, QuietHours
from fulfillment.models.notification import push_subscription_records, quiet_hours_of
from fulfillment.models.order import formatted_total, status_label

logger = logging.getLogger(__name__)

ALL_CHANNELS: tuple[NotificationChannel, ...] = (
    NotificationChannel.email,
    NotificationChannel.sms,
    NotificationChannel.push,
)

ORDER_STATUS_CHANNELS: tuple[NotificationChannel, ...] = ALL_CHANNELS

# 日志分类 -> 偏好矩阵中的分类；不在表中的分类只受渠道总开关控制
CATEGORY_PREFERENCE: dict[NotificationCategory, PreferenceCategory] = {
    NotificationCategory.order_update: PreferenceCategory.order_updates,
    NotificationCategory.delivery: PreferenceCategory.delivery_updates,
    NotificationCategory.promotion: PreferenceCategory.promotions,
    NotificationCategory.newsletter: PreferenceCategory.newsletter,
}


@dataclass
class ChannelOutcome:
    channel: NotificationChannel
    success: bool
    skipped: bool = False
    reason: str | None = None
    log_id: int | None = None


@dataclass
class DispatchResult:
    success: bool
    reason: str | None = None
    channels: list[ChannelOutcome] = field(default_factory=list)

    def outcome(self, channel: NotificationChannel) -> ChannelOutcome | None:
        for item in self.channels:
            if item.channel == channel:
                return item
        return None


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def in_quiet_hours(quiet: QuietHours, tz_name: str, now: datetime) -> bool:
    """
    判断当前时刻（客户时区）是否处于免打扰时段

    两端均包含；start > end 表示跨午夜（如 22:00-08:00）。
    """
    if not quiet.enabled:
        return False
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r}, falling back to UTC")
        tz = ZoneInfo("UTC")
    local = now.astimezone(tz)
    current = local.hour * 60 + local.minute
    start, end = _minutes(quiet.start), _minutes(quiet.end)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def channel_allows(prefs: NotificationPreferences, channel: NotificationChannel, category: NotificationCategory) -> bool:
    channel_prefs: dict[str, bool] = getattr(prefs, channel.value) or {}
    if not channel_prefs.get("enabled", False):
        return False
    pref_category = CATEGORY_PREFERENCE.get(category)
    if pref_category is None:
        return True
    return bool(channel_prefs.get(pref_category.value, False))


def build_default_senders(settings: Settings) -> dict[NotificationChannel, ChannelSender]:
    return {
        NotificationChannel.email: EmailSender(settings),
        NotificationChannel.sms: SmsSender(settings),
        NotificationChannel.push: PushSender(settings),
    }


class NotificationService:
    """
    通知分发服务

    Args:
        session: 数据库会话
        settings: 配置
        senders: 渠道发送器（测试中可替换为假实现）
        clock: 当前时间函数（用于免打扰判断）
    """

    def __init__(
        self,
        session: Session,
        settings: Settings = default_settings,
        senders: dict[NotificationChannel, ChannelSender] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.settings = settings
        self.senders = senders if senders is not None else build_default_senders(settings)
        self.clock = clock

    # ------------------------------------------------------------
    # 分发
    # ------------------------------------------------------------

    def dispatch(
        self,
        customer_id: int,
        notification: NotificationMessage,
        channels: Iterable[NotificationChannel] = ALL_CHANNELS,
        *,
        email: str | None = None,
        phone: str | None = None,
    ) -> DispatchResult:
        """
        向客户发送通知

        email/phone 可覆盖客户档案中的联系方式（如订单快照中的联系方式）。
        """
        customer = self.session.get(Customer, customer_id)
        if customer is None:
            logger.warning(f"Notification skipped, customer {customer_id} not found")
            return DispatchResult(success=False, reason="customer_not_found")

        prefs = crud.notification.get_or_create_preferences(session=self.session, customer_id=customer_id)
        channels = list(dict.fromkeys(channels))
        if notification.priority != NotificationPriority.urgent and in_quiet_hours(
            quiet_hours_of(prefs), prefs.timezone, self.clock()
        ):
            logger.info(f"Notification {notification.category.value} to customer {customer_id} held: quiet hours")
            return DispatchResult(
                success=False,
                reason="quiet_hours",
                channels=[
                    ChannelOutcome(channel=c, success=False, skipped=True, reason="quiet_hours")
                    for c in channels
                ],
            )

        recipient = Recipient(
            customer_id=customer.id,
            name=customer.full_name,
            email=email or customer.email,
            phone=phone or customer.phone,
            push_subscriptions=tuple(push_subscription_records(prefs)),
        )

        result = DispatchResult(success=False)
        gone: set[str] = set()
        for channel in channels:
            if not channel_allows(prefs, channel, notification.category):
                result.channels.append(
                    ChannelOutcome(channel=channel, success=False, skipped=True, reason="disabled_by_preference")
                )
                continue

            channel_result = self._send(channel, recipient, notification)
            gone.update(channel_result.gone_endpoints)
            log = self._write_log(customer_id, channel, notification, channel_result)
            result.channels.append(
                ChannelOutcome(
                    channel=channel,
                    success=channel_result.success,
                    reason=channel_result.error,
                    log_id=log.id,
                )
            )

        if gone:
            self._prune_push_subscriptions(customer_id, gone)

        result.success = any(item.success for item in result.channels)
        if not result.channels or all(item.skipped for item in result.channels):
            reasons = {item.reason for item in result.channels}
            result.reason = reasons.pop() if len(reasons) == 1 else "skipped"
        logger.info(
            f"Notification {notification.category.value} to customer {customer_id}: "
            + ", ".join(f"{o.channel.value}={'ok' if o.success else o.reason}" for o in result.channels)
        )
        return result

    def _send(
        self, channel: NotificationChannel, recipient: Recipient, notification: NotificationMessage
    ) -> ChannelResult:
        sender = self.senders.get(channel)
        if sender is None:
            return ChannelResult(success=False, error=f"No sender configured for {channel.value}")
        try:
            return sender.send(recipient, notification)
        except Exception as e:
            logger.exception(f"{channel.value} sender raised for customer {recipient.customer_id}")
            return ChannelResult(success=False, error=str(e) or e.__class__.__name__)

    def _write_log(
        self,
        customer_id: int,
        channel: NotificationChannel,
        notification: NotificationMessage,
        channel_result: ChannelResult,
    ) -> NotificationLog:
        metadata: dict[str, Any] = {"provider": channel_result.provider}
        if channel_result.message_id:
            metadata["message_id"] = channel_result.message_id
        if channel_result.details:
            metadata["details"] = channel_result.details
        if notification.data:
            metadata["data"] = notification.data
        log = NotificationLog(
            customer_id=customer_id,
            order_id=notification.order_id,
            channel=channel,
            category=notification.category,
            title=notification.title,
            message=notification.message,
            priority=notification.priority,
            status=NotificationStatus.sent if channel_result.success else NotificationStatus.failed,
            sent_at=self.clock() if channel_result.success else None,
            failure_reason=None if channel_result.success else channel_result.error,
            metadata_=metadata,
        )
        return crud.notification.add_log(session=self.session, log=log)

    def _prune_push_subscriptions(self, customer_id: int, endpoints: set[str]) -> None:
        prefs = crud.notification.get_or_create_preferences(session=self.session, customer_id=customer_id)
        remaining = [sub for sub in prefs.push_subscriptions if sub.get("endpoint") not in endpoints]
        if len(remaining) == len(prefs.push_subscriptions):
            return
        prefs.push_subscriptions = remaining
        crud.notification.save_preferences(session=self.session, prefs=prefs)
        logger.info(f"Removed {len(endpoints)} expired push subscription(s) for customer {customer_id}")

    # ------------------------------------------------------------
    # 业务通知
    # ------------------------------------------------------------

    def notify_order_status(self, order: Order, previous_status: OrderStatus | str | None) -> DispatchResult:
        """
        订单状态变更通知

        送达使用 delivery 分类 + urgent 优先级，其余状态使用 order_update。
        通知失败只记录日志，不影响订单状态变更。
        """
        if order.customer_id is None:
            return DispatchResult(success=False, reason="no_customer")

        status = OrderStatus(order.status)
        label = status_label(status)
        data: dict[str, Any] = {
            "order_number": order.order_number,
            "tracking_code": order.tracking_code,
            "status": status.value,
            "status_label": label,
            "total": formatted_total(order),
        }
        if previous_status is not None:
            data["previous_status"] = OrderStatus(previous_status).value
            data["previous_status_label"] = status_label(previous_status)
        if order.estimated_delivery is not None:
            data["estimated_delivery"] = order.estimated_delivery.strftime("%d/%m/%Y")

        if status == OrderStatus.delivered:
            notification = NotificationMessage(
                category=NotificationCategory.delivery,
                title=f"Commande {order.order_number} livrée",
                message=f"Votre commande {order.order_number} a été livrée. Merci de votre confiance !",
                priority=NotificationPriority.urgent,
                order_id=order.id,
                data=data,
            )
        else:
            notification = NotificationMessage(
                category=NotificationCategory.order_update,
                title=f"Mise à jour commande {order.order_number}",
                message=f"Le statut de votre commande {order.order_number} est maintenant : {label}.",
                priority=NotificationPriority.normal,
                order_id=order.id,
                data=data,
            )

        try:
            return self.dispatch(
                order.customer_id,
                notification,
                ORDER_STATUS_CHANNELS,
                email=order.customer_email,
                phone=order.customer_phone,
            )
        except Exception:
            logger.exception(f"Failed to send status notification for order {order.order_number}")
            return DispatchResult(success=False, reason="dispatch_error")

    def send_promotion(
        self,
        customer_id: int,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> DispatchResult:
        """促销通知：邮件 + 推送，只发给开启了 promotions 的渠道"""
        notification = NotificationMessage(
            category=NotificationCategory.promotion,
            title=title,
            message=message,
            priority=NotificationPriority.low,
            data=data or {},
        )
        return self.dispatch(
            customer_id, notification, (NotificationChannel.email, NotificationChannel.push)
        )

    # ------------------------------------------------------------
    # 偏好设置
    # ------------------------------------------------------------

    def get_preferences(self, customer_id: int) -> NotificationPreferences:
        return crud.notification.get_or_create_preferences(session=self.session, customer_id=customer_id)

    def update_preferences(self, customer_id: int, changes: dict[str, Any]) -> NotificationPreferences:
        """
        部分更新偏好

        changes 结构与 PreferencesUpdateRequest.model_dump(exclude_none=True) 一致。
        """
        prefs = self.get_preferences(customer_id)
        for channel in ALL_CHANNELS:
            update = changes.get(channel.value)
            if update:
                merged = dict(getattr(prefs, channel.value))
                merged.update({k: bool(v) for k, v in update.items() if v is not None})
                setattr(prefs, channel.value, merged)

        quiet_update = changes.get("quiet_hours")
        if quiet_update:
            quiet = quiet_hours_of(prefs).model_copy(update={k: v for k, v in quiet_update.items() if v is not None})
            prefs.quiet_hours = QuietHours.model_validate(quiet.model_dump()).model_dump()

        tz_name = changes.get("timezone")
        if tz_name:
            try:
                ZoneInfo(tz_name)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValidationError(f"Unknown timezone: {tz_name}", code=400301)
            prefs.timezone = tz_name

        return crud.notification.save_preferences(session=self.session, prefs=prefs)

    def subscribe_push(
        self,
        customer_id: int,
        endpoint: str,
        keys: PushKeys,
        user_agent: str | None = None,
        device_type: str | None = None,
    ) -> NotificationPreferences:
        """登记推送订阅（同一端点覆盖更新），并开启推送渠道"""
        prefs = self.get_preferences(customer_id)
        record = PushSubscriptionRecord(
            endpoint=endpoint,
            keys=keys,
            user_agent=user_agent,
            device_type=device_type,
            last_used=self.clock(),
        )
        subscriptions = [sub for sub in prefs.push_subscriptions if sub.get("endpoint") != endpoint]
        subscriptions.append(record.model_dump(mode="json"))
        prefs.push_subscriptions = subscriptions
        push = dict(prefs.push)
        push["enabled"] = True
        prefs.push = push
        logger.info(f"Push subscription registered for customer {customer_id}")
        return crud.notification.save_preferences(session=self.session, prefs=prefs)

    def unsubscribe_push(self, customer_id: int, endpoint: str) -> NotificationPreferences:
        prefs = self.get_preferences(customer_id)
        subscriptions = [sub for sub in prefs.push_subscriptions if sub.get("endpoint") != endpoint]
        if len(subscriptions) == len(prefs.push_subscriptions):
            raise NotFoundError("Push subscription not found", code=404301)
        prefs.push_subscriptions = subscriptions
        if not subscriptions:
            push = dict(prefs.push)
            push["enabled"] = False
            prefs.push = push
        return crud.notification.save_preferences(session=self.session, prefs=prefs)

    # ------------------------------------------------------------
    # 历史与统计
    # ------------------------------------------------------------

    def history(
        self,
        customer_id: int,
        channel: NotificationChannel | None = None,
        category: NotificationCategory | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[NotificationLog], int]:
        return crud.notification.list_logs(
            session=self.session,
            customer_id=customer_id,
            channel=channel,
            category=category,
            page=page,
            page_size=page_size,
        )

    def audit_logs(
        self,
        customer_id: int | None = None,
        channel: NotificationChannel | None = None,
        category: NotificationCategory | None = None,
        status: NotificationStatus | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[NotificationLog], int]:
        """管理员审计：全部客户的通知日志，可按客户、渠道、类别、状态过滤"""
        return crud.notification.list_logs(
            session=self.session,
            customer_id=customer_id,
            channel=channel,
            category=category,
            status=status,
            page=page,
            page_size=page_size,
        )

    def mark_read(self, customer_id: int, log_id: int) -> NotificationLog:
        log = self.session.get(NotificationLog, log_id)
        if log is None or log.customer_id != customer_id:
            raise NotFoundError("Notification not found", code=404302)
        return crud.notification.mark_read(session=self.session, log=log)

    def stats(self, customer_id: int | None = None, days: int = 30) -> dict[str, dict[str, int]]:
        since = self.clock() - timedelta(days=days)
        return crud.notification.channel_stats(session=self.session, customer_id=customer_id, since=since)

    def vapid_public_key(self) -> str | None:
        return self.settings.VAPID_PUBLIC_KEY
