"""
通知路由模块

- 偏好设置（渠道 x 分类开关、免打扰、时区）
- Web Push 订阅 / 取消订阅
- 通知历史、标记已读、统计
- 管理员：手动发送、通知日志审计
"""
from __future__ import annotations

from fastapi import APIRouter, Query

from fulfillment.api.deps import CurrentAdmin, CurrentCustomer, NotificationServiceDep
from fulfillment.api.schemas import (
    AdminNotificationRequest,
    ApiEnvelope,
    ChannelOutcomeData,
    ChannelPreferencesData,
    DispatchResultData,
    NotificationLogData,
    NotificationsData,
    PreferencesData,
    PreferencesUpdateRequest,
    PushSubscribeRequest,
    PushSubscriptionData,
    PushUnsubscribeRequest,
)
from fulfillment.enums import NotificationCategory, NotificationChannel, NotificationStatus
from fulfillment.integrations.channels import NotificationMessage
from fulfillment.models import NotificationLog, NotificationPreferences, ensure_utc
from fulfillment.models.notification import push_subscription_records, quiet_hours_of
from fulfillment.services.notification_service import DispatchResult

router = APIRouter(prefix="/notifications", tags=["notifications"])


def to_preferences_data(prefs: NotificationPreferences) -> PreferencesData:
    return PreferencesData(
        email=ChannelPreferencesData(**prefs.email),
        sms=ChannelPreferencesData(**prefs.sms),
        push=ChannelPreferencesData(**prefs.push),
        quiet_hours=quiet_hours_of(prefs),
        timezone=prefs.timezone,
        push_subscriptions=[
            PushSubscriptionData(
                endpoint=sub.endpoint,
                user_agent=sub.user_agent,
                device_type=sub.device_type,
                is_active=sub.is_active,
                last_used=ensure_utc(sub.last_used),
            )
            for sub in push_subscription_records(prefs)
        ],
    )


def to_log_data(log: NotificationLog) -> NotificationLogData:
    return NotificationLogData(
        id=log.id,
        customer_id=log.customer_id,
        order_id=log.order_id,
        channel=log.channel,
        category=log.category,
        title=log.title,
        message=log.message,
        status=log.status,
        priority=log.priority,
        sent_at=ensure_utc(log.sent_at),
        read_at=ensure_utc(log.read_at),
        failure_reason=log.failure_reason,
        created_at=ensure_utc(log.created_at),
    )


def to_dispatch_data(result: DispatchResult) -> DispatchResultData:
    return DispatchResultData(
        success=result.success,
        reason=result.reason,
        channels=[
            ChannelOutcomeData(
                channel=o.channel, success=o.success, skipped=o.skipped, reason=o.reason, log_id=o.log_id
            )
            for o in result.channels
        ],
    )


@router.get("/vapid-public-key", response_model=ApiEnvelope)
def vapid_public_key(notifications: NotificationServiceDep) -> ApiEnvelope:
    """前端订阅 Web Push 时使用的 VAPID 公钥"""
    return ApiEnvelope(data={"public_key": notifications.vapid_public_key()})


@router.get("/preferences", response_model=ApiEnvelope)
def get_preferences(notifications: NotificationServiceDep, customer: CurrentCustomer) -> ApiEnvelope:
    return ApiEnvelope(data=to_preferences_data(notifications.get_preferences(customer.id)))


@router.put("/preferences", response_model=ApiEnvelope)
def update_preferences(
    notifications: NotificationServiceDep, customer: CurrentCustomer, body: PreferencesUpdateRequest
) -> ApiEnvelope:
    """部分更新：只修改请求中出现的字段"""
    prefs = notifications.update_preferences(customer.id, body.model_dump(exclude_none=True))
    return ApiEnvelope(message="Preferences updated", data=to_preferences_data(prefs))


@router.post("/push/subscribe", response_model=ApiEnvelope)
def subscribe_push(
    notifications: NotificationServiceDep, customer: CurrentCustomer, body: PushSubscribeRequest
) -> ApiEnvelope:
    prefs = notifications.subscribe_push(
        customer.id, body.endpoint, body.keys, user_agent=body.user_agent, device_type=body.device_type
    )
    return ApiEnvelope(message="Push subscription registered", data=to_preferences_data(prefs))


@router.post("/push/unsubscribe", response_model=ApiEnvelope)
def unsubscribe_push(
    notifications: NotificationServiceDep, customer: CurrentCustomer, body: PushUnsubscribeRequest
) -> ApiEnvelope:
    prefs = notifications.unsubscribe_push(customer.id, body.endpoint)
    return ApiEnvelope(message="Push subscription removed", data=to_preferences_data(prefs))


@router.get("/history", response_model=ApiEnvelope)
def notification_history(
    notifications: NotificationServiceDep,
    customer: CurrentCustomer,
    channel: NotificationChannel | None = None,
    category: NotificationCategory | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> ApiEnvelope:
    rows, count = notifications.history(
        customer.id, channel=channel, category=category, page=page, page_size=page_size
    )
    return ApiEnvelope(data=NotificationsData(data=[to_log_data(r) for r in rows], count=count))


@router.get("/stats", response_model=ApiEnvelope)
def notification_stats(
    notifications: NotificationServiceDep,
    customer: CurrentCustomer,
    days: int = Query(default=30, ge=1, le=365),
) -> ApiEnvelope:
    """按渠道统计当前客户的通知发送情况"""
    return ApiEnvelope(data=notifications.stats(customer_id=customer.id, days=days))


@router.post("/{log_id}/read", response_model=ApiEnvelope)
def mark_notification_read(
    notifications: NotificationServiceDep, customer: CurrentCustomer, log_id: int
) -> ApiEnvelope:
    return ApiEnvelope(data=to_log_data(notifications.mark_read(customer.id, log_id)))


@router.get("/admin/logs", response_model=ApiEnvelope)
def admin_notification_logs(
    notifications: NotificationServiceDep,
    _: CurrentAdmin,
    customer_id: int | None = None,
    channel: NotificationChannel | None = None,
    category: NotificationCategory | None = None,
    status: NotificationStatus | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=100),
) -> ApiEnvelope:
    """
    通知日志审计（管理员）

    请求路径: GET /api/v1/notifications/admin/logs
    """
    rows, count = notifications.audit_logs(
        customer_id=customer_id,
        channel=channel,
        category=category,
        status=status,
        page=page,
        page_size=page_size,
    )
    return ApiEnvelope(data=NotificationsData(data=[to_log_data(r) for r in rows], count=count))


@router.post("/admin/send", response_model=ApiEnvelope)
def admin_send(
    notifications: NotificationServiceDep, _: CurrentAdmin, body: AdminNotificationRequest
) -> ApiEnvelope:
    """管理员手动发送通知（仍受客户偏好与免打扰限制）"""
    result = notifications.dispatch(
        body.customer_id,
        NotificationMessage(
            category=body.category,
            title=body.title,
            message=body.message,
            priority=body.priority,
            order_id=body.order_id,
        ),
        body.channels,
    )
    return ApiEnvelope(data=to_dispatch_data(result))
