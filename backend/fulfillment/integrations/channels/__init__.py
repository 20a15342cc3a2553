"""通知渠道发送器"""
from .base import ChannelResult, ChannelSender, NotificationMessage, Recipient
from .email_sender import EmailSender
from .push_sender import PushSender
from .sms_sender import SmsSender

__all__ = [
    "ChannelResult",
    "ChannelSender",
    "EmailSender",
    "NotificationMessage",
    "PushSender",
    "Recipient",
    "SmsSender",
]
