"""
短信发送

服务商优先级：Tunisie Telecom -> Orange -> Twilio（取第一个已配置的）。
号码统一格式化为 +216XXXXXXXX，格式不合法的号码不发送。
短信最长 160 字符，超出截断为 157 字符 + "..."。
"""
from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from fulfillment.core.config import Settings
from fulfillment.enums import OrderStatus

from .base import ChannelResult, NotificationMessage, Recipient

logger = logging.getLogger(__name__)

_PHONE_RE = re.compile(r"^\+216[0-9]{8}$")
MAX_SMS_LENGTH = 160


def format_tunisian_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("00216"):
        digits = digits[2:]
    if digits.startswith("216"):
        return f"+{digits}"
    if digits.startswith("0"):
        return f"+216{digits[1:]}"
    return f"+216{digits}"


def is_valid_tunisian_phone(phone: str) -> bool:
    return bool(_PHONE_RE.match(phone))


def truncate_sms(text: str) -> str:
    if len(text) <= MAX_SMS_LENGTH:
        return text
    return text[: MAX_SMS_LENGTH - 3] + "..."


def order_status_sms(data: dict[str, Any], frontend_url: str) -> str | None:
    """订单状态短信模板（没有对应模板的状态返回 None）"""
    number = data.get("order_number")
    status = data.get("status")
    if not number or not status:
        return None
    templates = {
        OrderStatus.confirmed.value: (
            f"Votre commande {number} a été confirmée. "
            f"Suivi: {frontend_url}/track-order?order={number}"
        ),
        OrderStatus.processing.value: f"Votre commande {number} est en préparation. STES Piscines",
        OrderStatus.shipped.value: (
            f"Votre commande {number} a été expédiée. Code: {data.get('tracking_code', '')}"
        ),
        OrderStatus.delivered.value: (
            f"Votre commande {number} a été livrée! Merci de votre confiance. STES Piscines"
        ),
    }
    return templates.get(str(status), f"Mise à jour commande {number}: {status}")


class SmsSender:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def provider(self) -> str | None:
        s = self._settings
        if s.TUNISIE_TELECOM_API_KEY:
            return "tunisietel"
        if s.ORANGE_SMS_TOKEN and s.ORANGE_SMS_SENDER_ADDRESS:
            return "orange"
        if s.TWILIO_ACCOUNT_SID and s.TWILIO_AUTH_TOKEN and s.TWILIO_PHONE_NUMBER:
            return "twilio"
        return None

    def compose(self, notification: NotificationMessage) -> str:
        text = order_status_sms(notification.data, self._settings.FRONTEND_URL.rstrip("/"))
        if text is None:
            text = f"{notification.title}: {notification.message}"
        return truncate_sms(text)

    def send(self, recipient: Recipient, notification: NotificationMessage) -> ChannelResult:
        if not recipient.phone:
            return ChannelResult(success=False, error="Customer has no phone number")
        phone = format_tunisian_phone(recipient.phone)
        if not is_valid_tunisian_phone(phone):
            return ChannelResult(success=False, error=f"Invalid Tunisian phone number: {recipient.phone}")

        provider = self.provider()
        if provider is None:
            return ChannelResult(success=False, error="No SMS provider configured")

        text = self.compose(notification)
        try:
            if provider == "tunisietel":
                message_id = self._send_tunisietel(phone, text)
            elif provider == "orange":
                message_id = self._send_orange(phone, text)
            else:
                message_id = self._send_twilio(phone, text)
        except httpx.HTTPError as e:
            logger.warning(f"SMS via {provider} to {phone} failed: {e}")
            return ChannelResult(success=False, error=f"{provider}: {e}", provider=provider)

        logger.info(f"SMS sent via {provider} to {phone}")
        return ChannelResult(success=True, provider=provider, message_id=message_id)

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._settings.HTTP_TIMEOUT_SECONDS)

    def _send_tunisietel(self, phone: str, text: str) -> str | None:
        s = self._settings
        with self._client() as client:
            r = client.post(
                s.TUNISIE_TELECOM_BASE_URL,
                json={"to": phone, "text": text, "from": s.SMS_SENDER_NAME},
                headers={"Authorization": f"Bearer {s.TUNISIE_TELECOM_API_KEY}"},
            )
            r.raise_for_status()
            data = r.json()
        return str(data.get("messageId") or data.get("id") or "") or None

    def _send_orange(self, phone: str, text: str) -> str | None:
        s = self._settings
        sender = s.ORANGE_SMS_SENDER_ADDRESS or ""
        url = f"{s.ORANGE_SMS_BASE_URL.rstrip('/')}/outbound/tel:{sender}/requests"
        payload = {
            "outboundSMSMessageRequest": {
                "address": f"tel:{phone}",
                "senderAddress": f"tel:{sender}",
                "senderName": s.SMS_SENDER_NAME,
                "outboundSMSTextMessage": {"message": text},
            }
        }
        with self._client() as client:
            r = client.post(url, json=payload, headers={"Authorization": f"Bearer {s.ORANGE_SMS_TOKEN}"})
            r.raise_for_status()
            data = r.json()
        request = data.get("outboundSMSMessageRequest") or {}
        return (request.get("resourceReference") or {}).get("resourceURL")

    def _send_twilio(self, phone: str, text: str) -> str | None:
        s = self._settings
        url = f"{s.TWILIO_BASE_URL.rstrip('/')}/Accounts/{s.TWILIO_ACCOUNT_SID}/Messages.json"
        with self._client() as client:
            r = client.post(
                url,
                data={"To": phone, "From": s.TWILIO_PHONE_NUMBER, "Body": text},
                auth=(s.TWILIO_ACCOUNT_SID or "", s.TWILIO_AUTH_TOKEN or ""),
            )
            r.raise_for_status()
            data = r.json()
        return data.get("sid")
