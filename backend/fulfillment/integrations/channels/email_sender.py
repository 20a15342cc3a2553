"""
邮件发送

模板（jinja2，位于 fulfillment/email-templates/）：
- order_status.html: 订单状态更新
- order_delivered.html: 订单送达
- generic.html: 其他分类（促销、提醒等）

通过 SMTP 发送 multipart/alternative（纯文本 + HTML）。
"""
from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from fulfillment.core.config import Settings
from fulfillment.enums import NotificationCategory, OrderStatus

from .base import ChannelResult, NotificationMessage, Recipient

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parents[2] / "email-templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


def render_email(
    notification: NotificationMessage, recipient: Recipient, frontend_url: str
) -> tuple[str, str, str]:
    """
    渲染邮件

    Returns:
        (subject, html, text)
    """
    data = notification.data
    order_number = data.get("order_number")
    context: dict[str, Any] = {
        "customer_name": recipient.name,
        "title": notification.title,
        "message": notification.message,
        "order": data,
        "tracking_url": (
            f"{frontend_url}/track-order?order={order_number}" if order_number else None
        ),
    }

    if order_number and data.get("status") == OrderStatus.delivered.value:
        subject = f"Votre commande {order_number} a été livrée !"
        template = "order_delivered.html"
    elif order_number and notification.category in (
        NotificationCategory.order_update,
        NotificationCategory.delivery,
    ):
        subject = f"Mise à jour de votre commande {order_number} - {data.get('status_label', '')}"
        template = "order_status.html"
    else:
        subject = notification.title
        template = "generic.html"

    html = _env.get_template(template).render(**context)
    text_lines = [f"Bonjour {recipient.name},", "", notification.message]
    if context["tracking_url"]:
        text_lines += ["", f"Suivez votre commande : {context['tracking_url']}"]
    return subject, html, "\n".join(text_lines)


class EmailSender:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send(self, recipient: Recipient, notification: NotificationMessage) -> ChannelResult:
        if not recipient.email:
            return ChannelResult(success=False, error="Customer has no email address")
        if not self._settings.emails_enabled:
            return ChannelResult(success=False, error="Email channel not configured")

        subject, html, text = render_email(
            notification, recipient, self._settings.FRONTEND_URL.rstrip("/")
        )
        msg = self._build_message(recipient.email, subject, html, text)
        try:
            self._deliver(recipient.email, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Email to {recipient.email} failed: {e}")
            return ChannelResult(success=False, error=str(e), provider="smtp")

        logger.info(f"Email sent to {recipient.email}: {subject}")
        return ChannelResult(success=True, provider="smtp", message_id=msg["Message-ID"])

    def _build_message(self, to: str, subject: str, html: str, text: str) -> MIMEMultipart:
        s = self._settings
        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((s.EMAILS_FROM_NAME or s.PROJECT_NAME, s.EMAILS_FROM_EMAIL or ""))
        msg["To"] = to
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid()
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def _deliver(self, to: str, msg: MIMEMultipart) -> None:
        s = self._settings
        if not s.SMTP_HOST:
            raise smtplib.SMTPException("SMTP host not configured")
        timeout = s.HTTP_TIMEOUT_SECONDS
        if s.SMTP_SSL:
            server: smtplib.SMTP = smtplib.SMTP_SSL(s.SMTP_HOST, s.SMTP_PORT, timeout=timeout)
        else:
            server = smtplib.SMTP(s.SMTP_HOST, s.SMTP_PORT, timeout=timeout)
        with server:
            if s.SMTP_TLS and not s.SMTP_SSL:
                server.starttls()
            if s.SMTP_USER and s.SMTP_PASSWORD:
                server.login(s.SMTP_USER, s.SMTP_PASSWORD)
            server.sendmail(s.EMAILS_FROM_EMAIL or "", [to], msg.as_string())
