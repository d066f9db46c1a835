from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import settings

logger = logging.getLogger(__name__)


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - SGR_ENABLE_EMAIL=true
      - SGR_SMTP_HOST / SGR_SMTP_PORT
      - SGR_SMTP_USER / SGR_SMTP_PASSWORD
      - SGR_EMAIL_FROM / SGR_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.warning(f"Failed to send alert email '{subject}': {e}")
        return False


def capacity_alert(group: str, slot: int, unfilled_s: float, detail: str) -> bool:
    subject = f"DEGRADED: {group} slot {slot}"
    body = f"Group: {group}\nSlot: {slot}\nUnfilled for: {unfilled_s:.0f}s\nLast error: {detail or '-'}"
    return send_email(subject, body)


def health_alert(group: str, instance: str, ok: bool, detail: str) -> bool:
    subject = f"{'RECOVERED' if ok else 'DOWN'}: {group} ({instance})"
    body = f"Group: {group}\nInstance: {instance}\nStatus: {'UP' if ok else 'DOWN'}\nDetail: {detail}"
    return send_email(subject, body)
