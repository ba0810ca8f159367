from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - WAC_ENABLE_EMAIL=true
      - WAC_SMTP_HOST / WAC_SMTP_PORT
      - WAC_SMTP_USER / WAC_SMTP_PASSWORD
      - WAC_EMAIL_FROM / WAC_EMAIL_TO
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

        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError):
        return False


def alert_instance_failed(workload: str, instance_id: str, detail: str) -> bool:
    subject = f"DOWN: {workload} instance {instance_id}"
    body = f"Workload: {workload}\nInstance: {instance_id}\nStatus: Failed\nDetail: {detail}"
    return send_email(subject, body)


def alert_degraded(workload: str, detail: str) -> bool:
    subject = f"DEGRADED: {workload}"
    body = f"Workload: {workload}\nStatus: Degraded\nDetail: {detail}\nExisting Ready instances are left in place."
    return send_email(subject, body)
