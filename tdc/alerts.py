from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - TDC_ENABLE_EMAIL=true
      - TDC_SMTP_HOST / TDC_SMTP_PORT
      - TDC_SMTP_USER / TDC_SMTP_PASSWORD
      - TDC_EMAIL_FROM / TDC_EMAIL_TO
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
    except (smtplib.SMTPException, OSError):
        return False


def notify_promotion(old_primary: str | None, new_primary: str, reason: str) -> bool:
    return send_email(
        f"PROMOTED: datastore primary is now {new_primary}",
        f"Previous primary: {old_primary or '-'}\nNew primary: {new_primary}\nReason: {reason}",
    )


def notify_plan(tier: str, plan_id: str, status: str, message: str) -> bool:
    return send_email(
        f"DEPLOY {status.upper()}: tier {tier} (plan {plan_id})",
        f"Tier: {tier}\nPlan: {plan_id}\nStatus: {status}\nDetail: {message}",
    )


def notify_run(run_id: str, release_id: str, message: str) -> bool:
    return send_email(
        f"RELEASE FAILED: {release_id} (run {run_id})",
        f"Run: {run_id}\nRelease: {release_id}\nDetail: {message}",
    )
