"""
Outbound email delivery.

Two backends are supported, selected by EMAIL_BACKEND:
- "smtp": deliver through the configured SMTP relay
- "console": log the message instead of sending (development and tests)
"""
from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app


def send_email(to: str, subject: str, body: str, *, html: str | None = None) -> tuple[bool, str]:
    """
    Send an email using the configured backend.

    Returns:
        Tuple of (success, error_message). Never raises for delivery problems.
    """
    config = current_app.config
    backend = (config.get("EMAIL_BACKEND") or "console").strip().lower()
    email_from = (config.get("EMAIL_FROM") or "").strip()

    if not email_from:
        error_msg = "Email from address not configured (EMAIL_FROM environment variable missing)"
        current_app.logger.error("[EMAIL_ERROR] %s", error_msg)
        return False, error_msg

    if backend == "console":
        current_app.logger.info("[EMAIL] to=%s subject=%s\n%s", to, subject, body)
        return True, ""

    smtp_server = (config.get("SMTP_SERVER") or "").strip()
    smtp_port = int(config.get("SMTP_PORT") or 587)
    smtp_use_tls = bool(config.get("SMTP_USE_TLS", True))
    smtp_username = (config.get("SMTP_USERNAME") or "").strip()
    smtp_password = (config.get("SMTP_PASSWORD") or "").strip()

    if not smtp_server:
        error_msg = "SMTP server not configured (SMTP_SERVER environment variable missing)"
        current_app.logger.error("[EMAIL_ERROR] %s", error_msg)
        return False, error_msg

    if html:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(body, "plain"))
        msg.attach(MIMEText(html, "html"))
    else:
        msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = email_from
    msg["To"] = to

    try:
        with smtplib.SMTP(smtp_server, smtp_port, timeout=30) as server:
            if smtp_use_tls:
                server.starttls()
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, [to], msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        error_msg = f"SMTP delivery failed: {e}"
        current_app.logger.error("[EMAIL_ERROR] to=%s %s", to, error_msg)
        return False, error_msg

    current_app.logger.info("[EMAIL] sent to=%s subject=%s", to, subject)
    return True, ""
