import logging
import os
import smtplib
from html import escape
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_value(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _get_smtp_config() -> dict:
    return {
        "host": _env_value("SMTP_HOST") or "localhost",
        "port": _env_int("SMTP_PORT", 587),
        "username": _env_value("SMTP_USERNAME"),
        "password": _env_value("SMTP_PASSWORD"),
        "use_tls": _env_bool("SMTP_USE_TLS", True),
        "use_ssl": _env_bool("SMTP_USE_SSL", False),
        "from_email": _env_value("SMTP_FROM_EMAIL") or "noreply@example.com",
        "from_name": _env_value("SMTP_FROM_NAME") or "Admissions",
    }


def send_email(
    _db: Session | None,
    to_email: str,
    subject: str,
    body_html: str,
    body_text: str | None = None,
) -> bool:
    config = _get_smtp_config()
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{config['from_name']} <{config['from_email']}>"
    msg["To"] = to_email

    if body_text:
        msg.attach(MIMEText(body_text, "plain"))
    msg.attach(MIMEText(body_html, "html"))

    try:
        if config["use_ssl"]:
            server = smtplib.SMTP_SSL(config["host"], config["port"])
        else:
            server = smtplib.SMTP(config["host"], config["port"])

        if config["use_tls"] and not config["use_ssl"]:
            server.starttls()

        if config["username"] and config["password"]:
            server.login(config["username"], config["password"])

        server.sendmail(config["from_email"], to_email, msg.as_string())
        server.quit()

        logger.info("Email sent to %s", to_email)
        return True
    except Exception as exc:
        logger.error("Failed to send email to %s: %s", to_email, exc)
        return False


def send_invitation_email(
    db: Session | None,
    to_email: str,
    accept_url: str,
    student_name: str | None = None,
    school_name: str | None = None,
    expiry_days: int = 14,
) -> bool:
    school = escape(school_name or "your school")
    student = escape(student_name or "your child")
    link = escape(accept_url, quote=True)
    subject = f"You're invited to join {school_name or 'your school'}"
    body_html = (
        "<p>Hello,</p>"
        f"<p>{student}'s enrollment at {school} has been approved. "
        "Create your parent account to see their records and stay in touch:</p>"
        f'<p><a href="{link}">Accept invitation</a></p>'
        f"<p>This link expires in {expiry_days} days.</p>"
    )
    body_text = (
        f"{student_name or 'Your child'}'s enrollment at {school_name or 'your school'} "
        f"has been approved. Accept your parent invitation here: {accept_url}"
    )
    return send_email(db, to_email, subject, body_html, body_text)
