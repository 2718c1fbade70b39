"""
Outbound email.

``send_email`` talks SMTP when SMTP_HOST is configured and only logs the message
otherwise (dev mode). State changes that should notify somebody return a list of
``Email`` effects; ``dispatch`` sends them after the response has been committed
and never lets a delivery failure escape.
"""

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Iterable, Optional

from config import EMAIL_FROM_NAME, FRONTEND_URL, OTP_EXPIRE_MINUTES, SMTP_HOST, SMTP_PASS, SMTP_PORT, SMTP_USER
from errors import DependencyFailure

logger = logging.getLogger(__name__)


@dataclass
class Email:
    to: str
    subject: str
    text: str
    html: Optional[str] = None


def send_email(to: str, subject: str, text: str, html: Optional[str] = None) -> bool:
    if not SMTP_HOST:
        logger.info("SMTP not configured; email to %s not sent: %s", to, subject)
        logger.debug("Email body:\n%s", text)
        return False

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = f"{EMAIL_FROM_NAME} <{SMTP_USER}>"
    msg["To"] = to
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")

    try:
        smtp_cls = smtplib.SMTP_SSL if SMTP_PORT == 465 else smtplib.SMTP
        with smtp_cls(SMTP_HOST, SMTP_PORT, timeout=10) as server:
            if SMTP_PORT == 587:
                server.starttls()
            if SMTP_USER and SMTP_PASS:
                server.login(SMTP_USER, SMTP_PASS)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Email to %s failed: %s", to, e)
        raise DependencyFailure("Email service unavailable")
    logger.info("Email sent to %s: %s", to, subject)
    return True


def dispatch(effects: Iterable[Email]):
    for email in effects:
        try:
            send_email(email.to, email.subject, email.text, email.html)
        except Exception:
            logger.exception("Failed to deliver '%s' to %s", email.subject, email.to)


# ---------- Templates ----------

def otp_email(to: str, code: str, purpose: str = "registration") -> Email:
    if purpose == "registration":
        subject = "Verify your email - CivicConnect"
        intro = "Use the code below to finish creating your CivicConnect account."
    else:
        subject = "Your verification code - CivicConnect"
        intro = "Use the code below to continue."
    text = (
        f"{intro}\n\n"
        f"    {code}\n\n"
        f"The code expires in {OTP_EXPIRE_MINUTES} minutes. "
        "If you did not request it, you can ignore this email.\n"
    )
    html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<p>{intro}</p>"
        f'<p style="font-size: 28px; letter-spacing: 6px;"><strong>{code}</strong></p>'
        f"<p>The code expires in {OTP_EXPIRE_MINUTES} minutes.</p>"
        "</div>"
    )
    return Email(to, subject, text, html)


def welcome_email(user: dict) -> Email:
    name = user.get("name", "")
    text = (
        f"Hi {name},\n\n"
        "Welcome to CivicConnect! Your account has been successfully created.\n\n"
        "You can now report civic issues in your community, track the progress of your reports, "
        "vote on issues that matter to you and talk to city administrators.\n\n"
        "The CivicConnect Team\n"
    )
    html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<h2 style="color: #2c3e50;">Welcome to CivicConnect!</h2>'
        f"<p>Hi {name},</p>"
        "<p>Your account has been successfully created.</p>"
        "<ul><li>Report civic issues in your community</li>"
        "<li>Track the progress of your reports</li>"
        "<li>Vote on issues that matter to you</li>"
        "<li>Communicate with city administrators</li></ul>"
        "<p>The CivicConnect Team</p></div>"
    )
    return Email(user["email"], "Welcome to CivicConnect!", text, html)


def password_reset_email(user: dict, token: str) -> Email:
    link = f"{FRONTEND_URL}/reset-password?token={token}"
    text = (
        f"Hi {user.get('name', '')},\n\n"
        "We received a request to reset your password. Open the link below within one hour:\n\n"
        f"{link}\n\n"
        "If you did not request a reset, ignore this email.\n"
    )
    html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<p>Hi {user.get('name', '')},</p>"
        "<p>We received a request to reset your password.</p>"
        f'<p><a href="{link}">Reset password</a> (valid for one hour)</p>'
        "</div>"
    )
    return Email(user["email"], "Password Reset Request - CivicConnect", text, html)


def status_update_email(user: dict, report: dict) -> Email:
    status = report.get("status", "").replace("_", " ")
    subject = f"Report Update: {report.get('report_id')} - {report.get('title')}"
    text = (
        f"Hi {user.get('name', '')},\n\n"
        f"The status of your report \"{report.get('title')}\" ({report.get('report_id')}) "
        f"is now: {status}.\n\n"
        "Thank you for helping improve our community.\n"
    )
    html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<p>Hi {user.get('name', '')},</p>"
        f"<p>The status of your report <strong>{report.get('title')}</strong> "
        f"({report.get('report_id')}) is now: <strong>{status}</strong>.</p>"
        "</div>"
    )
    return Email(user["email"], subject, text, html)


def contact_confirmation_email(contact: dict) -> Email:
    category = contact.get("category", "general").replace("_", " ")
    text = (
        f"Hi {contact.get('name', '')},\n\n"
        "Thank you for contacting CivicConnect. We have received your message "
        "and will get back to you as soon as possible.\n\n"
        f"Subject: {contact.get('subject')}\n"
        f"Category: {category}\n"
        f"Message: {contact.get('message')}\n\n"
        "We typically respond within 24 hours.\n\n"
        "The CivicConnect Team\n"
    )
    html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<p>Hi {contact.get('name', '')},</p>"
        "<p>Thank you for contacting CivicConnect. We have received your message "
        "and will get back to you as soon as possible.</p>"
        f"<p><strong>Subject:</strong> {contact.get('subject')}<br>"
        f"<strong>Category:</strong> {category}</p>"
        "<p>We typically respond within 24 hours.</p>"
        "</div>"
    )
    return Email(contact["email"], "Thank you for contacting CivicConnect", text, html)


def contact_response_email(contact: dict) -> Email:
    response = (contact.get("response") or {}).get("content", "")
    subject = f"Re: {contact.get('subject')}"
    text = (
        f"Hi {contact.get('name', '')},\n\n"
        f"{response}\n\n"
        "The CivicConnect Team\n"
    )
    html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<p>Hi {contact.get('name', '')},</p>"
        f"<p>{response}</p>"
        "<p>The CivicConnect Team</p>"
        "</div>"
    )
    return Email(contact["email"], subject[:200], text, html)
