import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .config import settings

logger = logging.getLogger("tourhub.email")


def send_email(to: str, subject: str, html: str) -> None:
    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = settings.EMAIL_FROM
    message["To"] = to
    message.attach(MIMEText(html, "html"))

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as server:
        if settings.SMTP_USE_TLS:
            server.starttls()
        if settings.SMTP_USER and settings.SMTP_PASSWORD:
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        server.sendmail(settings.EMAIL_FROM, [to], message.as_string())


def send_password_reset_email(to: str, reset_link: str) -> None:
    """
    Background task. A failed delivery is logged and never propagated,
    the request that triggered it has already answered.
    """
    html = f"""
    <div>
        <p>Dear user,</p>
        <p>A password reset was requested for your account.
        The link below is valid for {settings.RESET_TOKEN_EXPIRE_MINUTES} minutes.</p>
        <a href="{reset_link}" style="text-decoration: none;">
            <button>Reset Password</button>
        </a>
    </div>
    """
    try:
        send_email(to, "Reset your password", html)
        logger.info(f"Password reset email sent to {to}")
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send password reset email to {to}: {e}")
