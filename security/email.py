import logging
import threading

from flask import current_app
from flask_mail import Message

from . import mail

logger = logging.getLogger(__name__)


def _deliver(msg) -> bool:
    try:
        mail.send(msg)
        return True
    except Exception:
        logger.exception("Could not deliver '%s' to %s", msg.subject, ", ".join(msg.recipients))
        return False


def _deliver_in_app(app, msg):
    with app.app_context():
        _deliver(msg)


def send_message(to_email: str, subject: str, body: str, html: str = None, background: bool = False) -> bool:
    """Send one message; delivery failures are logged, never raised.

    With ``background`` and ``MAIL_ASYNC`` on, the SMTP exchange runs on a
    worker thread and the call returns at once.
    """
    msg = Message(subject=subject, recipients=[to_email], body=body, html=html)
    if background and current_app.config["MAIL_ASYNC"]:
        app = current_app._get_current_object()
        threading.Thread(target=_deliver_in_app, args=(app, msg), daemon=True).start()
        return True
    return _deliver(msg)


def _code_html(title, code, minutes, footer=""):
    return (
        f"<h2>{title}</h2>"
        f'<p>Your verification code is: <strong style="font-size: 24px; letter-spacing: 3px;">{code}</strong></p>'
        f"<p>This code expires in {minutes} minutes.</p>{footer}"
    )


def send_login_code(to_email: str, code: str, minutes: int) -> bool:
    footer = '<p style="color: #6b7280; font-size: 12px;">If you didn\'t try to log in, please secure your account.</p>'
    return send_message(
        to_email,
        "Login Verification Code",
        f"Your verification code is: {code}\n\nThis code expires in {minutes} minutes.",
        html=_code_html("Login Verification", code, minutes, footer),
    )


def send_setup_code(to_email: str, code: str, minutes: int) -> bool:
    return send_message(
        to_email,
        "2FA Setup - Verification Code",
        f"Your verification code is: {code}\n\nThis code expires in {minutes} minutes.",
        html=_code_html("2FA Setup Verification", code, minutes),
    )


def send_reset_email(to_email: str, reset_url: str) -> bool:
    system_name = current_app.config["SECURITY_ISSUER"]
    return send_message(
        to_email,
        f"{system_name} - Password Reset",
        f"Password Reset\n\nClick the link to reset your password: {reset_url}\n\n"
        f"This link is valid for 1 hour.\n\n{system_name}",
        html=(
            "<h2>Password Reset</h2>"
            "<p>We received a password reset request for your account.</p>"
            f'<p><a href="{reset_url}">Reset Password</a></p>'
            "<p>This link is valid for 1 hour. If you did not request a password reset, please ignore this email.</p>"
            f"<p>{system_name}</p>"
        ),
        background=True,
    )
