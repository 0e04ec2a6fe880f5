"""One-time numeric codes for email 2FA (login and setup)."""
import datetime as dt
import hashlib
import hmac
import secrets

from flask import current_app
from sqlalchemy import update

from .email import send_login_code, send_setup_code
from .models import VerificationCode
from .utils import utcnow

CODE_LENGTH = 6
PURPOSES = ("login", "2fa-setup")


def generate_code() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(CODE_LENGTH))


def _digest(code: str) -> str:
    key = current_app.config["SECRET_KEY"].encode()
    return hmac.new(key, code.encode(), hashlib.sha256).hexdigest()


def store_code(session, user_id: int, code: str, purpose: str = "login", ttl_minutes: int = 10) -> VerificationCode:
    if purpose not in PURPOSES:
        raise ValueError(f"Unknown code purpose: {purpose}")
    record = VerificationCode(
        user_id=user_id,
        code_hash=_digest(code),
        purpose=purpose,
        expires_at=utcnow() + dt.timedelta(minutes=ttl_minutes),
    )
    session.add(record)
    session.commit()
    return record


def verify_code(session, user_id: int, code: str, purpose: str = "login") -> bool:
    """Accept only the newest live code for (user, purpose) and consume it."""
    if not code:
        return False
    now = utcnow()
    latest = (session.query(VerificationCode)
              .filter(VerificationCode.user_id == user_id,
                      VerificationCode.purpose == purpose,
                      VerificationCode.consumed_at.is_(None))
              .order_by(VerificationCode.created_at.desc(), VerificationCode.id.desc())
              .first())
    if latest is None or latest.expires_at <= now:
        return False
    if not hmac.compare_digest(latest.code_hash, _digest(str(code).strip())):
        return False

    # consumed_at IS NULL guard: of two racing verifications only one wins
    result = session.execute(
        update(VerificationCode)
        .where(VerificationCode.id == latest.id, VerificationCode.consumed_at.is_(None))
        .values(consumed_at=now)
    )
    session.commit()
    return result.rowcount == 1


def issue_code(session, user, purpose: str = "login", ttl_minutes: int = 5) -> str:
    """Generate, store and email a code. A failed delivery still counts as issued."""
    code = generate_code()
    store_code(session, user.id, code, purpose, ttl_minutes)
    if purpose == "login":
        send_login_code(user.email, code, ttl_minutes)
    else:
        send_setup_code(user.email, code, ttl_minutes)
    return code
