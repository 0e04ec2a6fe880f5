"""Brute-force guard over the append-only login attempt history.

Blocking is computed from a sliding window of failed attempts; a success
never clears earlier failures. Repeat offenders escalate to a permanent
``BlockedIp`` row that only an administrator can remove.
"""
import datetime as dt
import logging
from typing import NamedTuple, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from .models import AccountUnlock, BlockedIp, LoginAttempt
from .settings import SecuritySettings
from .utils import utcnow

logger = logging.getLogger(__name__)


class BlockStatus(NamedTuple):
    blocked: bool
    until: Optional[str] = None
    reason: Optional[str] = None


NOT_BLOCKED = BlockStatus(False)


class AccountLock(NamedTuple):
    email: str
    until: dt.datetime
    failed_attempts: int


def _window_block(query, settings, now):
    window = dt.timedelta(minutes=settings.lockout_minutes)
    failures = (query.filter(LoginAttempt.success.is_(False),
                             LoginAttempt.created_at >= now - window)
                .order_by(LoginAttempt.created_at.desc())
                .limit(settings.max_login_attempts)
                .all())
    if len(failures) < settings.max_login_attempts:
        return None
    # Lifted once the oldest counted failure leaves the window
    return failures[-1].created_at + window


def _account_block(session, email, settings, now):
    query = session.query(LoginAttempt).filter_by(email=email)
    # an admin unlock discards every failure recorded before it
    unlocked_at = (session.query(func.max(AccountUnlock.unlocked_at))
                   .filter(AccountUnlock.email == email)
                   .scalar())
    if unlocked_at is not None:
        query = query.filter(LoginAttempt.created_at > unlocked_at)
    return _window_block(query, settings, now)


def is_blocked(session, ip: str, settings: SecuritySettings, email: Optional[str] = None) -> BlockStatus:
    now = utcnow()
    row = session.query(BlockedIp).filter_by(ip_address=ip).one_or_none()
    if row is not None:
        if row.permanent:
            return BlockStatus(True, "permanent", row.reason or "Permanently blocked")
        if row.blocked_until and row.blocked_until > now:
            return BlockStatus(True, row.blocked_until.isoformat(), row.reason or "Too many failed attempts")
        session.delete(row)
        session.commit()

    until = _window_block(session.query(LoginAttempt).filter_by(ip_address=ip), settings, now)
    if until is None and email and settings.lock_accounts:
        until = _account_block(session, email, settings, now)
    if until is not None:
        return BlockStatus(True, until.isoformat(), "Too many failed login attempts")
    return NOT_BLOCKED


def record_attempt(session, ip: str, email: Optional[str], success: bool, user_agent: Optional[str],
                   settings: SecuritySettings) -> None:
    session.add(LoginAttempt(ip_address=ip, email=email, success=success,
                             user_agent=(user_agent or "")[:255] or None))
    session.commit()
    if not success:
        logger.warning("Failed login attempt from %s for %s", ip, email)
        _escalate(session, ip, settings)


def _escalate(session, ip, settings):
    since = utcnow() - dt.timedelta(hours=settings.permanent_block_window_hours)
    failed = (session.query(func.count(LoginAttempt.id))
              .filter(LoginAttempt.ip_address == ip,
                      LoginAttempt.success.is_(False),
                      LoginAttempt.created_at >= since)
              .scalar())
    if failed < settings.permanent_block_attempts:
        return
    row = session.query(BlockedIp).filter_by(ip_address=ip).one_or_none()
    if row is not None and row.permanent:
        return
    if row is None:
        row = BlockedIp(ip_address=ip)
        session.add(row)
    row.permanent = True
    row.blocked_until = None
    row.reason = "Too many failed login attempts"
    try:
        session.commit()
    except IntegrityError:
        # a concurrent request inserted the block first
        session.rollback()
        return
    logger.warning("IP %s permanently blocked after %d failed attempts", ip, failed)


def unblock_ip(session, ip: str) -> bool:
    deleted = session.query(BlockedIp).filter_by(ip_address=ip).delete()
    session.commit()
    return bool(deleted)


def list_blocked_ips(session):
    return session.query(BlockedIp).order_by(BlockedIp.created_at.desc()).all()


def recent_attempts(session, limit: int = 100):
    return session.query(LoginAttempt).order_by(LoginAttempt.created_at.desc(), LoginAttempt.id.desc()).limit(limit).all()


def locked_accounts(session, settings: SecuritySettings):
    """Emails currently locked by their own failures. Empty unless ``lock_accounts`` is on."""
    if not settings.lock_accounts:
        return []
    now = utcnow()
    since = now - dt.timedelta(minutes=settings.lockout_minutes)
    candidates = (session.query(LoginAttempt.email, func.count(LoginAttempt.id))
                  .filter(LoginAttempt.success.is_(False),
                          LoginAttempt.email.isnot(None),
                          LoginAttempt.created_at >= since)
                  .group_by(LoginAttempt.email)
                  .having(func.count(LoginAttempt.id) >= settings.max_login_attempts)
                  .all())
    locked = []
    for email, failures in candidates:
        until = _account_block(session, email, settings, now)
        if until is not None:
            locked.append(AccountLock(email, until, failures))
    return locked


def unlock_account(session, email: str, unlocked_by: Optional[int] = None) -> None:
    session.add(AccountUnlock(email=email, unlocked_by=unlocked_by))
    session.commit()
    logger.info("Account %s unlocked", email)
