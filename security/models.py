from typing import NamedTuple

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import validates
from flask_login import UserMixin

from . import Base
from .utils import utcnow

# Ascending privilege
ROLES = ("sales", "salesadmin", "admin", "superadmin")
TWO_FACTOR_METHODS = ("email", "totp")


def role_rank(role: str) -> int:
    return ROLES.index(role) if role in ROLES else -1


class User(Base, UserMixin):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(100), nullable=False, default="")
    role = Column(String(32), nullable=False, default="sales")
    is_active = Column(Boolean, nullable=False, default=True)
    must_change_password = Column(Boolean, nullable=False, default=False)

    # 2FA, legacy single-method fields
    two_factor_enabled = Column(Boolean, nullable=False, default=False)
    two_factor_method = Column(String(16), nullable=True)
    # 2FA, independent per-method flags
    two_factor_email_enabled = Column(Boolean, nullable=False, default=False)
    two_factor_totp_enabled = Column(Boolean, nullable=False, default=False)
    two_factor_secret = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_login_at = Column(DateTime, nullable=True)

    def get_id(self):
        return str(self.id)

    def to_dict(self):
        return {"id": self.id, "email": self.email, "name": self.name, "role": self.role}

    def enable_two_factor(self, method: str):
        # fold legacy single-method state into the per-method flags first
        state = effective_two_factor_state(self)
        self.two_factor_email_enabled = state.email_enabled or method == "email"
        self.two_factor_totp_enabled = state.totp_enabled or method == "totp"
        self.two_factor_enabled = True
        # TOTP stays the primary method whenever it is on
        self.two_factor_method = "totp" if self.two_factor_totp_enabled else "email"

    def disable_two_factor(self, method: str = None):
        """Turn off one method, or every method when ``method`` is None."""
        state = effective_two_factor_state(self)
        email = state.email_enabled and method == "totp"
        totp = state.totp_enabled and method == "email"
        self.two_factor_email_enabled = email
        self.two_factor_totp_enabled = totp
        self.two_factor_enabled = email or totp
        self.two_factor_method = "totp" if totp else ("email" if email else None)
        if not totp:
            self.two_factor_secret = None

    @validates("role")
    def validate_role(self, key, value):
        if value not in ROLES:
            raise ValueError(f"Invalid role: {value}")
        return value

    @validates("two_factor_method")
    def validate_two_factor_method(self, key, value):
        if value is not None and value not in TWO_FACTOR_METHODS:
            raise ValueError(f"Invalid 2FA method: {value}")
        return value


class TwoFactorState(NamedTuple):
    email_enabled: bool
    totp_enabled: bool
    any_enabled: bool

    @property
    def primary_method(self):
        if self.totp_enabled:
            return "totp"
        if self.email_enabled:
            return "email"
        return None


def effective_two_factor_state(user) -> TwoFactorState:
    """Normalize legacy and dual-method 2FA columns into one shape.

    The per-method flags win as soon as either is set; otherwise the state is
    derived from the legacy ``two_factor_enabled``/``two_factor_method`` pair.
    """
    if user.two_factor_email_enabled or user.two_factor_totp_enabled:
        return TwoFactorState(
            email_enabled=bool(user.two_factor_email_enabled),
            totp_enabled=bool(user.two_factor_totp_enabled),
            any_enabled=True,
        )
    enabled = bool(user.two_factor_enabled)
    return TwoFactorState(
        email_enabled=enabled and user.two_factor_method == "email",
        totp_enabled=enabled and user.two_factor_method == "totp",
        any_enabled=enabled,
    )


class LoginAttempt(Base):
    __tablename__ = "login_attempts"
    id = Column(Integer, primary_key=True)
    ip_address = Column(String(64), nullable=False, index=True)
    email = Column(String(255), nullable=True, index=True)
    success = Column(Boolean, nullable=False, default=False)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "ipAddress": self.ip_address,
            "email": self.email,
            "success": self.success,
            "userAgent": self.user_agent,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class BlockedIp(Base):
    __tablename__ = "blocked_ips"
    id = Column(Integer, primary_key=True)
    ip_address = Column(String(64), unique=True, nullable=False)
    reason = Column(String(255), nullable=True)
    blocked_until = Column(DateTime, nullable=True)
    permanent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "ipAddress": self.ip_address,
            "reason": self.reason,
            "blockedUntil": self.blocked_until.isoformat() if self.blocked_until else None,
            "permanent": self.permanent,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class AccountUnlock(Base):
    """Admin override: failures for the email up to ``unlocked_at`` no longer lock it."""
    __tablename__ = "account_unlocks"
    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, index=True)
    unlocked_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    unlocked_at = Column(DateTime, nullable=False, default=utcnow)


class VerificationCode(Base):
    __tablename__ = "verification_codes"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    code_hash = Column(String(128), nullable=False)
    purpose = Column(String(32), nullable=False, default="login")
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class BackupCode(Base):
    __tablename__ = "backup_codes"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    code_hash = Column(String(255), nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String(128), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AppSetting(Base):
    __tablename__ = "app_settings"
    id = Column(Integer, primary_key=True)
    key = Column(String(64), unique=True, nullable=False)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    user_name = Column(String(255), nullable=False, default="")
    user_email = Column(String(255), nullable=False, default="")
    action = Column(String(64), nullable=False)
    entity_type = Column(String(64), nullable=False, default="auth")
    entity_id = Column(Integer, nullable=True)
    entity_name = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
