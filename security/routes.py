"""Login, second-factor and password reset endpoints.

Login is a small state machine. A correct password either yields a session
token directly, or parks the user in the pending-session registry until a
second factor is verified (``verify``) or enrolled (``setup``).
"""
import datetime as dt

from flask import Blueprint, current_app, jsonify
from flask_login import current_user, login_required, logout_user
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from . import get_db, limiter, pending_sessions
from .audit import record_event
from .backup_codes import generate_backup_codes, verify_backup_code
from .codes import issue_code, verify_code
from .email import send_reset_email
from .errors import (AccountDeactivated, Forbidden, InvalidCode, InvalidCredentials, RateLimited,
                     SessionExpired, ValidationError)
from .forms import (ChangePasswordForm, FirstUserForm, ForgotPasswordForm, LoginForm, PendingTokenForm,
                    ResetPasswordForm, SetupTwoFactorForm, VerifySetupForm, VerifyTwoFactorForm)
from .guard import is_blocked, record_attempt
from .models import PasswordResetToken, User, effective_two_factor_state
from .passwords import dummy_password_check, hash_password, verify_password
from .pending import ExtensionRefused
from .policy import CURRENT_PASSWORD_INCORRECT, validate_password, validate_password_change
from .settings import load_security_settings, two_factor_required
from .tokens import issue_session_token, new_reset_token
from .totp import new_secret, provisioning_uri, qr_data_uri, verify_totp
from .utils import client_ip, user_agent, utcnow

bp = Blueprint("security", __name__, url_prefix="")

LOGIN_CODE_TTL_MINUTES = 5
SETUP_CODE_TTL_MINUTES = 10
RESET_REQUESTED_MESSAGE = "If the email exists, a reset link has been sent"


# ------------- Helpers -------------
def validated(form_cls):
    form = form_cls()
    if not form.validate_on_submit():
        raise ValidationError.from_form(form)
    return form


def policy_error(result, field="password", message="Password does not meet requirements"):
    return ValidationError(message, details=[{"field": field, "message": e} for e in result.errors])


def ensure_not_blocked(session, settings, email=None):
    status = is_blocked(session, client_ip(), settings, email=email)
    if status.blocked:
        raise RateLimited("Too many failed attempts", blockedUntil=status.until, reason=status.reason)


def pending_user(session, pending):
    user = session.get(User, pending.user_id)
    if user is None:
        pending_sessions().delete(pending.token)
        raise SessionExpired()
    return user


def complete_login(session, user, settings, details=None, extra=None):
    """Terminal transition: every factor is verified, hand out the session token."""
    if not user.is_active:
        raise AccountDeactivated()
    record_attempt(session, client_ip(), user.email, True, user_agent(), settings)
    user.last_login_at = utcnow()
    session.commit()
    record_event(session, "login", user=user, details=details)
    current_app.logger.info("User %s logged in", user.id)
    body = {
        "token": issue_session_token(user),
        "user": user.to_dict(),
        "mustChangePassword": bool(user.must_change_password),
    }
    body.update(extra or {})
    return jsonify(body)


# ------------- Routes -------------

@bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute")
def login():
    form = validated(LoginForm)
    email, password = form.email.data, form.password.data
    session = get_db()
    try:
        settings = load_security_settings(session)
        ensure_not_blocked(session, settings, email=email)

        user = session.query(User).filter_by(email=email).one_or_none()
        if user is None:
            dummy_password_check(password)
            record_attempt(session, client_ip(), email, False, user_agent(), settings)
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            record_attempt(session, client_ip(), email, False, user_agent(), settings)
            raise InvalidCredentials()

        # The password is proven, so revealing the account state is acceptable
        if not user.is_active:
            raise AccountDeactivated()

        registry = pending_sessions()
        state = effective_two_factor_state(user)
        if two_factor_required(settings, user.role) and not state.any_enabled:
            pending = registry.create(user, "setup")
            return jsonify({
                "requires2FASetup": True,
                "setupToken": pending.token,
                "availableMethods": settings.two_factor_methods,
                "message": "Two-factor authentication is required for your account. Please set it up.",
            })

        if settings.two_factor_enforcement != "disabled" and state.any_enabled:
            pending = registry.create(user, "verify")
            method = state.primary_method
            if method == "email":
                issue_code(session, user, "login", LOGIN_CODE_TTL_MINUTES)
            # with TOTP primary, an email code is only sent on explicit fallback
            return jsonify({
                "requires2FA": True,
                "method": method,
                "sessionToken": pending.token,
                "hasEmailFallback": state.totp_enabled and state.email_enabled,
            })

        return complete_login(session, user, settings)
    finally:
        session.close()


@bp.route("/login/verify-2fa", methods=["POST"])
@limiter.limit("5 per minute")
def verify_2fa():
    form = validated(VerifyTwoFactorForm)
    registry = pending_sessions()
    session = get_db()
    try:
        settings = load_security_settings(session)
        ensure_not_blocked(session, settings)
        pending = registry.get(form.sessionToken.data, purpose="verify")
        if pending is None:
            raise SessionExpired()
        user = pending_user(session, pending)
        state = effective_two_factor_state(user)
        code = form.code.data

        method = form.method.data or state.primary_method
        if form.useBackupCode.data:
            factor = "backup_code"
            valid = verify_backup_code(session, user.id, code)
        elif method == "email":
            factor = "email"
            valid = state.email_enabled and verify_code(session, user.id, code, "login")
        else:
            factor = "totp"
            valid = state.totp_enabled and verify_totp(user.two_factor_secret, code)

        if not valid:
            # the pending session survives; the user may retry until it expires
            record_attempt(session, client_ip(), user.email, False, user_agent(), settings)
            raise InvalidCode()

        if not registry.delete(pending.token):
            raise SessionExpired()
        return complete_login(session, user, settings, details={"twoFactor": True, "method": factor})
    finally:
        session.close()


def _extend(token):
    try:
        pending_sessions().extend(token)
    except KeyError:
        raise SessionExpired()
    except ExtensionRefused:
        raise RateLimited("Too many code requests. Please login again.")


def _send_login_code():
    form = validated(PendingTokenForm)
    registry = pending_sessions()
    session = get_db()
    try:
        pending = registry.get(form.sessionToken.data, purpose="verify")
        if pending is None:
            raise SessionExpired()
        user = pending_user(session, pending)
        if not effective_two_factor_state(user).email_enabled:
            raise ValidationError("Email 2FA is not enabled")
        _extend(pending.token)
        issue_code(session, user, "login", LOGIN_CODE_TTL_MINUTES)
        return jsonify({"message": "Code sent"})
    finally:
        session.close()


@bp.route("/login/resend-2fa", methods=["POST"])
@limiter.limit("3 per minute")
def resend_2fa():
    return _send_login_code()


@bp.route("/login/send-email-fallback", methods=["POST"])
@limiter.limit("3 per minute")
def send_email_fallback():
    return _send_login_code()


@bp.route("/login/setup-2fa", methods=["POST"])
def setup_2fa():
    form = validated(SetupTwoFactorForm)
    session = get_db()
    try:
        settings = load_security_settings(session)
        pending = pending_sessions().get(form.setupToken.data, purpose="setup")
        if pending is None:
            raise SessionExpired()
        user = pending_user(session, pending)
        method = form.method.data
        if method not in settings.two_factor_methods:
            raise ValidationError("Method not allowed", details=[{"field": "method", "message": "Not allowed"}])

        if method == "email":
            # each code sent keeps the enrollment alive, up to the setup ceiling
            _extend(pending.token)
            issue_code(session, user, "2fa-setup", SETUP_CODE_TTL_MINUTES)
            return jsonify({"message": "Verification code sent", "method": "email"})

        # stored now, enabled only once a code from it verifies
        user.two_factor_secret = new_secret()
        session.commit()
        uri = provisioning_uri(user.two_factor_secret, user.email, current_app.config["SECURITY_ISSUER"])
        return jsonify({
            "method": "totp",
            "secret": user.two_factor_secret,
            "qrCode": qr_data_uri(uri),
            "otpauthUrl": uri,
        })
    finally:
        session.close()


@bp.route("/login/verify-2fa-setup", methods=["POST"])
@limiter.limit("5 per minute")
def verify_2fa_setup():
    form = validated(VerifySetupForm)
    registry = pending_sessions()
    session = get_db()
    try:
        settings = load_security_settings(session)
        ensure_not_blocked(session, settings)
        pending = registry.get(form.setupToken.data, purpose="setup")
        if pending is None:
            raise SessionExpired()
        user = pending_user(session, pending)
        method = form.method.data
        if method not in settings.two_factor_methods:
            raise ValidationError("Method not allowed", details=[{"field": "method", "message": "Not allowed"}])

        if method == "email":
            valid = verify_code(session, user.id, form.code.data, "2fa-setup")
        else:
            valid = verify_totp(user.two_factor_secret, form.code.data)
        if not valid:
            record_attempt(session, client_ip(), user.email, False, user_agent(), settings)
            raise InvalidCode()

        if not registry.delete(pending.token):
            raise SessionExpired()
        if not user.is_active:
            raise AccountDeactivated()
        user.enable_two_factor(method)
        session.commit()

        extra = {"message": "2FA successfully enabled"}
        # email is its own recovery channel; only TOTP gets backup codes
        if method == "totp":
            extra["backupCodes"] = generate_backup_codes(session, user.id)
        return complete_login(session, user, settings,
                              details={"twoFactor": True, "method": method, "firstSetup": True},
                              extra=extra)
    finally:
        session.close()


@bp.route("/logout", methods=["POST"])
@login_required
def logout():
    session = get_db()
    try:
        user = session.get(User, current_user.id)
        record_event(session, "logout", user=user)
    finally:
        session.close()
    logout_user()
    return jsonify({"message": "Logged out successfully"})


@bp.route("/me")
@login_required
def me():
    body = current_user.to_dict()
    body["mustChangePassword"] = bool(current_user.must_change_password)
    return jsonify({"user": body})


@bp.route("/change-password", methods=["POST"])
@login_required
def change_password():
    form = validated(ChangePasswordForm)
    session = get_db()
    try:
        user = session.get(User, current_user.id)
        if user is None:
            raise SessionExpired()
        result = validate_password_change(user.password_hash, form.currentPassword.data,
                                          form.newPassword.data, load_security_settings(session))
        if CURRENT_PASSWORD_INCORRECT in result.errors:
            raise InvalidCredentials(CURRENT_PASSWORD_INCORRECT)
        if not result.valid:
            raise policy_error(result, field="newPassword")

        user.password_hash = hash_password(form.newPassword.data)
        user.must_change_password = False
        session.commit()
        record_event(session, "password_change", user=user)
        return jsonify({"message": "Password changed successfully"})
    finally:
        session.close()


# -------- Password reset by email --------

@bp.route("/forgot-password", methods=["POST"])
@limiter.limit("3 per 15 minutes")
def forgot_password():
    form = validated(ForgotPasswordForm)
    session = get_db()
    try:
        user = session.query(User).filter_by(email=form.email.data).one_or_none()
        if user is not None:
            token = new_reset_token()
            ttl = dt.timedelta(seconds=current_app.config["PASSWORD_RESET_TTL"])
            session.add(PasswordResetToken(user_id=user.id, token=token, expires_at=utcnow() + ttl))
            session.commit()
            reset_url = f"{current_app.config['FRONTEND_URL'].rstrip('/')}/reset-password?token={token}"
            send_reset_email(user.email, reset_url)
            record_event(session, "password_reset_request", user=user)
    except SQLAlchemyError:
        # the answer must not depend on whether the address exists
        session.rollback()
        current_app.logger.exception("Password reset request failed")
    finally:
        session.close()
    return jsonify({"message": RESET_REQUESTED_MESSAGE})


@bp.route("/reset-password", methods=["POST"])
@limiter.limit("5 per 15 minutes")
def reset_password():
    form = validated(ResetPasswordForm)
    session = get_db()
    try:
        now = utcnow()
        record = session.query(PasswordResetToken).filter_by(token=form.token.data).one_or_none()
        if record is None or record.used_at is not None or record.expires_at <= now:
            raise SessionExpired("Invalid or expired token")

        result = validate_password(form.password.data, load_security_settings(session))
        if not result.valid:
            raise policy_error(result)

        # Claiming the token and replacing the hash commit together
        claimed = session.execute(
            update(PasswordResetToken)
            .where(PasswordResetToken.id == record.id, PasswordResetToken.used_at.is_(None))
            .values(used_at=now)
        )
        user = session.get(User, record.user_id)
        if claimed.rowcount != 1 or user is None:
            session.rollback()
            raise SessionExpired("Invalid or expired token")
        user.password_hash = hash_password(form.password.data)
        user.must_change_password = False
        session.commit()

        record_event(session, "password_reset", user=user)
        return jsonify({"message": "Password reset successfully"})
    finally:
        session.close()


# -------- First run --------

@bp.route("/setup-status")
def setup_status():
    session = get_db()
    try:
        return jsonify({"needsSetup": session.query(User).count() == 0})
    finally:
        session.close()


@bp.route("/setup", methods=["POST"])
def first_run_setup():
    session = get_db()
    try:
        if session.query(User).count() > 0:
            raise Forbidden("Setup already completed")
        form = validated(FirstUserForm)
        result = validate_password(form.password.data, load_security_settings(session))
        if not result.valid:
            raise policy_error(result)

        user = User(
            email=form.email.data,
            name=f"{form.firstName.data} {form.lastName.data}".strip(),
            role="superadmin",
            password_hash=hash_password(form.password.data),
        )
        session.add(user)
        session.commit()
        record_event(session, "setup", user=user)
        return jsonify({"token": issue_session_token(user), "user": user.to_dict()}), 201
    finally:
        session.close()
