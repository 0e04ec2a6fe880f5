"""Self-service 2FA management for a logged-in user."""
from flask import Blueprint, current_app, jsonify
from flask_login import current_user, login_required

from . import get_db
from .audit import record_event
from .backup_codes import delete_backup_codes, generate_backup_codes, remaining_backup_codes
from .codes import issue_code, verify_code
from .errors import Forbidden, InvalidCode, InvalidCredentials, NotFound, ValidationError
from .forms import CodeForm, DisableTwoFactorForm
from .models import User, effective_two_factor_state
from .passwords import verify_password
from .routes import SETUP_CODE_TTL_MINUTES, validated
from .settings import load_security_settings, two_factor_required
from .totp import new_secret, provisioning_uri, qr_data_uri, verify_totp

bp = Blueprint("account", __name__, url_prefix="/security")


def _current(session):
    user = session.get(User, current_user.id)
    if user is None:
        raise NotFound("User not found")
    return user


def _allowed(settings, method):
    if method not in settings.two_factor_methods:
        raise ValidationError(f"{method} 2FA is not allowed by the security settings")


@bp.route("/2fa/status")
@login_required
def two_factor_status():
    session = get_db()
    try:
        user = _current(session)
        settings = load_security_settings(session)
        state = effective_two_factor_state(user)
        return jsonify({
            "enabled": state.any_enabled,
            "method": state.primary_method,
            "emailEnabled": state.email_enabled,
            "totpEnabled": state.totp_enabled,
            "backupCodesRemaining": remaining_backup_codes(session, user.id) if state.totp_enabled else 0,
            "required": two_factor_required(settings, user.role),
            "availableMethods": settings.two_factor_methods,
        })
    finally:
        session.close()


# -------- Email --------

@bp.route("/2fa/setup/email", methods=["POST"])
@login_required
def setup_email():
    session = get_db()
    try:
        user = _current(session)
        _allowed(load_security_settings(session), "email")
        issue_code(session, user, "2fa-setup", SETUP_CODE_TTL_MINUTES)
        return jsonify({"message": "Verification code sent to your email"})
    finally:
        session.close()


@bp.route("/2fa/verify/email", methods=["POST"])
@login_required
def verify_email():
    form = validated(CodeForm)
    session = get_db()
    try:
        user = _current(session)
        if not verify_code(session, user.id, form.code.data, "2fa-setup"):
            raise InvalidCode("Invalid or expired code")
        user.enable_two_factor("email")
        session.commit()
        record_event(session, "2fa_enabled", user=user, details={"method": "email"})
        return jsonify({"message": "Email 2FA enabled"})
    finally:
        session.close()


# -------- TOTP --------

@bp.route("/2fa/setup/totp", methods=["POST"])
@login_required
def setup_totp():
    session = get_db()
    try:
        user = _current(session)
        _allowed(load_security_settings(session), "totp")
        if effective_two_factor_state(user).totp_enabled:
            raise ValidationError("Authenticator app is already enabled")
        user.two_factor_secret = new_secret()
        session.commit()
        uri = provisioning_uri(user.two_factor_secret, user.email, current_app.config["SECURITY_ISSUER"])
        return jsonify({
            "secret": user.two_factor_secret,
            "qrCode": qr_data_uri(uri),
            "otpauthUrl": uri,
        })
    finally:
        session.close()


@bp.route("/2fa/verify/totp", methods=["POST"])
@login_required
def verify_totp_setup():
    form = validated(CodeForm)
    session = get_db()
    try:
        user = _current(session)
        if not user.two_factor_secret:
            raise ValidationError("Authenticator setup has not been started")
        if not verify_totp(user.two_factor_secret, form.code.data):
            raise InvalidCode()
        user.enable_two_factor("totp")
        session.commit()
        codes = generate_backup_codes(session, user.id)
        record_event(session, "2fa_enabled", user=user, details={"method": "totp"})
        return jsonify({"message": "Authenticator app enabled", "backupCodes": codes})
    finally:
        session.close()


@bp.route("/2fa/disable", methods=["POST"])
@login_required
def disable_two_factor():
    form = validated(DisableTwoFactorForm)
    session = get_db()
    try:
        user = _current(session)
        if not verify_password(form.password.data, user.password_hash):
            raise InvalidCredentials("Invalid password")

        method = form.method.data or None
        state = effective_two_factor_state(user)
        remaining = (method == "email" and state.totp_enabled) or (method == "totp" and state.email_enabled)
        if not remaining and two_factor_required(load_security_settings(session), user.role):
            raise Forbidden("Two-factor authentication is required for your account")

        user.disable_two_factor(method)
        session.commit()
        if method in (None, "totp"):
            delete_backup_codes(session, user.id)
        record_event(session, "2fa_disabled", user=user, details={"method": method or "all"})
        return jsonify({"message": "Two-factor authentication disabled"})
    finally:
        session.close()


@bp.route("/2fa/backup-codes/regenerate", methods=["POST"])
@login_required
def regenerate_backup_codes():
    session = get_db()
    try:
        user = _current(session)
        if not effective_two_factor_state(user).totp_enabled:
            raise ValidationError("Backup codes require the authenticator app")
        codes = generate_backup_codes(session, user.id)
        record_event(session, "backup_codes_regenerated", user=user)
        return jsonify({"backupCodes": codes})
    finally:
        session.close()
