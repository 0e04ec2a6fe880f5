"""Superadmin surface: security settings, IP blocks, account locks, login history."""
from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from . import get_db
from .audit import record_event
from .errors import NotFound, ValidationError
from .forms import SecuritySettingsForm
from .guard import list_blocked_ips, locked_accounts, recent_attempts, unblock_ip, unlock_account
from .models import User
from .passwords import hash_password
from .policy import generate_temporary_password
from .routes import validated
from .settings import SecuritySettings, load_security_settings, save_security_settings
from .utils import superadmin_required

bp = Blueprint("admin", __name__, url_prefix="/security")

MAX_ATTEMPTS_PAGE = 1000


@bp.route("/settings")
@login_required
def get_settings():
    session = get_db()
    try:
        return jsonify(load_security_settings(session).to_dict())
    finally:
        session.close()


@bp.route("/settings", methods=["PUT"])
@superadmin_required
def update_settings():
    form = validated(SecuritySettingsForm)
    settings = SecuritySettings(
        max_login_attempts=form.maxLoginAttempts.data,
        lockout_minutes=form.lockoutMinutes.data,
        permanent_block_attempts=form.permanentBlockAttempts.data,
        permanent_block_window_hours=form.permanentBlockWindowHours.data or 24,
        lock_accounts=form.lockAccounts.data,
        two_factor_enforcement=form.twoFactorEnforcement.data,
        two_factor_methods=list(dict.fromkeys(form.twoFactorMethods.data)),
        password_min_length=form.passwordMinLength.data,
        password_require_uppercase=form.passwordRequireUppercase.data,
        password_require_lowercase=form.passwordRequireLowercase.data,
        password_require_numbers=form.passwordRequireNumbers.data,
        password_require_special=form.passwordRequireSpecial.data,
    )
    session = get_db()
    try:
        save_security_settings(session, settings)
        record_event(session, "security_settings_updated", user=session.get(User, current_user.id),
                     entity_type="settings", details=settings.to_dict())
        return jsonify(settings.to_dict())
    finally:
        session.close()


@bp.route("/blocked-ips")
@superadmin_required
def blocked_ips():
    session = get_db()
    try:
        return jsonify([row.to_dict() for row in list_blocked_ips(session)])
    finally:
        session.close()


@bp.route("/blocked-ips/<path:ip>", methods=["DELETE"])
@superadmin_required
def delete_blocked_ip(ip):
    session = get_db()
    try:
        if not unblock_ip(session, ip):
            raise NotFound("IP is not blocked")
        record_event(session, "ip_unblocked", user=session.get(User, current_user.id),
                     entity_type="blocked_ip", details={"ip": ip})
        return jsonify({"message": "IP unblocked"})
    finally:
        session.close()


@bp.route("/locked-users")
@superadmin_required
def locked_users():
    session = get_db()
    try:
        locks = locked_accounts(session, load_security_settings(session))
        users = {u.email: u for u in session.query(User).filter(User.email.in_([lock.email for lock in locks]))}
        return jsonify([
            {
                "id": users[lock.email].id,
                "email": lock.email,
                "name": users[lock.email].name,
                "lockedUntil": lock.until.isoformat(),
                "failedLoginAttempts": lock.failed_attempts,
            }
            for lock in locks if lock.email in users
        ])
    finally:
        session.close()


@bp.route("/unlock-user/<int:user_id>", methods=["POST"])
@superadmin_required
def unlock_user(user_id):
    session = get_db()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        unlock_account(session, user.email, unlocked_by=current_user.id)
        record_event(session, "user_unlocked", user=session.get(User, current_user.id),
                     entity_type="user", details={"userId": user.id, "email": user.email})
        return jsonify({"message": "User unlocked"})
    finally:
        session.close()


@bp.route("/login-attempts")
@superadmin_required
def login_attempts():
    limit = request.args.get("limit", 100, type=int)
    if limit < 1 or limit > MAX_ATTEMPTS_PAGE:
        raise ValidationError(f"limit must be between 1 and {MAX_ATTEMPTS_PAGE}")
    session = get_db()
    try:
        return jsonify([a.to_dict() for a in recent_attempts(session, limit)])
    finally:
        session.close()


@bp.route("/users/<int:user_id>/temporary-password", methods=["POST"])
@superadmin_required
def temporary_password(user_id):
    session = get_db()
    try:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        password = generate_temporary_password(load_security_settings(session))
        user.password_hash = hash_password(password)
        user.must_change_password = True
        session.commit()
        record_event(session, "temporary_password_set", user=session.get(User, current_user.id),
                     entity_type="user", details={"userId": user.id, "email": user.email})
        return jsonify({"temporaryPassword": password})
    finally:
        session.close()
