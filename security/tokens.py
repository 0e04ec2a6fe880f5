import secrets

from flask import current_app
from itsdangerous import URLSafeTimedSerializer, BadData


def _serializer():
    return URLSafeTimedSerializer(secret_key=current_app.config["SECRET_KEY"], salt="session")


def issue_session_token(user) -> str:
    return _serializer().dumps({"uid": user.id, "email": user.email, "role": user.role})


def load_session_token(token: str):
    try:
        payload = _serializer().loads(token, max_age=current_app.config["SESSION_TOKEN_MAX_AGE"])
    except BadData:
        return None
    if not isinstance(payload, dict) or "uid" not in payload:
        return None
    return payload


def new_reset_token() -> str:
    return secrets.token_hex(32)
