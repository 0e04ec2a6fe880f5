from flask import current_app
from werkzeug.security import generate_password_hash, check_password_hash

# Unknown emails are checked against this bogus hash so the response costs
# one full hash comparison either way.
DUMMY_PASSWORD_SALT = "timing-equalizer"
DUMMY_PASSWORD_DIGEST = "0" * 64


def _method():
    return current_app.config["PASSWORD_HASH_METHOD"]


def dummy_password_hash(method: str) -> str:
    return f"{method}${DUMMY_PASSWORD_SALT}${DUMMY_PASSWORD_DIGEST}"


def hash_password(password: str) -> str:
    return generate_password_hash(password, method=_method())


def verify_password(password: str, password_hash: str) -> bool:
    return check_password_hash(password_hash, password)


def dummy_password_check(password: str) -> bool:
    """Spend the same work as a real check; never succeeds."""
    check_password_hash(dummy_password_hash(_method()), password)
    return False
