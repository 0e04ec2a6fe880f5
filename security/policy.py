import re
import secrets
import string
from typing import List, NamedTuple

from .settings import SecuritySettings
from .passwords import verify_password

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")

CURRENT_PASSWORD_INCORRECT = "Current password is incorrect"
PASSWORD_UNCHANGED = "New password must be different from current"


class PolicyResult(NamedTuple):
    valid: bool
    errors: List[str]


def validate_password(password: str, settings: SecuritySettings) -> PolicyResult:
    errors = []
    if len(password) < settings.password_min_length:
        errors.append(f"Password must be at least {settings.password_min_length} characters")
    if settings.password_require_uppercase and not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if settings.password_require_lowercase and not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if settings.password_require_numbers and not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if settings.password_require_special and not _SPECIAL_RE.search(password):
        errors.append("Password must contain at least one special character")
    return PolicyResult(not errors, errors)


def validate_password_change(current_hash: str, current_password: str, new_password: str,
                             settings: SecuritySettings) -> PolicyResult:
    """Policy check for a change: the caller must know the current password
    and the new one must differ from it."""
    if not verify_password(current_password, current_hash):
        return PolicyResult(False, [CURRENT_PASSWORD_INCORRECT])
    result = validate_password(new_password, settings)
    errors = list(result.errors)
    if verify_password(new_password, current_hash):
        errors.append(PASSWORD_UNCHANGED)
    return PolicyResult(not errors, errors)


def generate_temporary_password(settings: SecuritySettings) -> str:
    length = max(settings.password_min_length, 12)
    pools = []
    if settings.password_require_uppercase:
        pools.append(string.ascii_uppercase)
    if settings.password_require_lowercase:
        pools.append(string.ascii_lowercase)
    if settings.password_require_numbers:
        pools.append(string.digits)
    if settings.password_require_special:
        pools.append("!@#$%^&*")
    if not pools:
        pools = [string.ascii_letters + string.digits]

    # one character from every required class, the rest from the union
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
