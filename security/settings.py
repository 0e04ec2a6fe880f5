"""Global security policy, stored as the ``security`` row of ``app_settings``."""
from dataclasses import dataclass, field, fields, asdict

from .models import AppSetting, role_rank
from .utils import utcnow

SETTINGS_KEY = "security"
ENFORCEMENT_LEVELS = ("disabled", "optional", "required_admins", "required_all")


def _camel(name):
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class SecuritySettings:
    max_login_attempts: int = 3
    lockout_minutes: int = 10
    permanent_block_attempts: int = 10
    permanent_block_window_hours: int = 24
    lock_accounts: bool = False
    two_factor_enforcement: str = "optional"
    two_factor_methods: list = field(default_factory=lambda: ["email", "totp"])
    password_min_length: int = 8
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_numbers: bool = True
    password_require_special: bool = False

    def to_dict(self):
        return {_camel(k): v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data):
        known = {_camel(f.name): f.name for f in fields(cls)}
        return cls(**{known[k]: v for k, v in (data or {}).items() if k in known})


def load_security_settings(session) -> SecuritySettings:
    row = session.query(AppSetting).filter_by(key=SETTINGS_KEY).one_or_none()
    if row is None or not row.value:
        return SecuritySettings()
    return SecuritySettings.from_dict(row.value)


def save_security_settings(session, settings: SecuritySettings) -> SecuritySettings:
    row = session.query(AppSetting).filter_by(key=SETTINGS_KEY).one_or_none()
    if row is None:
        row = AppSetting(key=SETTINGS_KEY)
        session.add(row)
    row.value = settings.to_dict()
    row.updated_at = utcnow()
    session.commit()
    return settings


def two_factor_required(settings: SecuritySettings, role: str) -> bool:
    if settings.two_factor_enforcement == "required_all":
        return True
    if settings.two_factor_enforcement == "required_admins":
        return role_rank(role) >= role_rank("admin")
    return False
