import datetime as dt
from functools import wraps

from flask import request
from flask_login import current_user, login_required

from .errors import Forbidden


def utcnow():
    """Naive UTC timestamp, the format every table stores."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def client_ip():
    return request.remote_addr or "unknown"


def user_agent():
    return request.headers.get("User-Agent", "unknown")[:255]


def roles_required(*roles):
    def decorator(f):
        @wraps(f)
        @login_required
        def wrapper(*args, **kwargs):
            if current_user.role not in roles:
                raise Forbidden("Insufficient permissions")
            return f(*args, **kwargs)
        return wrapper
    return decorator


superadmin_required = roles_required("superadmin")
