import logging

from sqlalchemy.exc import SQLAlchemyError

from .models import AuditLog
from .utils import client_ip, user_agent

logger = logging.getLogger(__name__)


def record_event(session, action: str, user=None, details=None, entity_type: str = "auth",
                 email: str = None) -> None:
    """Append an audit entry. A failed write is logged and never fails the request."""
    entry = AuditLog(
        user_id=user.id if user is not None else None,
        user_name=(user.name or user.email) if user is not None else (email or ""),
        user_email=user.email if user is not None else (email or ""),
        action=action,
        entity_type=entity_type,
        entity_id=user.id if user is not None else None,
        entity_name=user.email if user is not None else email,
        details=details,
        ip_address=client_ip(),
        user_agent=user_agent(),
    )
    try:
        session.add(entry)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to write audit log entry '%s'", action)
