import secrets

from flask import current_app
from sqlalchemy import update
from werkzeug.security import generate_password_hash, check_password_hash

from .models import BackupCode
from .utils import utcnow

BACKUP_CODE_COUNT = 10


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in str(code or "") if ch not in " -").upper()


def generate_backup_codes(session, user_id: int, count: int = BACKUP_CODE_COUNT) -> list:
    """Replace the user's backup codes with a fresh batch.

    Only salted hashes are stored; the plaintext codes are returned once.
    The old set is deleted in the same transaction that inserts the new one.
    """
    method = current_app.config["BACKUP_CODE_HASH_METHOD"]
    codes = [secrets.token_hex(4).upper() for _ in range(count)]
    session.query(BackupCode).filter_by(user_id=user_id).delete()
    session.add_all(BackupCode(user_id=user_id, code_hash=generate_password_hash(code, method=method))
                    for code in codes)
    session.commit()
    return codes


def verify_backup_code(session, user_id: int, code: str) -> bool:
    candidate = normalize_backup_code(code)
    if not candidate:
        return False
    unused = session.query(BackupCode).filter_by(user_id=user_id, used_at=None).all()
    match = None
    # every hash is checked so timing does not reveal the position of a match
    for stored in unused:
        if check_password_hash(stored.code_hash, candidate) and match is None:
            match = stored
    if match is None:
        return False
    result = session.execute(
        update(BackupCode)
        .where(BackupCode.id == match.id, BackupCode.used_at.is_(None))
        .values(used_at=utcnow())
    )
    session.commit()
    return result.rowcount == 1


def remaining_backup_codes(session, user_id: int) -> int:
    return session.query(BackupCode).filter_by(user_id=user_id, used_at=None).count()


def delete_backup_codes(session, user_id: int) -> None:
    session.query(BackupCode).filter_by(user_id=user_id).delete()
    session.commit()
