# /scripts/migrate_users_table.py
# Adds the per-method 2FA and account columns to a users table created by an
# older release. Run with the app's venv: python -m scripts.migrate_users_table

import os
import sqlite3

COLUMNS = [
    ("must_change_password", "INTEGER DEFAULT 0 NOT NULL"),
    ("two_factor_enabled", "INTEGER DEFAULT 0 NOT NULL"),
    ("two_factor_method", "TEXT NULL"),
    ("two_factor_email_enabled", "INTEGER DEFAULT 0 NOT NULL"),
    ("two_factor_totp_enabled", "INTEGER DEFAULT 0 NOT NULL"),
    ("two_factor_secret", "TEXT NULL"),
    ("updated_at", "DATETIME NULL"),
    ("last_login_at", "DATETIME NULL"),
]


def column_exists(cur, table, column):
    cur.execute(f"PRAGMA table_info({table});")
    return any(row[1] == column for row in cur.fetchall())


def run(db_path):
    """Add missing columns and return their names. Existing rows keep their
    legacy ``two_factor_enabled``/``two_factor_method`` values, which the
    app still reads when the per-method flags are unset."""
    conn = sqlite3.connect(db_path)
    added = []
    try:
        cur = conn.cursor()
        for name, type_ in COLUMNS:
            if column_exists(cur, "users", name):
                continue
            cur.execute(f"ALTER TABLE users ADD COLUMN {name} {type_};")
            added.append(name)
            print(f"Added column: {name}")
        conn.commit()
    finally:
        conn.close()
    return added


if __name__ == '__main__':
    db_path = os.environ.get('APP_SQLITE_PATH') or os.path.join(os.path.dirname(__file__), '..', 'instance', 'security.sqlite3')
    db_path = os.path.abspath(db_path)
    print(f"Using DB: {db_path}")
    run(db_path)
