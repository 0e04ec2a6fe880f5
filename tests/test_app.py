"""
Application wiring tests: service routes, rate limits, error rendering, migration.
"""
import sqlite3

from scripts.migrate_users_table import COLUMNS, run as migrate_users_table


class TestServiceRoutes:

    def test_index(self, client):
        assert client.get("/").get_json()["status"] == "ok"

    def test_health(self, client):
        assert client.get("/health").get_json() == {"status": "ok", "database": "ok"}

    def test_unknown_route_is_json(self, client):
        resp = client.get("/does-not-exist")
        assert resp.status_code == 404
        assert resp.get_json()["kind"] == "NotFound"


class TestRateLimits:

    def test_forgot_password_limit(self, make_app):
        client = make_app(RATELIMIT_ENABLED=True).test_client()
        for _ in range(3):
            assert client.post("/forgot-password", json={"email": "a@example.com"}).status_code == 200
        resp = client.post("/forgot-password", json={"email": "a@example.com"})
        assert resp.status_code == 429
        assert resp.get_json()["kind"] == "RateLimited"

    def test_verify_limit_runs_before_handler(self, make_app):
        client = make_app(RATELIMIT_ENABLED=True).test_client()
        for _ in range(5):
            client.post("/login/verify-2fa", json={})
        resp = client.post("/login/verify-2fa", json={})
        # an invalid body would otherwise be a 400
        assert resp.status_code == 429

    def test_disabled_by_config(self, client):
        for _ in range(5):
            assert client.post("/forgot-password", json={"email": "a@example.com"}).status_code == 200


class TestMigrateUsersTable:

    def test_adds_missing_columns(self, tmp_path):
        path = tmp_path / "legacy.sqlite3"
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT, password_hash TEXT, "
                     "two_factor_enabled INTEGER DEFAULT 0 NOT NULL, two_factor_method TEXT)")
        conn.execute("INSERT INTO users (email, password_hash, two_factor_enabled, two_factor_method) "
                     "VALUES ('old@example.com', 'x', 1, 'totp')")
        conn.commit()
        conn.close()

        added = migrate_users_table(str(path))
        assert "two_factor_totp_enabled" in added
        assert "two_factor_enabled" not in added
        assert migrate_users_table(str(path)) == []

        conn = sqlite3.connect(path)
        columns = {row[1] for row in conn.execute("PRAGMA table_info(users)")}
        row = conn.execute("SELECT two_factor_method, two_factor_totp_enabled FROM users").fetchone()
        conn.close()
        assert {name for name, _ in COLUMNS} <= columns
        assert row == ("totp", 0)
