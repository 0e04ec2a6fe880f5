"""
Password reset tests.

Tests verify:
1. Forgot-password answers identically for known and unknown emails
2. Reset tokens are single-use and expire
3. The new password must satisfy the policy
4. Reset mail delivery never holds the response
"""
import datetime as dt
import re
import threading
import time

from security import get_db, mail
from security.models import PasswordResetToken, User
from security.passwords import hash_password
from security.utils import utcnow

from helpers import PASSWORD, login


def request_reset(client, outbox, email="user@example.com"):
    resp = client.post("/forgot-password", json={"email": email})
    assert resp.status_code == 200
    return re.search(r"token=([0-9a-f]+)", outbox[-1].body).group(1)


class TestForgotPassword:

    def test_identical_response_for_unknown_email(self, client, make_user, outbox):
        make_user()
        known = client.post("/forgot-password", json={"email": "user@example.com"})
        unknown = client.post("/forgot-password", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.get_data() == unknown.get_data()
        assert len(outbox) == 1

    def test_mail_is_delivered_after_the_response(self, make_app, monkeypatch):
        app = make_app(MAIL_ASYNC=True)
        with app.app_context():
            session = get_db()
            session.add(User(email="user@example.com", name="Test User", password_hash=hash_password(PASSWORD)))
            session.commit()
            session.close()
        release = threading.Event()
        delivered = []

        def slow_send(msg):
            release.wait(5)
            delivered.append(msg)

        monkeypatch.setattr(mail, "send", slow_send)
        resp = app.test_client().post("/forgot-password", json={"email": "user@example.com"})
        assert resp.status_code == 200
        assert delivered == []

        release.set()
        for _ in range(100):
            if delivered:
                break
            time.sleep(0.05)
        assert delivered[0].recipients == ["user@example.com"]

    def test_email_links_to_frontend(self, client, make_user, outbox):
        make_user()
        client.post("/forgot-password", json={"email": "user@example.com"})
        assert "https://panel.example.com/reset-password?token=" in outbox[0].body


class TestResetPassword:

    def test_reset_and_login(self, client, make_user, outbox):
        make_user()
        token = request_reset(client, outbox)
        resp = client.post("/reset-password", json={"token": token, "password": "Brandnew456"})
        assert resp.status_code == 200
        assert login(client, password="Brandnew456").status_code == 200
        assert login(client).status_code == 401

    def test_token_is_single_use(self, client, make_user, outbox):
        make_user()
        token = request_reset(client, outbox)
        assert client.post("/reset-password", json={"token": token, "password": "Brandnew456"}).status_code == 200
        resp = client.post("/reset-password", json={"token": token, "password": "Another789"})
        assert resp.status_code == 401
        assert resp.get_json()["kind"] == "SessionExpired"

    def test_expired_token(self, app, client, make_user, outbox):
        make_user()
        token = request_reset(client, outbox)
        with app.app_context():
            session = get_db()
            record = session.query(PasswordResetToken).filter_by(token=token).one()
            record.expires_at = utcnow() - dt.timedelta(seconds=1)
            session.commit()
            session.close()
        resp = client.post("/reset-password", json={"token": token, "password": "Brandnew456"})
        assert resp.status_code == 401

    def test_unknown_token(self, client):
        resp = client.post("/reset-password", json={"token": "deadbeef", "password": "Brandnew456"})
        assert resp.get_json()["kind"] == "SessionExpired"

    def test_policy_failure_keeps_token(self, client, make_user, outbox):
        make_user()
        token = request_reset(client, outbox)
        resp = client.post("/reset-password", json={"token": token, "password": "short"})
        assert resp.status_code == 400
        assert resp.get_json()["kind"] == "ValidationError"
        assert client.post("/reset-password", json={"token": token, "password": "Brandnew456"}).status_code == 200

    def test_non_string_password_is_a_validation_error(self, client, make_user, outbox):
        make_user()
        token = request_reset(client, outbox)
        resp = client.post("/reset-password", json={"token": token, "password": 12345678})
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["kind"] == "ValidationError"
        assert [d["field"] for d in body["details"]] == ["password"]
        assert client.post("/reset-password", json={"token": token, "password": "Brandnew456"}).status_code == 200

    def test_clears_must_change_password(self, client, make_user, fetch_user, outbox):
        user = make_user(must_change_password=True)
        token = request_reset(client, outbox)
        client.post("/reset-password", json={"token": token, "password": "Brandnew456"})
        assert not fetch_user(user.id).must_change_password
