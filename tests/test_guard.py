"""
Brute-force guard tests.

Tests verify:
1. Sliding-window blocking and when it lifts
2. Successful logins never reset failure history
3. Per-account locking across addresses, and admin unlocks
4. Escalation to a permanent block and its removal
"""
import datetime as dt

from security import guard
from security.guard import (
    is_blocked, list_blocked_ips, locked_accounts, recent_attempts, record_attempt, unblock_ip, unlock_account,
)
from security.models import AccountUnlock, BlockedIp, LoginAttempt
from security.settings import SecuritySettings
from security.utils import utcnow

IP = "203.0.113.7"


def add_failures(db, count, at, ip=IP, email="user@example.com"):
    for i in range(count):
        db.add(LoginAttempt(ip_address=ip, email=email, success=False, created_at=at + dt.timedelta(seconds=i)))
    db.commit()


class TestSlidingWindow:

    def test_not_blocked_below_threshold(self, db):
        settings = SecuritySettings(max_login_attempts=3)
        for _ in range(2):
            record_attempt(db, IP, "user@example.com", False, "pytest", settings)
        assert not is_blocked(db, IP, settings).blocked

    def test_blocked_at_threshold_until_oldest_failure_leaves_window(self, db):
        settings = SecuritySettings(max_login_attempts=3, lockout_minutes=10)
        start = utcnow() - dt.timedelta(minutes=2)
        add_failures(db, 3, start)

        status = is_blocked(db, IP, settings)
        assert status.blocked
        assert status.until == (start + dt.timedelta(minutes=10)).isoformat()
        assert status.reason

    def test_block_lifts_after_window(self, db, monkeypatch):
        settings = SecuritySettings(max_login_attempts=3, lockout_minutes=10)
        start = utcnow()
        add_failures(db, 3, start)
        assert is_blocked(db, IP, settings).blocked

        monkeypatch.setattr(guard, "utcnow", lambda: start + dt.timedelta(minutes=10, seconds=1))
        assert not is_blocked(db, IP, settings).blocked

    def test_success_does_not_reset_failures(self, db):
        settings = SecuritySettings(max_login_attempts=3)
        record_attempt(db, IP, "user@example.com", False, "pytest", settings)
        record_attempt(db, IP, "user@example.com", False, "pytest", settings)
        record_attempt(db, IP, "user@example.com", True, "pytest", settings)
        record_attempt(db, IP, "user@example.com", False, "pytest", settings)
        assert is_blocked(db, IP, settings).blocked
        assert db.query(LoginAttempt).count() == 4

    def test_other_addresses_unaffected(self, db):
        settings = SecuritySettings(max_login_attempts=3)
        add_failures(db, 3, utcnow())
        assert not is_blocked(db, "198.51.100.1", settings).blocked


class TestAccountLocking:

    def test_failures_for_email_across_addresses(self, db):
        settings = SecuritySettings(max_login_attempts=3, lock_accounts=True)
        now = utcnow()
        for i, ip in enumerate(["198.51.100.1", "198.51.100.2", "198.51.100.3"]):
            add_failures(db, 1, now + dt.timedelta(seconds=i), ip=ip)
        assert is_blocked(db, "198.51.100.9", settings, email="user@example.com").blocked

    def test_disabled_by_default(self, db):
        settings = SecuritySettings(max_login_attempts=3)
        now = utcnow()
        for i, ip in enumerate(["198.51.100.1", "198.51.100.2", "198.51.100.3"]):
            add_failures(db, 1, now + dt.timedelta(seconds=i), ip=ip)
        assert not is_blocked(db, "198.51.100.9", settings, email="user@example.com").blocked

    def test_unlock_keeps_history(self, db):
        settings = SecuritySettings(max_login_attempts=3, lock_accounts=True)
        add_failures(db, 3, utcnow() - dt.timedelta(minutes=1), ip="198.51.100.1")
        assert is_blocked(db, "198.51.100.9", settings, email="user@example.com").blocked

        unlock_account(db, "user@example.com", unlocked_by=None)
        assert not is_blocked(db, "198.51.100.9", settings, email="user@example.com").blocked
        assert db.query(LoginAttempt).count() == 3
        assert db.query(AccountUnlock).count() == 1
        # the address window is untouched by an account unlock
        assert is_blocked(db, "198.51.100.1", settings).blocked

    def test_failures_after_unlock_lock_again(self, db):
        settings = SecuritySettings(max_login_attempts=3, lock_accounts=True)
        add_failures(db, 3, utcnow() - dt.timedelta(minutes=2), ip="198.51.100.1")
        unlock_account(db, "user@example.com")
        add_failures(db, 2, utcnow(), ip="198.51.100.2")
        assert not is_blocked(db, "198.51.100.9", settings, email="user@example.com").blocked
        add_failures(db, 1, utcnow(), ip="198.51.100.3")
        assert is_blocked(db, "198.51.100.9", settings, email="user@example.com").blocked

    def test_locked_accounts(self, db):
        settings = SecuritySettings(max_login_attempts=3, lockout_minutes=10, lock_accounts=True)
        start = utcnow() - dt.timedelta(minutes=1)
        add_failures(db, 3, start, ip="198.51.100.1")
        add_failures(db, 2, start, ip="198.51.100.2", email="other@example.com")

        locks = locked_accounts(db, settings)
        assert [(lock.email, lock.failed_attempts) for lock in locks] == [("user@example.com", 3)]
        assert locks[0].until == start + dt.timedelta(minutes=10)

        unlock_account(db, "user@example.com")
        assert locked_accounts(db, settings) == []

    def test_locked_accounts_empty_when_locking_is_off(self, db):
        add_failures(db, 3, utcnow() - dt.timedelta(minutes=1))
        assert locked_accounts(db, SecuritySettings(max_login_attempts=3)) == []


class TestPermanentBlock:

    def test_escalates_after_repeated_failures(self, db):
        settings = SecuritySettings(max_login_attempts=20, permanent_block_attempts=5)
        for _ in range(5):
            record_attempt(db, IP, None, False, "pytest", settings)

        row = db.query(BlockedIp).filter_by(ip_address=IP).one()
        assert row.permanent
        status = is_blocked(db, IP, settings)
        assert status.blocked
        assert status.until == "permanent"

    def test_old_failures_do_not_escalate(self, db):
        settings = SecuritySettings(max_login_attempts=20, permanent_block_attempts=5,
                                    permanent_block_window_hours=24)
        add_failures(db, 4, utcnow() - dt.timedelta(hours=30))
        record_attempt(db, IP, None, False, "pytest", settings)
        assert db.query(BlockedIp).count() == 0

    def test_unblock_removes_row(self, db):
        settings = SecuritySettings(max_login_attempts=20, permanent_block_attempts=5)
        for _ in range(5):
            record_attempt(db, IP, None, False, "pytest", settings)
        assert [b.ip_address for b in list_blocked_ips(db)] == [IP]

        assert unblock_ip(db, IP)
        assert not unblock_ip(db, IP)
        assert list_blocked_ips(db) == []

    def test_expired_temporary_block_is_removed(self, db):
        db.add(BlockedIp(ip_address=IP, blocked_until=utcnow() - dt.timedelta(minutes=1)))
        db.commit()
        assert not is_blocked(db, IP, SecuritySettings()).blocked
        assert db.query(BlockedIp).count() == 0

    def test_active_temporary_block(self, db):
        until = utcnow() + dt.timedelta(minutes=5)
        db.add(BlockedIp(ip_address=IP, blocked_until=until, reason="manual"))
        db.commit()
        assert is_blocked(db, IP, SecuritySettings()) == (True, until.isoformat(), "manual")


def test_recent_attempts_newest_first(db):
    settings = SecuritySettings(max_login_attempts=20)
    add_failures(db, 5, utcnow() - dt.timedelta(minutes=1))
    record_attempt(db, IP, "user@example.com", True, "pytest", settings)
    attempts = recent_attempts(db, limit=3)
    assert len(attempts) == 3
    assert attempts[0].success
