"""In-process registry of partially authenticated logins.

An entry exists between a correct password and a verified second factor
(purpose ``verify``) or a completed forced 2FA enrollment (purpose
``setup``). Entries never grant access on their own. The registry lives in
one process; a multi-instance deployment needs a shared TTL store instead.
"""
import logging
import secrets
import threading
import time
from dataclasses import dataclass, replace
from typing import Optional

logger = logging.getLogger(__name__)

PURPOSES = ("verify", "setup")


@dataclass(frozen=True)
class PendingSession:
    token: str
    user_id: int
    email: str
    name: str
    role: str
    purpose: str
    created_at: float
    expires_at: float
    extensions: int = 0


class ExtensionRefused(Exception):
    """The session may not be extended any further."""


class PendingSessionRegistry:

    def __init__(self, verify_ttl=300, setup_ttl=900, verify_ceiling=900, setup_ceiling=1800,
                 max_extensions=5, clock=time.time):
        self._ttl = {"verify": verify_ttl, "setup": setup_ttl}
        self._ceiling = {"verify": verify_ceiling, "setup": setup_ceiling}
        self.max_extensions = max_extensions
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def ttl(self, purpose):
        return self._ttl[purpose]

    def create(self, user, purpose: str) -> PendingSession:
        if purpose not in PURPOSES:
            raise ValueError(f"Unknown pending session purpose: {purpose}")
        now = self._clock()
        entry = PendingSession(
            token=secrets.token_hex(32),
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            purpose=purpose,
            created_at=now,
            expires_at=now + self._ttl[purpose],
        )
        self.put(entry)
        return entry

    def put(self, entry: PendingSession) -> None:
        with self._lock:
            if entry.token in self._entries:
                raise KeyError("Pending session token already in use")
            self._entries[entry.token] = entry

    def get(self, token: str, purpose: Optional[str] = None) -> Optional[PendingSession]:
        """Live entry for ``token``; expired entries are removed on access."""
        if not token:
            return None
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[token]
                return None
        if purpose is not None and entry.purpose != purpose:
            return None
        return entry

    def delete(self, token: str) -> bool:
        """Remove ``token``; False when it was already gone."""
        with self._lock:
            return self._entries.pop(token, None) is not None

    def extend(self, token: str) -> PendingSession:
        """Push expiry back to the nominal TTL, bounded by the purpose ceiling
        measured from creation and by ``max_extensions``."""
        with self._lock:
            entry = self._entries.get(token)
            now = self._clock()
            if entry is None or entry.expires_at <= now:
                self._entries.pop(token, None)
                raise KeyError("Pending session expired")
            if entry.extensions >= self.max_extensions:
                raise ExtensionRefused("Pending session cannot be extended further")
            ceiling = entry.created_at + self._ceiling[entry.purpose]
            expires_at = max(entry.expires_at, min(now + self._ttl[entry.purpose], ceiling))
            entry = replace(entry, expires_at=expires_at, extensions=entry.extensions + 1)
            self._entries[token] = entry
            return entry

    def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [token for token, entry in self._entries.items() if entry.expires_at <= now]
            for token in expired:
                del self._entries[token]
        if expired:
            logger.debug("Evicted %d expired pending sessions", len(expired))
        return len(expired)


class PendingSessionSweeper:
    """Periodic eviction of abandoned pending sessions, with explicit start/stop."""

    def __init__(self, registry: PendingSessionRegistry, interval: float):
        self.registry = registry
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="pending-session-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.registry.sweep()
            except Exception:
                logger.exception("Pending session sweep failed")
