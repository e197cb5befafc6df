"""
auth/throttle.py -- Per-identifier login failure counting and temporary lockout.

This is the account-level brake. It is keyed by the login identifier (the
lowercased email), so it stops password guessing against one account even
when the attacker rotates IP addresses. The per-IP brake lives in api/limiter.py
(slowapi) and is independent of this one.

Policy (defaults from core/config.py):
  - 5 failures inside a 15-minute window block the identifier for 15 minutes.
  - Failures older than the window no longer count toward the threshold.
  - A successful login clears the record.
  - Once a block has elapsed the record is cleared and counting restarts at 0.

Storage is pluggable through the AttemptStore protocol:
  InMemoryAttemptStore  -- process-local dict, lost on restart. With more than
                           one worker or instance the effective threshold is
                           multiplied by the instance count.
  DatabaseAttemptStore  -- SQLAlchemy table shared by every instance that
                           points at the same DATABASE_URL.

Concurrency: InMemoryAttemptStore serializes updates through a fixed pool of
locks. A key always maps to the same lock, and locks are never discarded, so
concurrent failures for one identifier never lose an increment, even across a
clear().
DatabaseAttemptStore does the increment inside a single transaction.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table
from sqlalchemy.engine import Engine

from auth.errors import AccountBlocked
from auth.models import LoginAttempt, utcnow
from auth.notifier import redact_email
from auth.store import make_engine

logger = logging.getLogger("tenantgate.auth.throttle")


class AttemptStore(Protocol):
    def get(self, key: str) -> LoginAttempt | None: ...

    def increment(self, key: str, now: datetime, window: timedelta) -> LoginAttempt:
        """Count one failure and return the updated record.

        If the previous failure is older than window the count restarts at 1.
        """
        ...

    def block(self, key: str, until: datetime) -> None: ...

    def clear(self, key: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryAttemptStore:
    """Process-local attempt records guarded by striped locks."""

    def __init__(self, stripes: int = 64) -> None:
        self._records: dict[str, LoginAttempt] = {}
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def get(self, key: str) -> LoginAttempt | None:
        return self._records.get(key)

    def increment(self, key: str, now: datetime, window: timedelta) -> LoginAttempt:
        with self._lock_for(key):
            current = self._records.get(key)
            if current is None or now - current.last_attempt > window:
                updated = LoginAttempt(key=key, attempts=1, last_attempt=now)
            else:
                updated = LoginAttempt(
                    key=key,
                    attempts=current.attempts + 1,
                    last_attempt=now,
                    blocked_until=current.blocked_until,
                )
            self._records[key] = updated
            return updated

    def block(self, key: str, until: datetime) -> None:
        with self._lock_for(key):
            current = self._records.get(key)
            if current is None:
                current = LoginAttempt(key=key, attempts=0, last_attempt=utcnow())
            self._records[key] = LoginAttempt(
                key=key,
                attempts=current.attempts,
                last_attempt=current.last_attempt,
                blocked_until=until,
            )

    def clear(self, key: str) -> None:
        with self._lock_for(key):
            self._records.pop(key, None)


# ---------------------------------------------------------------------------
# Database store
# ---------------------------------------------------------------------------

_metadata = MetaData()

_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("key", String(255), primary_key=True),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("last_attempt", String(32), nullable=False),
    Column("blocked_until", String(32)),
)


class DatabaseAttemptStore:
    """Attempt records in a login_attempts table, shared across instances."""

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def get(self, key: str) -> LoginAttempt | None:
        with self.engine.connect() as conn:
            row = conn.execute(_login_attempts.select().where(_login_attempts.c.key == key)).fetchone()
        return _row_to_attempt(row) if row is not None else None

    def increment(self, key: str, now: datetime, window: timedelta) -> LoginAttempt:
        with self.engine.connect() as conn:
            row = conn.execute(_login_attempts.select().where(_login_attempts.c.key == key)).fetchone()
            if row is None:
                updated = LoginAttempt(key=key, attempts=1, last_attempt=now)
                conn.execute(
                    _login_attempts.insert().values(key=key, attempts=1, last_attempt=now.isoformat())
                )
            else:
                current = _row_to_attempt(row)
                if now - current.last_attempt > window:
                    stmt = _login_attempts.update().values(
                        attempts=1, last_attempt=now.isoformat(), blocked_until=None
                    )
                else:
                    # Increment in SQL so two writers on one key cannot both read N and write N+1.
                    stmt = _login_attempts.update().values(
                        attempts=_login_attempts.c.attempts + 1, last_attempt=now.isoformat()
                    )
                conn.execute(stmt.where(_login_attempts.c.key == key))
                stored = conn.execute(
                    _login_attempts.select().where(_login_attempts.c.key == key)
                ).fetchone()
                updated = _row_to_attempt(stored)
            conn.commit()
        return updated

    def block(self, key: str, until: datetime) -> None:
        with self.engine.connect() as conn:
            result = conn.execute(
                _login_attempts.update()
                .where(_login_attempts.c.key == key)
                .values(blocked_until=until.isoformat())
            )
            if result.rowcount == 0:
                conn.execute(
                    _login_attempts.insert().values(
                        key=key, attempts=0, last_attempt=utcnow().isoformat(), blocked_until=until.isoformat()
                    )
                )
            conn.commit()

    def clear(self, key: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_login_attempts.delete().where(_login_attempts.c.key == key))
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        key=row.key,
        attempts=row.attempts,
        last_attempt=datetime.fromisoformat(row.last_attempt),
        blocked_until=datetime.fromisoformat(row.blocked_until) if row.blocked_until else None,
    )


# ---------------------------------------------------------------------------
# Throttle policy
# ---------------------------------------------------------------------------


class LoginThrottle:
    """Applies the lockout policy on top of an AttemptStore.

    Usage:
        throttle = LoginThrottle(InMemoryAttemptStore())
        throttle.check(email)            # raises AccountBlocked while locked
        throttle.record_failure(email)   # after a bad password
        throttle.record_success(email)   # after a good one
    """

    def __init__(
        self,
        store: AttemptStore,
        max_attempts: int = 5,
        block_minutes: int = 15,
        window_minutes: int = 15,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.block_duration = timedelta(minutes=block_minutes)
        self.window = timedelta(minutes=window_minutes)

    @staticmethod
    def _key(identifier: str) -> str:
        return identifier.strip().lower()

    def check(self, identifier: str, now: datetime | None = None) -> None:
        """Raise AccountBlocked if the identifier is currently locked out."""
        key = self._key(identifier)
        now = now or utcnow()
        record = self.store.get(key)
        if record is None or record.blocked_until is None:
            return
        if record.is_blocked(now):
            raise AccountBlocked((record.blocked_until - now).total_seconds())
        # Block elapsed: start over.
        self.store.clear(key)

    def record_failure(self, identifier: str, now: datetime | None = None) -> LoginAttempt:
        key = self._key(identifier)
        now = now or utcnow()
        record = self.store.increment(key, now, self.window)
        if record.attempts >= self.max_attempts and not record.is_blocked(now):
            until = now + self.block_duration
            self.store.block(key, until)
            logger.warning("Login blocked for %s after %d failed attempts", redact_email(key), record.attempts)
            record = LoginAttempt(key=key, attempts=record.attempts, last_attempt=now, blocked_until=until)
        return record

    def record_success(self, identifier: str) -> None:
        self.store.clear(self._key(identifier))

    def remaining_attempts(self, identifier: str) -> int:
        record = self.store.get(self._key(identifier))
        if record is None:
            return self.max_attempts
        return max(0, self.max_attempts - record.attempts)
