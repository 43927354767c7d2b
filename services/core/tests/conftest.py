"""Pytest configuration and fixtures for Cafe Manager Core tests.

This module provides fixtures for:
- Database: SQLite in-memory sessions
- Settings: safe defaults with a fresh encryption key
- Redis: an in-memory fake covering strings, lists and sorted sets
"""

import math
import time
from collections.abc import Generator
from typing import Any, Optional

import pytest
from redis.exceptions import WatchError
from sqlalchemy import StaticPool, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from cafe_core.config import Settings
from cafe_core.domain.models import Base


# -----------------------------------------------------------------------------
# Test Settings
# -----------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings with safe defaults."""
    from cafe_core.infrastructure.crypto import CryptoService

    return Settings(
        mysql_url="sqlite+pysqlite:///:memory:",
        redis_url="redis://localhost:6379/15",  # Use DB 15 for tests
        profiles_path=str(tmp_path / "profiles"),
        screenshots_path=str(tmp_path / "screenshots"),
        artifacts_path=str(tmp_path / "artifacts"),
        encryption_key=CryptoService.generate_key(),
        manual_login_timeout_seconds=1,
        manual_login_poll_seconds=0.1,
    )


# -----------------------------------------------------------------------------
# Synchronous Database Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def sync_engine():
    """Create a synchronous SQLite in-memory engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    # SQLite only autoincrements INTEGER PRIMARY KEY; compile BIGINT as INTEGER
    from sqlalchemy.dialects import sqlite

    original_visit = sqlite.dialect.type_compiler_cls.visit_BIGINT
    sqlite.dialect.type_compiler_cls.visit_BIGINT = lambda self, type_, **kw: "INTEGER"

    Base.metadata.create_all(bind=engine)

    sqlite.dialect.type_compiler_cls.visit_BIGINT = original_visit

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sync_session_factory(sync_engine) -> sessionmaker[Session]:
    """Create a synchronous session factory."""
    return sessionmaker(
        bind=sync_engine,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
def db_session(sync_session_factory) -> Generator[Session, None, None]:
    """Create a synchronous database session for testing."""
    session = sync_session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# -----------------------------------------------------------------------------
# Redis Fake
# -----------------------------------------------------------------------------


def _parse_score(value: Any) -> tuple[float, bool]:
    """Parse a sorted-set bound into (score, exclusive)."""
    if isinstance(value, str):
        if value == "-inf":
            return -math.inf, False
        if value == "+inf":
            return math.inf, False
        if value.startswith("("):
            return float(value[1:]), True
        return float(value), False
    return float(value), False


def _in_range(score: float, low: Any, high: Any) -> bool:
    low_value, low_exclusive = _parse_score(low)
    high_value, high_exclusive = _parse_score(high)
    above = score > low_value if low_exclusive else score >= low_value
    below = score < high_value if high_exclusive else score <= high_value
    return above and below


class FakePipeline:
    """Queues commands and runs them on execute()."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._commands: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        def queue(*args: Any, **kwargs: Any) -> "FakePipeline":
            self._commands.append((name, args, kwargs))
            return self

        return queue

    def execute(self) -> list[Any]:
        results = [getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in self._commands]
        self._commands = []
        return results


class FakeTransaction:
    """WATCH/MULTI pipeline: reads run now, writes queue until execute().

    execute() raises WatchError if a watched key was written since the
    transaction started.
    """

    def __init__(self, redis: "FakeRedis", watches: tuple[str, ...]):
        self._redis = redis
        self._watched = {key: redis.versions.get(key, 0) for key in watches}
        self._queued = FakePipeline(redis)
        self._in_multi = False

    def multi(self) -> None:
        self._in_multi = True

    def __getattr__(self, name: str):
        if self._in_multi:
            return getattr(self._queued, name)
        return getattr(self._redis, name)

    def execute(self) -> list[Any]:
        if any(self._redis.versions.get(key, 0) != version for key, version in self._watched.items()):
            raise WatchError("Watched variable changed.")
        return self._queued.execute()


class FakeRedis:
    """In-memory stand-in for a decode_responses=True redis-py client."""

    def __init__(self):
        self.strings: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.expirations: dict[str, int] = {}
        # Write counter per key, for WATCH
        self.versions: dict[str, int] = {}
        self.closed = False

    # Keys

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._touch(key)
            for store in (self.strings, self.lists, self.zsets):
                if key in store:
                    del store[key]
                    removed += 1
            self.expirations.pop(key, None)
        return removed

    def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.strings or key in self.lists or key in self.zsets)

    def expire(self, key: str, seconds: int) -> bool:
        self.expirations[key] = seconds
        return True

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)

    def transaction(self, func: Any, *watches: str, value_from_callable: bool = False, **kwargs: Any) -> Any:
        while True:
            pipe = FakeTransaction(self, watches)
            try:
                value = func(pipe)
                results = pipe.execute()
            except WatchError:
                continue
            return value if value_from_callable else results

    def _touch(self, key: str) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1

    def close(self) -> None:
        self.closed = True

    # Strings

    def get(self, key: str) -> Optional[str]:
        return self.strings.get(key)

    def mget(self, keys: list[str]) -> list[Optional[str]]:
        return [self.strings.get(key) for key in keys]

    def set(self, key: str, value: Any) -> bool:
        self._touch(key)
        self.strings[key] = str(value)
        return True

    def setex(self, key: str, seconds: int, value: Any) -> bool:
        self._touch(key)
        self.strings[key] = str(value)
        self.expirations[key] = seconds
        return True

    def incr(self, key: str, amount: int = 1) -> int:
        self._touch(key)
        value = int(self.strings.get(key, 0)) + amount
        self.strings[key] = str(value)
        return value

    def decr(self, key: str, amount: int = 1) -> int:
        return self.incr(key, -amount)

    # Lists

    def lpush(self, key: str, *values: Any) -> int:
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, str(value))
        return len(items)

    def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    # Sorted sets

    def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        return sum(1 for member in members if zset.pop(member, None) is not None)

    def zscore(self, key: str, member: str) -> Optional[float]:
        return self.zsets.get(key, {}).get(member)

    def zcount(self, key: str, low: Any, high: Any) -> int:
        return sum(1 for score in self.zsets.get(key, {}).values() if _in_range(score, low, high))

    def zrangebyscore(self, key: str, low: Any, high: Any) -> list[str]:
        items = sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))
        return [member for member, score in items if _in_range(score, low, high)]

    def zremrangebyscore(self, key: str, low: Any, high: Any) -> int:
        members = self.zrangebyscore(key, low, high)
        return self.zrem(key, *members) if members else 0


@pytest.fixture
def fake_redis() -> FakeRedis:
    """In-memory Redis for heartbeat, counter and rate limiter tests."""
    return FakeRedis()


class FakeClock:
    """Settable time source in seconds."""

    def __init__(self, now: Optional[float] = None):
        self.now = now if now is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(1_700_000_000.0)


# -----------------------------------------------------------------------------
# Cleanup Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the settings cache before each test."""
    from cafe_core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_metrics():
    """Reset the process-wide metrics collector between tests."""
    from cafe_core.observability import get_collector

    get_collector().reset()
    yield
    get_collector().reset()
