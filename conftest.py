"""
Shared fixtures: in-memory database, fake push gateway and a controllable clock
"""
from datetime import datetime, timedelta, timezone as dt_timezone
from threading import Lock
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agrinotify.db.session import init_db
from agrinotify.reminders.dispatcher import DispatchClient, DispatchError, DispatchErrorKind

MANILA = ZoneInfo("Asia/Manila")


def manila(year, month, day, hour=0, minute=0) -> datetime:
    """Manila wall clock as a UTC-aware instant."""
    return datetime(year, month, day, hour, minute, tzinfo=MANILA).astimezone(dt_timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Records sends; tokens can be marked dead or flaky."""

    def __init__(self):
        self.sent = []
        self.invalid_tokens = set()
        self.transient_tokens = set()
        self.errors = {}
        self._lock = Lock()

    def __call__(self, token, payload) -> str:
        if token in self.errors:
            raise self.errors[token]
        if token in self.invalid_tokens:
            raise DispatchError(DispatchErrorKind.ENDPOINT_INVALID, code="registration-token-not-registered")
        if token in self.transient_tokens:
            raise ConnectionError("gateway unreachable")
        with self._lock:
            self.sent.append((token, payload))
            return f"msg-{len(self.sent)}"

    def tokens(self):
        return [token for token, _ in self.sent]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    return DispatchClient(transport=gateway)


@pytest.fixture
def clock():
    # Monday 2024-01-01 08:00 Manila
    return FrozenClock(manila(2024, 1, 1, 8, 0))
