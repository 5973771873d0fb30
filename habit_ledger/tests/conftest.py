"""
Shared fixtures: in-memory database, a controllable clock and factories.
"""
import os
import tempfile

# Configure before any habit_ledger import reads the environment
os.environ.setdefault("HABIT_LEDGER_DATABASE_URL", "sqlite://")
os.environ.setdefault("HABIT_LEDGER_LOG_DIR", os.path.join(tempfile.gettempdir(), "habit-ledger-test-logs"))

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from habit_ledger.constants import FREQUENCY_CUSTOM, FREQUENCY_DAILY
from habit_ledger.database import Base
from habit_ledger.models import Habit, User
from habit_ledger.services import date_service
from habit_ledger.services.date_service import DateService
from habit_ledger.services.event_service import EventBus
from habit_ledger.services.habit_service import HabitService

# Wednesday
DEFAULT_NOW = datetime(2026, 3, 18, 12, 0, 0)


class Clock:
    """Replaces date_service.utcnow so "today" is deterministic"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def set_day(self, day: date, hour: int = 12) -> None:
        self.now = datetime(day.year, day.month, day.day, hour, 0, 0)

    def advance(self, days: int = 0, hours: int = 0) -> None:
        self.now = self.now + timedelta(days=days, hours=hours)

    @property
    def today(self) -> date:
        return self.now.date()


@pytest.fixture
def clock(monkeypatch):
    fake = Clock(DEFAULT_NOW)
    monkeypatch.setattr(date_service, "utcnow", fake)
    return fake


@pytest.fixture
def today(clock):
    return clock.today


@pytest.fixture
def yesterday(clock):
    return clock.today - timedelta(days=1)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def events():
    """Event bus that records everything published"""
    bus = EventBus()
    bus.received = []
    for event_type in (
        "HABIT_COMPLETED", "FORGIVENESS_USED", "XP_GAINED", "LEVEL_UP",
        "FORGIVENESS_ABUSE_FLAGGED",
    ):
        bus.subscribe(event_type, bus.received.append)
    return bus


@pytest.fixture
def service(db_session, events, clock):
    return HabitService(db_session, bus=events)


@pytest.fixture
def make_user(db_session):
    def _make_user(name="Alex", timezone="UTC", tokens=3, auto_forgiveness=True, total_xp=0, level=1):
        user = User(
            name=name,
            timezone=timezone,
            forgiveness_tokens=tokens,
            auto_forgiveness_enabled=auto_forgiveness,
            total_xp=total_xp,
            level=level,
        )
        db_session.add(user)
        db_session.commit()
        return user
    return _make_user


@pytest.fixture
def make_habit(db_session):
    def _make_habit(user, name="Read", frequency=FREQUENCY_DAILY, days_of_week=None, active=True, archived=False):
        habit = Habit(
            user_id=user.id,
            name=name,
            frequency=frequency,
            days_of_week=DateService.serialize_days_of_week(days_of_week) if frequency == FREQUENCY_CUSTOM else None,
            active=active,
            archived=archived,
        )
        db_session.add(habit)
        db_session.commit()
        return habit
    return _make_habit


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def habit(make_habit, user):
    return make_habit(user)


@pytest.fixture
def complete_on(service, clock):
    """Complete a habit on a past (or current) day by moving the clock there"""
    def _complete_on(user, habit, day):
        saved = clock.now
        clock.set_day(day)
        try:
            return service.complete_habit(user.id, habit.id)
        finally:
            clock.set(saved)
    return _complete_on
