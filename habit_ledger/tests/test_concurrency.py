"""
Concurrency tests on a file-backed SQLite database.

Each worker uses its own session, like concurrent API requests.
"""
import threading
import pytest
from datetime import timedelta

from sqlalchemy.orm import sessionmaker

from habit_ledger.database import Base, create_db_engine
from habit_ledger.exceptions import (
    DuplicateCompletionException,
    HabitLedgerException,
    InsufficientTokensException,
)
from habit_ledger.models import Completion, ForgivenessGrant, Habit, User
from habit_ledger.repositories.ledger_repository import XPTransactionRepository
from habit_ledger.services.event_service import EventBus
from habit_ledger.services.habit_service import HabitService

WORKERS = 6


@pytest.fixture
def file_sessionmaker(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def race(make_session, action):
    """Run action(service) in WORKERS threads at once, collect outcomes"""
    barrier = threading.Barrier(WORKERS)
    outcomes = []
    lock = threading.Lock()

    def worker():
        session = make_session()
        try:
            barrier.wait()
            try:
                action(HabitService(session, bus=EventBus()))
                outcome = "ok"
            except HabitLedgerException as e:
                outcome = e
        finally:
            session.close()
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(WORKERS)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


class TestConcurrentRequests:
    def test_last_token_spent_once(self, file_sessionmaker, clock):
        setup = file_sessionmaker()
        user = User(name="Racer", forgiveness_tokens=1)
        setup.add(user)
        setup.flush()
        habits = [Habit(user_id=user.id, name=f"Habit {n}") for n in range(WORKERS)]
        setup.add_all(habits)
        setup.commit()
        user_id = user.id
        habit_ids = iter([h.id for h in habits])
        setup.close()

        yesterday = clock.today - timedelta(days=1)
        ids_lock = threading.Lock()

        def spend(service):
            with ids_lock:
                habit_id = next(habit_ids)
            service.use_forgiveness_token(user_id, habit_id, yesterday)

        outcomes = race(file_sessionmaker, spend)

        assert outcomes.count("ok") == 1
        failures = [o for o in outcomes if o != "ok"]
        assert all(isinstance(o, InsufficientTokensException) for o in failures)

        check = file_sessionmaker()
        try:
            assert check.get(User, user_id).forgiveness_tokens == 0
            assert check.query(ForgivenessGrant).count() == 1
            assert check.query(Completion).filter(Completion.forgiveness_used == True).count() == 1
        finally:
            check.close()

    def test_identical_completions_credit_once(self, file_sessionmaker, clock):
        setup = file_sessionmaker()
        user = User(name="Racer")
        setup.add(user)
        setup.flush()
        habit = Habit(user_id=user.id, name="Read")
        setup.add(habit)
        setup.commit()
        user_id, habit_id = user.id, habit.id
        setup.close()

        outcomes = race(file_sessionmaker, lambda service: service.complete_habit(user_id, habit_id))

        assert outcomes.count("ok") == 1
        failures = [o for o in outcomes if o != "ok"]
        assert all(isinstance(o, DuplicateCompletionException) for o in failures)

        check = file_sessionmaker()
        try:
            assert check.query(Completion).filter(Completion.habit_id == habit_id).count() == 1
            stored = check.get(User, user_id)
            assert stored.total_xp == 15
            assert stored.total_xp == XPTransactionRepository.sum_for_user(check, user_id)
        finally:
            check.close()
