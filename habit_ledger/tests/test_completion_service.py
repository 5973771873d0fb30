"""
Tests for the completion ledger.

Tests cover:
1. Normal completions and their XP
2. One completion per habit per day
3. Date and schedule validation
4. Habit deletion with XP refund
5. Read helpers
"""
import pytest
from datetime import date, datetime, timedelta

from habit_ledger.exceptions import (
    DuplicateCompletionException,
    HabitInactiveException,
    HabitNotFoundException,
    HabitNotScheduledException,
    InvalidCompletionDateException,
    UserNotFoundException,
    ValidationException,
)
from habit_ledger.models import Completion, Habit, XPTransaction
from habit_ledger.repositories.completion_repository import CompletionRepository
from habit_ledger.repositories.ledger_repository import XPTransactionRepository
from habit_ledger.services.completion_service import CompletionService
from habit_ledger.services.gamification_service import GamificationService


def completions_for(db_session, habit):
    return db_session.query(Completion).filter(Completion.habit_id == habit.id).all()


class TestCompleteHabit:
    """Tests for normal completions"""

    def test_first_completion_today(self, service, user, habit, today):
        result = service.complete_habit(user.id, habit.id)

        assert result.completion.completed_date == today
        assert result.completion.forgiveness_used is False
        assert result.completion.edited_flag is False
        # Base 10 + first completion 5
        assert result.completion.xp_earned == 15
        assert result.stats.current_streak == 1
        assert user.total_xp == 15
        assert habit.current_streak == 1
        assert habit.total_completions == 1

    def test_second_day_earns_base_only(self, service, user, habit, complete_on, yesterday):
        complete_on(user, habit, yesterday)

        result = service.complete_habit(user.id, habit.id)

        assert result.completion.xp_earned == 10
        assert result.stats.current_streak == 2
        assert user.total_xp == 25

    def test_seven_day_streak_bonus(self, service, user, habit, complete_on, today):
        # 2026-03-12 (Thu) .. 2026-03-17, no full Mon-Sun week inside
        for offset in range(6, 0, -1):
            complete_on(user, habit, today - timedelta(days=offset))

        result = service.complete_habit(user.id, habit.id)

        assert result.stats.current_streak == 7
        assert result.completion.xp_earned == 15

    def test_perfect_week_bonus(self, user, habit, complete_on):
        # Monday 2026-03-09 .. Sunday 2026-03-15
        monday = date(2026, 3, 9)
        for offset in range(6):
            complete_on(user, habit, monday + timedelta(days=offset))

        result = complete_on(user, habit, monday + timedelta(days=6))

        # Base 10 + 7-day streak 5 + perfect week 20
        assert result.completion.xp_earned == 35
        assert "perfect_week" in [t.source for t in result.xp.transactions]

    def test_xp_earned_matches_transactions(self, db_session, service, user, habit):
        result = service.complete_habit(user.id, habit.id)

        assert XPTransactionRepository.sum_for_completion(
            db_session, result.completion.id
        ) == result.completion.xp_earned

    def test_publishes_events_after_commit(self, service, user, habit, events):
        service.complete_habit(user.id, habit.id)

        types = [e.type for e in events.received]
        assert types == ["HABIT_COMPLETED", "XP_GAINED"]
        completed = events.received[0]
        assert completed.payload["habit_id"] == habit.id
        assert completed.payload["current_streak"] == 1

    def test_level_up_event(self, service, make_user, make_habit, events):
        user = make_user(total_xp=90)
        habit = make_habit(user)

        result = service.complete_habit(user.id, habit.id)

        assert result.xp.leveled_up
        assert events.received[-1].type == "LEVEL_UP"
        assert events.received[-1].payload["level"] == 2


class TestUniqueness:
    """At most one completion per habit per day"""

    def test_duplicate_rejected(self, db_session, service, user, habit, events):
        service.complete_habit(user.id, habit.id)
        events.received.clear()

        with pytest.raises(DuplicateCompletionException) as exc_info:
            service.complete_habit(user.id, habit.id)

        assert exc_info.value.to_dict()["error"] == "duplicate_completion"
        assert len(completions_for(db_session, habit)) == 1
        assert user.total_xp == 15
        assert events.received == []

    def test_unique_constraint_catches_missed_check(self, db_session, service, user, habit, monkeypatch):
        """A racing insert that slipped past the existence check still loses"""
        service.complete_habit(user.id, habit.id)
        monkeypatch.setattr(CompletionRepository, "exists_for_day", staticmethod(lambda db, h, d: False))

        with pytest.raises(DuplicateCompletionException):
            service.complete_habit(user.id, habit.id)

        assert len(completions_for(db_session, habit)) == 1
        assert user.total_xp == XPTransactionRepository.sum_for_user(db_session, user.id) == 15

    def test_other_habit_same_day_allowed(self, service, user, make_habit):
        first = make_habit(user, name="Read")
        second = make_habit(user, name="Run")

        service.complete_habit(user.id, first.id)
        service.complete_habit(user.id, second.id)

        assert user.total_xp == 30


class TestCompletionValidation:
    """Date, ownership and schedule checks"""

    def test_backdating_requires_forgiveness(self, service, user, habit, yesterday):
        with pytest.raises(InvalidCompletionDateException):
            service.complete_habit(user.id, habit.id, day=yesterday)

    def test_future_day_rejected(self, service, user, habit, today):
        with pytest.raises(InvalidCompletionDateException):
            service.complete_habit(user.id, habit.id, day=today + timedelta(days=1))

    def test_inactive_habit(self, service, user, make_habit):
        habit = make_habit(user, active=False)
        with pytest.raises(HabitInactiveException):
            service.complete_habit(user.id, habit.id)

    def test_archived_habit(self, service, user, make_habit):
        habit = make_habit(user, archived=True)
        with pytest.raises(HabitInactiveException):
            service.complete_habit(user.id, habit.id)

    def test_habit_of_other_user(self, service, make_user, make_habit):
        owner = make_user(name="Owner")
        other = make_user(name="Other")
        habit = make_habit(owner)

        with pytest.raises(HabitNotFoundException):
            service.complete_habit(other.id, habit.id)

    def test_unknown_user(self, service, habit):
        with pytest.raises(UserNotFoundException):
            service.complete_habit(9999, habit.id)

    def test_weekly_once_per_week(self, service, user, make_habit, clock):
        habit = make_habit(user, frequency="weekly")
        service.complete_habit(user.id, habit.id)

        clock.advance(days=1)  # Thursday, same week
        with pytest.raises(HabitNotScheduledException):
            service.complete_habit(user.id, habit.id)

        clock.advance(days=4)  # Monday, next week
        result = service.complete_habit(user.id, habit.id)
        assert result.stats.current_streak == 2

    def test_custom_only_on_selected_days(self, service, user, make_habit, clock):
        habit = make_habit(user, frequency="custom", days_of_week=[0, 2, 4])
        service.complete_habit(user.id, habit.id)  # Wednesday

        clock.advance(days=1)  # Thursday
        with pytest.raises(HabitNotScheduledException) as exc_info:
            service.complete_habit(user.id, habit.id)
        assert "Monday, Wednesday, Friday" in str(exc_info.value)


class TestTimezones:
    """The credited day is the calendar day in the device/user timezone"""

    def test_user_timezone_ahead_of_utc(self, service, make_user, make_habit, clock):
        user = make_user(timezone="Pacific/Auckland")
        habit = make_habit(user)
        clock.set(datetime(2026, 3, 18, 12, 0))  # 2026-03-19 01:00 in Auckland

        result = service.complete_habit(user.id, habit.id)

        assert result.completion.completed_date == date(2026, 3, 19)
        assert result.completion.device_timezone == "Pacific/Auckland"

    def test_device_timezone_overrides(self, service, user, habit, clock):
        clock.set(datetime(2026, 3, 18, 3, 0))  # 2026-03-17 23:00 in New York

        result = service.complete_habit(user.id, habit.id, timezone="America/New_York")

        assert result.completion.completed_date == date(2026, 3, 17)

    def test_unknown_device_timezone_rejected(self, db_session, service, user, habit):
        with pytest.raises(ValidationException) as exc_info:
            service.complete_habit(user.id, habit.id, timezone="Mars/Olympus_Mons")
        assert exc_info.value.status_code == 400
        assert db_session.query(Completion).count() == 0


class TestDeleteHabit:
    """Cascade delete with XP refund"""

    def test_refund_equals_earned_xp(self, db_session, service, user, habit, complete_on, today):
        for offset in (2, 1, 0):
            complete_on(user, habit, today - timedelta(days=offset))
        assert user.total_xp == 35

        result = service.delete_habit(user.id, habit.id)

        assert result.completions_deleted == 3
        assert result.xp_refunded == 35
        assert user.total_xp == 0
        assert db_session.get(Habit, result.habit_id) is None
        assert db_session.query(Completion).count() == 0
        refund = db_session.query(XPTransaction).filter(XPTransaction.source == "refund").one()
        assert refund.amount == -35
        assert user.total_xp == XPTransactionRepository.sum_for_user(db_session, user.id)

    def test_refund_keeps_level_bonus(self, db_session, service, make_user, make_habit):
        """Level bonuses are not part of any completion and stay in the ledger"""
        user = make_user()
        habit = make_habit(user)
        GamificationService(db_session).award_xp(user.id, 90, "habit_completion", "Seed")
        db_session.commit()
        service.complete_habit(user.id, habit.id)  # 105 -> level 2 (+20)

        service.delete_habit(user.id, habit.id)

        assert user.total_xp == 90 + 20
        assert user.level == 2
        assert user.total_xp == XPTransactionRepository.sum_for_user(db_session, user.id)

    def test_habit_without_completions(self, db_session, service, user, habit):
        result = service.delete_habit(user.id, habit.id)

        assert result.xp_refunded == 0
        assert result.xp is None
        assert db_session.query(XPTransaction).count() == 0

    def test_unknown_habit(self, service, user):
        with pytest.raises(HabitNotFoundException):
            service.delete_habit(user.id, 12345)


class TestReadHelpers:
    """History and today's completions"""

    def test_completion_history_paginated(self, db_session, user, habit, complete_on, today):
        for offset in range(5):
            complete_on(user, habit, today - timedelta(days=offset))

        history = CompletionService(db_session).get_completion_history(
            habit.id, user.id, days=30, page=1, limit=2
        )

        assert history["total"] == 5
        assert history["pages"] == 3
        assert [c.completed_date for c in history["completions"]] == [today, today - timedelta(days=1)]

    def test_today_habit_ids(self, db_session, service, user, make_habit):
        done = make_habit(user, name="Read")
        make_habit(user, name="Run")
        service.complete_habit(user.id, done.id)

        assert CompletionService(db_session).get_today_habit_ids(user.id) == [done.id]

