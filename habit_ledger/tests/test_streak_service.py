"""
Tests for streak calculation.

Tests cover:
1. Current streak for daily, weekly and custom habits
2. Longest streak over the full history
3. Consistency rate over the lookback window
4. Writing and repairing the cached aggregates
"""
import pytest
from datetime import date, timedelta

from habit_ledger.services.streak_service import (
    StreakService,
    calculate_consistency_rate,
    calculate_current_streak,
    calculate_longest_streak,
    calculate_stats,
)

# Wednesday
TODAY = date(2026, 3, 18)
MON, WED, FRI = 0, 2, 4


def days_ago(n):
    return TODAY - timedelta(days=n)


class TestDailyCurrentStreak:
    """Tests for calculate_current_streak on daily habits"""

    def test_three_consecutive_days(self):
        """Completions today, yesterday and the day before give a streak of 3"""
        dates = [days_ago(0), days_ago(1), days_ago(2)]
        assert calculate_current_streak(dates, "daily", TODAY) == 3

    def test_gap_breaks_streak(self):
        """A missed day in between leaves only today"""
        dates = [days_ago(0), days_ago(2)]
        assert calculate_current_streak(dates, "daily", TODAY) == 1

    def test_today_still_open(self):
        """Not completing today yet does not break yesterday's streak"""
        dates = [days_ago(1), days_ago(2)]
        assert calculate_current_streak(dates, "daily", TODAY) == 2

    def test_missed_yesterday(self):
        dates = [days_ago(2), days_ago(3)]
        assert calculate_current_streak(dates, "daily", TODAY) == 0

    def test_no_completions(self):
        assert calculate_current_streak([], "daily", TODAY) == 0

    def test_later_days_do_not_extend_current(self):
        dates = [days_ago(0), TODAY + timedelta(days=1)]
        assert calculate_current_streak(dates, "daily", TODAY) == 1


class TestWeeklyCurrentStreak:
    """Weekly habits count Monday-based weeks"""

    def test_consecutive_weeks(self):
        # Tue of this week, Tue of last week, Tue of the week before
        dates = [date(2026, 3, 17), date(2026, 3, 10), date(2026, 3, 3)]
        assert calculate_current_streak(dates, "weekly", TODAY) == 3

    def test_current_week_still_open(self):
        dates = [date(2026, 3, 10), date(2026, 3, 3)]
        assert calculate_current_streak(dates, "weekly", TODAY) == 2

    def test_missed_week_breaks(self):
        dates = [date(2026, 3, 17), date(2026, 3, 3)]
        assert calculate_current_streak(dates, "weekly", TODAY) == 1

    def test_any_day_of_week_counts(self):
        """Monday one week and Sunday the next are consecutive weeks"""
        dates = [date(2026, 3, 16), date(2026, 3, 15)]
        assert calculate_current_streak(dates, "weekly", TODAY) == 2


class TestCustomCurrentStreak:
    """Custom habits only expect their selected weekdays"""

    def test_selected_days_only(self):
        # Mon 16, Fri 13, Wed 11; today (Wed) not done yet but still open
        dates = [date(2026, 3, 16), date(2026, 3, 13), date(2026, 3, 11)]
        assert calculate_current_streak(dates, "custom", TODAY, [MON, WED, FRI]) == 3

    def test_including_today(self):
        dates = [TODAY, date(2026, 3, 16), date(2026, 3, 13)]
        assert calculate_current_streak(dates, "custom", TODAY, [MON, WED, FRI]) == 3

    def test_missed_selected_day_breaks(self):
        """On Thursday, a missed Wednesday is no longer open"""
        thursday = date(2026, 3, 19)
        dates = [date(2026, 3, 16), date(2026, 3, 13)]
        assert calculate_current_streak(dates, "custom", thursday, [MON, WED, FRI]) == 0

    def test_unselected_days_ignored(self):
        # Tuesday completion neither counts nor breaks
        dates = [date(2026, 3, 17), date(2026, 3, 16)]
        assert calculate_current_streak(dates, "custom", TODAY, [MON, WED, FRI]) == 1

    def test_no_selected_days(self):
        assert calculate_current_streak([TODAY], "custom", TODAY, []) == 0


class TestLongestStreak:
    """Tests for calculate_longest_streak"""

    def test_longest_run_in_history(self):
        dates = [
            date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 3),
            date(2026, 3, 10), date(2026, 3, 11),
        ]
        assert calculate_longest_streak(dates, "daily", TODAY) == 3

    def test_weekly_longest(self):
        dates = [date(2026, 2, 2), date(2026, 2, 9), date(2026, 3, 2)]
        assert calculate_longest_streak(dates, "weekly", TODAY) == 2

    def test_stats_longest_never_below_current(self):
        dates = [days_ago(n) for n in range(5)]
        stats = calculate_stats(dates, "daily", TODAY)
        assert stats.current_streak == 5
        assert stats.longest_streak == 5
        assert stats.total_completions == 5

    def test_day_credited_ahead_counts(self):
        """A device ahead of the owner credits tomorrow; it still extends the run"""
        dates = [days_ago(1), days_ago(0), TODAY + timedelta(days=1)]
        stats = calculate_stats(dates, "daily", TODAY)
        assert stats.current_streak == 3
        assert stats.longest_streak == 3
        assert calculate_longest_streak(dates, "daily", TODAY) == 3


class TestConsistencyRate:
    """Tests for calculate_consistency_rate"""

    def test_daily_half(self):
        dates = [days_ago(n) for n in range(15)]
        assert calculate_consistency_rate(dates, "daily", TODAY) == 50

    def test_old_completions_outside_window(self):
        dates = [days_ago(30), days_ago(45)]
        assert calculate_consistency_rate(dates, "daily", TODAY) == 0

    def test_weekly_expects_five(self):
        dates = [days_ago(0), days_ago(7), days_ago(14), days_ago(21), days_ago(28)]
        assert calculate_consistency_rate(dates, "weekly", TODAY) == 100

    def test_capped_at_100(self):
        dates = [days_ago(n) for n in range(10)]
        assert calculate_consistency_rate(dates, "weekly", TODAY) == 100

    def test_custom_counts_selected_days(self):
        # Window 2026-02-17..2026-03-18 holds four Mondays
        dates = [date(2026, 3, 16), date(2026, 3, 9)]
        assert calculate_consistency_rate(dates, "custom", TODAY, [MON]) == 50


class TestStreakService:
    """Tests for writing the cached aggregates"""

    def test_recalculate_habit_writes_cache(self, db_session, user, habit, complete_on, clock):
        complete_on(user, habit, clock.today - timedelta(days=1))
        complete_on(user, habit, clock.today)

        habit.current_streak = 0
        habit.total_completions = 0
        db_session.commit()

        stats = StreakService(db_session).recalculate_habit(habit)
        db_session.commit()

        assert stats.current_streak == 2
        assert habit.current_streak == 2
        assert habit.total_completions == 2
        assert habit.stats_updated_at is not None

    def test_recalculate_is_idempotent(self, db_session, service, user, make_habit, complete_on, clock):
        """Two repairs in a row produce identical aggregates"""
        first = make_habit(user, name="Run")
        second = make_habit(user, name="Write", frequency="weekly")
        complete_on(user, first, clock.today - timedelta(days=2))
        complete_on(user, first, clock.today - timedelta(days=1))
        complete_on(user, second, clock.today)

        assert service.recalculate_stats(user.id) == 2
        snapshot = [
            (h.current_streak, h.longest_streak, h.total_completions, h.consistency_rate)
            for h in (first, second)
        ]
        assert service.recalculate_stats(user.id) == 2
        again = [
            (h.current_streak, h.longest_streak, h.total_completions, h.consistency_rate)
            for h in (first, second)
        ]
        assert snapshot == again
        assert snapshot[0] == (2, 2, 2, 7)

    def test_recalculate_repairs_drift(self, db_session, service, user, habit, complete_on, clock):
        complete_on(user, habit, clock.today)
        habit.current_streak = 42
        habit.longest_streak = 42
        db_session.commit()

        service.recalculate_stats(user.id)

        assert habit.current_streak == 1
        assert habit.longest_streak == 1

    def test_device_timezone_ahead_keeps_cache(self, db_session, service, user, habit, clock):
        """Completing from a device on the next calendar day leaves a cache the repair agrees with"""
        # 12:00 UTC is already 02:00 the next day in Kiritimati (UTC+14)
        result = service.complete_habit(user.id, habit.id, timezone="Pacific/Kiritimati")
        cached = (habit.current_streak, habit.longest_streak, habit.total_completions)
        assert result.completion.completed_date == clock.today + timedelta(days=1)
        assert cached == (1, 1, 1)

        service.recalculate_stats(user.id)

        assert (habit.current_streak, habit.longest_streak, habit.total_completions) == cached
