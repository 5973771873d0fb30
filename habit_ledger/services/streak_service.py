"""
Streak calculation service.
Derives current/longest streak and consistency rate from a habit's completion
history. The calculation is pure; StreakService only writes the result into
the habit's cached aggregate columns.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from habit_ledger.constants import (
    CONSISTENCY_LOOKBACK_DAYS, FREQUENCY_CUSTOM, FREQUENCY_WEEKLY
)
from habit_ledger.models import Habit
from habit_ledger.repositories.completion_repository import CompletionRepository
from habit_ledger.repositories.habit_repository import HabitRepository
from habit_ledger.repositories.user_repository import UserRepository
from habit_ledger.services.date_service import DateService

logger = logging.getLogger("habit_ledger.streaks")


@dataclass(frozen=True)
class StreakStats:
    current_streak: int
    longest_streak: int
    total_completions: int
    consistency_rate: int


def _previous_selected_day(day: date, selected: List[int]) -> date:
    """Closest selected weekday strictly before day"""
    candidate = day - timedelta(days=1)
    while candidate.weekday() not in selected:
        candidate -= timedelta(days=1)
    return candidate


def _latest_selected_day(day: date, selected: List[int]) -> date:
    """Closest selected weekday on or before day"""
    candidate = day
    while candidate.weekday() not in selected:
        candidate -= timedelta(days=1)
    return candidate


def _occurrence_rules(frequency: str, selected: List[int], today: date):
    """
    Map a frequency onto occurrence keys.

    Returns (key_of, previous, current_key):
    - daily: every day is an occurrence
    - weekly: one occurrence per Monday-based week, keyed by its Monday
    - custom: every selected weekday is an occurrence
    """
    if frequency == FREQUENCY_WEEKLY:
        return (
            DateService.week_start,
            lambda key: key - timedelta(days=7),
            DateService.week_start(today),
        )
    if frequency == FREQUENCY_CUSTOM:
        return (
            lambda day: day,
            lambda key: _previous_selected_day(key, selected),
            _latest_selected_day(today, selected),
        )
    return (
        lambda day: day,
        lambda key: key - timedelta(days=1),
        today,
    )


def _completed_keys(
    dates: Iterable[date],
    frequency: str,
    selected: List[int],
    key_of: Callable[[date], date]
) -> Set[date]:
    keys = set()
    for day in dates:
        if frequency == FREQUENCY_CUSTOM and day.weekday() not in selected:
            continue
        keys.add(key_of(day))
    return keys


def calculate_current_streak(
    dates: Iterable[date],
    frequency: str,
    today: date,
    days_of_week: Optional[List[int]] = None
) -> int:
    """
    Count consecutive expected occurrences with a completion, ending at today.

    The occurrence containing today is still open: if it has no completion
    yet, counting starts from the previous occurrence instead of breaking.
    Forgiven days are ordinary completions here.
    """
    selected = days_of_week or []
    if frequency == FREQUENCY_CUSTOM and not selected:
        return 0

    key_of, previous, current_key = _occurrence_rules(frequency, selected, today)
    completed = _completed_keys(dates, frequency, selected, key_of)
    if not completed:
        return 0

    key = current_key
    if key not in completed:
        still_open = frequency != FREQUENCY_CUSTOM or key == today
        if not still_open:
            return 0
        key = previous(key)

    streak = 0
    while key in completed:
        streak += 1
        key = previous(key)
    return streak


def calculate_longest_streak(
    dates: Iterable[date],
    frequency: str,
    today: date,
    days_of_week: Optional[List[int]] = None
) -> int:
    """Longest run of consecutive expected occurrences over the whole history"""
    selected = days_of_week or []
    if frequency == FREQUENCY_CUSTOM and not selected:
        return 0

    key_of, previous, _ = _occurrence_rules(frequency, selected, today)
    keys = sorted(_completed_keys(dates, frequency, selected, key_of))

    longest = 0
    run = 0
    last_key = None
    for key in keys:
        if last_key is not None and previous(key) == last_key:
            run += 1
        else:
            run = 1
        longest = max(longest, run)
        last_key = key
    return longest


def calculate_consistency_rate(
    dates: Iterable[date],
    frequency: str,
    today: date,
    days_of_week: Optional[List[int]] = None,
    lookback_days: int = CONSISTENCY_LOOKBACK_DAYS
) -> int:
    """
    Completions / expected occurrences over the last lookback_days (today
    inclusive), as an integer percentage capped at 100.
    """
    window_start = today - timedelta(days=lookback_days - 1)
    actual = len({day for day in dates if window_start <= day <= today})

    if frequency == FREQUENCY_WEEKLY:
        expected = -(-lookback_days // 7)
    elif frequency == FREQUENCY_CUSTOM:
        selected = days_of_week or []
        expected = sum(
            1 for offset in range(lookback_days)
            if (window_start + timedelta(days=offset)).weekday() in selected
        )
    else:
        expected = lookback_days

    if expected == 0:
        return 0
    return min(100, round(actual / expected * 100))


def calculate_stats(
    dates: Iterable[date],
    frequency: str,
    today: date,
    days_of_week: Optional[List[int]] = None
) -> StreakStats:
    """
    All cached aggregates of a habit, computed fresh.

    A day credited in a device timezone ahead of the owner's counts as the
    newest occurrence, so today moves forward to it.
    """
    dates = sorted(set(dates))
    if dates and dates[-1] > today:
        today = dates[-1]
    current = calculate_current_streak(dates, frequency, today, days_of_week)
    longest = calculate_longest_streak(dates, frequency, today, days_of_week)
    return StreakStats(
        current_streak=current,
        longest_streak=max(current, longest),
        total_completions=len(dates),
        consistency_rate=calculate_consistency_rate(dates, frequency, today, days_of_week),
    )


class StreakService:
    """Writes freshly computed streak aggregates into the habit cache"""

    def __init__(self, db: Session):
        self.db = db
        self.habit_repo = HabitRepository()
        self.completion_repo = CompletionRepository()
        self.user_repo = UserRepository()

    def compute_for_habit(self, habit: Habit) -> StreakStats:
        """
        Compute aggregates for a habit without writing them.

        Evaluated in the owner's stored timezone; a request timezone never
        applies here.
        """
        user = self.user_repo.get_by_id(self.db, habit.user_id)
        today = DateService.get_local_today(user.timezone if user else None)
        dates = self.completion_repo.get_dates_for_habit(self.db, habit.id)
        return calculate_stats(dates, habit.frequency, today, habit.get_days_of_week())

    def recalculate_habit(self, habit: Habit) -> StreakStats:
        """
        Recompute and store the aggregates of one habit.

        The caller holds the habit row lock (or runs the bulk repair below),
        so cache writes for a habit are serialized.
        """
        stats = self.compute_for_habit(habit)
        habit.current_streak = stats.current_streak
        habit.longest_streak = stats.longest_streak
        habit.total_completions = stats.total_completions
        habit.consistency_rate = stats.consistency_rate
        habit.stats_updated_at = DateService.now()
        self.db.flush()
        return stats

    def recalculate_user(self, user_id: int) -> int:
        """
        Bulk repair: recompute every habit of a user from the ledger.

        Returns:
            Number of habits updated
        """
        habits = self.habit_repo.get_by_user(self.db, user_id)
        for habit in habits:
            locked = self.habit_repo.get_owned_for_update(self.db, habit.id, user_id)
            self.recalculate_habit(locked)
        logger.info(f"Recalculated statistics for {len(habits)} habits of user {user_id}")
        return len(habits)
