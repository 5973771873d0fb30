"""
Completion ledger service.
Records habit completions (normal and forgiven), keeps one completion per
habit per calendar day, and removes a habit's ledger with an XP refund.

Methods here never commit; HabitService runs them inside one transaction.
"""
import json
import logging
import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from habit_ledger.constants import (
    COMPLETION_BACKDATE_DAYS,
    FORGIVENESS_XP,
    FREQUENCY_CUSTOM,
    FREQUENCY_DAILY,
    FREQUENCY_WEEKLY,
    XP_SOURCE_FORGIVENESS,
    XP_SOURCE_REFUND,
)
from habit_ledger.exceptions import (
    DuplicateCompletionException,
    HabitInactiveException,
    HabitNotFoundException,
    HabitNotScheduledException,
    InvalidCompletionDateException,
    UserNotFoundException,
)
from habit_ledger.models import Completion, Habit, User
from habit_ledger.repositories.completion_repository import CompletionRepository
from habit_ledger.repositories.habit_repository import HabitRepository
from habit_ledger.repositories.user_repository import UserRepository
from habit_ledger.services.date_service import DateService
from habit_ledger.services.gamification_service import (
    GamificationService, XPAwardResult, XPEntry, calculate_completion_xp
)
from habit_ledger.services.streak_service import StreakService, StreakStats

logger = logging.getLogger("habit_ledger.completions")

WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


@dataclass
class CompletionResult:
    completion: Completion
    habit: Habit
    stats: StreakStats
    xp: XPAwardResult


@dataclass
class HabitDeletionResult:
    habit_id: int
    completions_deleted: int
    xp_refunded: int
    xp: Optional[XPAwardResult]


class CompletionService:
    """Service for the completion ledger"""

    def __init__(self, db: Session):
        self.db = db
        self.user_repo = UserRepository()
        self.habit_repo = HabitRepository()
        self.completion_repo = CompletionRepository()
        self.streak_service = StreakService(db)
        self.gamification = GamificationService(db)

    def record_completion(
        self,
        habit_id: int,
        user_id: int,
        day: Optional[date] = None,
        timezone: Optional[str] = None
    ) -> CompletionResult:
        """
        Record a normal completion and award completion XP.

        Args:
            habit_id: Habit being completed
            user_id: Owner of the habit
            day: Calendar day to credit (defaults to today in timezone)
            timezone: Device timezone (defaults to the user's timezone)

        Returns:
            CompletionResult with the completion, fresh stats and XP outcome

        Raises:
            HabitNotFoundException, HabitInactiveException,
            InvalidCompletionDateException, HabitNotScheduledException,
            DuplicateCompletionException
        """
        user = self._get_user(user_id)
        habit = self._get_active_habit(habit_id, user_id)
        tz_name = timezone or user.timezone
        today = DateService.get_local_today(tz_name)
        day = day or today

        days_back = (today - day).days
        if days_back < 0 or days_back > COMPLETION_BACKDATE_DAYS:
            raise InvalidCompletionDateException(day, today)

        if self.completion_repo.exists_for_day(self.db, habit.id, day):
            raise DuplicateCompletionException(habit.id, day)
        self._check_schedule(habit, day)

        is_first = not self.completion_repo.get_dates_for_habit(self.db, habit.id)
        completion = self._insert(Completion(
            habit_id=habit.id,
            user_id=user_id,
            completed_date=day,
            device_timezone=tz_name,
            created_at=DateService.now(),
            xp_earned=0,
            forgiveness_used=False,
            edited_flag=False,
        ))

        stats = self.streak_service.recalculate_habit(habit)
        entries = calculate_completion_xp(
            habit.name,
            stats.current_streak,
            is_first_completion=is_first,
            perfect_week=self._completes_perfect_week(habit, day),
        )
        completion.xp_earned = sum(entry.amount for entry in entries)
        xp = self.gamification.award_entries(
            user_id, entries, habit_id=habit.id, completion_id=completion.id
        )

        logger.info(
            f"Habit {habit.id} completed for {day.isoformat()} by user {user_id}: "
            f"+{completion.xp_earned} XP, streak {stats.current_streak}"
        )
        return CompletionResult(completion=completion, habit=habit, stats=stats, xp=xp)

    def record_forgiveness_completion(
        self,
        habit_id: int,
        user_id: int,
        day: date,
        timezone: Optional[str] = None,
        automatic: bool = False
    ) -> CompletionResult:
        """
        Record a forgiven (retroactive) completion.

        Only called after ForgivenessService authorized and debited a token in
        the same transaction. Forgiven completions earn a fixed FORGIVENESS_XP
        with no bonuses and are flagged as edited.
        """
        user = self._get_user(user_id)
        habit = self.habit_repo.get_owned_for_update(self.db, habit_id, user_id)
        if not habit:
            raise HabitNotFoundException(habit_id)
        tz_name = timezone or user.timezone
        today = DateService.get_local_today(tz_name)

        details = {
            "days_late": (today - day).days,
            "forgiveness_timezone": tz_name,
            "forgiveness_used_at": DateService.now().isoformat(),
        }
        if automatic:
            details["auto_forgiveness"] = True

        completion = self._insert(Completion(
            habit_id=habit.id,
            user_id=user_id,
            completed_date=day,
            device_timezone=tz_name,
            created_at=DateService.now(),
            xp_earned=FORGIVENESS_XP,
            forgiveness_used=True,
            edited_flag=True,
            details=json.dumps(details),
        ))

        stats = self.streak_service.recalculate_habit(habit)
        xp = self.gamification.award_entries(
            user_id,
            [XPEntry(
                amount=FORGIVENESS_XP,
                source=XP_SOURCE_FORGIVENESS,
                description=f"Forgiveness token used: {habit.name}",
                details={"days_late": details["days_late"], "auto_forgiveness": automatic},
            )],
            habit_id=habit.id,
            completion_id=completion.id,
        )

        logger.info(
            f"Forgiveness completion: user {user_id}, habit {habit.id}, "
            f"date {day.isoformat()}, days late: {details['days_late']}"
        )
        return CompletionResult(completion=completion, habit=habit, stats=stats, xp=xp)

    def delete_habit_cascade(self, habit_id: int, user_id: int) -> HabitDeletionResult:
        """
        Delete a habit with all its completions and refund the XP they earned.

        The refund is a single negative XPTransaction equal to the sum of the
        deleted completions' xp_earned, so total_xp stays equal to the ledger sum.
        """
        habit = self.habit_repo.get_owned_for_update(self.db, habit_id, user_id)
        if not habit:
            raise HabitNotFoundException(habit_id)

        refund = self.completion_repo.sum_xp_for_habit(self.db, habit.id)
        habit_name = habit.name
        deleted = self.completion_repo.delete_for_habit(self.db, habit.id)
        self.habit_repo.delete(self.db, habit)

        xp = None
        if refund > 0:
            xp = self.gamification.award_entries(
                user_id,
                [XPEntry(
                    amount=-refund,
                    source=XP_SOURCE_REFUND,
                    description=f"XP refunded for deleting habit \"{habit_name}\"",
                    details={"habit_name": habit_name, "completions_count": deleted},
                )],
                habit_id=habit_id,
            )

        logger.info(
            f"Deleted habit {habit_id} of user {user_id}: "
            f"{deleted} completions removed, {refund} XP refunded"
        )
        return HabitDeletionResult(
            habit_id=habit_id,
            completions_deleted=deleted,
            xp_refunded=refund,
            xp=xp,
        )

    def get_completion_history(
        self,
        habit_id: int,
        user_id: int,
        days: int = 30,
        page: int = 1,
        limit: int = 50
    ) -> dict:
        """Paginated completions of a habit over the last N days"""
        user = self._get_user(user_id)
        habit = self.habit_repo.get_owned(self.db, habit_id, user_id)
        if not habit:
            raise HabitNotFoundException(habit_id)

        from_date = DateService.get_local_today(user.timezone) - timedelta(days=days)
        skip = (page - 1) * limit
        completions = self.completion_repo.get_history(self.db, habit.id, from_date, skip, limit)
        total = self.completion_repo.count_history(self.db, habit.id, from_date)
        return {
            "completions": completions,
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        }

    def get_today_habit_ids(self, user_id: int, timezone: Optional[str] = None) -> List[int]:
        """Habit ids completed today in the user's timezone"""
        user = self._get_user(user_id)
        today = DateService.get_local_today(timezone or user.timezone)
        return self.completion_repo.get_habit_ids_completed_on(self.db, user_id, today)

    def _get_user(self, user_id: int) -> User:
        user = self.user_repo.get_by_id(self.db, user_id)
        if not user:
            raise UserNotFoundException(user_id)
        return user

    def _get_active_habit(self, habit_id: int, user_id: int) -> Habit:
        habit = self.habit_repo.get_owned_for_update(self.db, habit_id, user_id)
        if not habit:
            raise HabitNotFoundException(habit_id)
        if not habit.active or habit.archived:
            raise HabitInactiveException(habit_id)
        return habit

    def _check_schedule(self, habit: Habit, day: date) -> None:
        """Weekly habits once per week, custom habits only on selected weekdays"""
        if habit.frequency == FREQUENCY_CUSTOM:
            selected = habit.get_days_of_week()
            if day.weekday() not in selected:
                names = ", ".join(WEEKDAY_NAMES[d] for d in selected)
                raise HabitNotScheduledException(
                    habit.id, f"This habit is only available on: {names or 'no days selected'}"
                )
        elif habit.frequency == FREQUENCY_WEEKLY:
            week = set(DateService.week_dates(day))
            dates = self.completion_repo.get_dates_for_habit(self.db, habit.id)
            if any(d in week for d in dates):
                raise HabitNotScheduledException(
                    habit.id,
                    "You've completed this habit this week. It will be available again next Monday."
                )

    def _completes_perfect_week(self, habit: Habit, day: date) -> bool:
        """Every expected day of day's week (Mon-Sun) now has a completion"""
        if habit.frequency == FREQUENCY_DAILY:
            expected = DateService.week_dates(day)
        elif habit.frequency == FREQUENCY_CUSTOM:
            selected = habit.get_days_of_week()
            expected = [d for d in DateService.week_dates(day) if d.weekday() in selected]
        else:
            return False
        if not expected:
            return False
        dates = set(self.completion_repo.get_dates_for_habit(self.db, habit.id))
        return all(d in dates for d in expected)

    def _insert(self, completion: Completion) -> Completion:
        """Insert relying on the (habit_id, completed_date) unique constraint"""
        try:
            return self.completion_repo.create(self.db, completion)
        except IntegrityError as e:
            logger.info(
                f"Duplicate completion rejected: habit {completion.habit_id}, "
                f"date {completion.completed_date.isoformat()}"
            )
            raise DuplicateCompletionException(
                completion.habit_id, completion.completed_date
            ) from e
