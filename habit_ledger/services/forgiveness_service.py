"""
Forgiveness token service.

Owns the per-user token balance (0-3): authorizes retroactive completions of
missed daily habits, rewards tokens for fully completed days, and picks the
habit to protect for automatic forgiveness.

Eligibility chain for a forgiveness request (first failure wins):
1. Habit must be daily
2. Day must be in the past and at most FORGIVENESS_WINDOW_DAYS back
3. User must have a token
4. Fewer than DAILY_FORGIVENESS_LIMIT grants since local midnight in the
   user's stored timezone (all habits)
5. No completion exists for (habit, day)
"""
import logging
import random
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from habit_ledger.constants import (
    DAILY_FORGIVENESS_LIMIT,
    FORGIVENESS_WINDOW_DAYS,
    FREQUENCY_CUSTOM,
    FREQUENCY_DAILY,
    MAX_FORGIVENESS_TOKENS,
)
from habit_ledger.exceptions import (
    DailyForgivenessLimitExceededException,
    DuplicateCompletionException,
    ForgivenessWindowExceededException,
    HabitInactiveException,
    HabitNotEligibleException,
    HabitNotFoundException,
    InsufficientTokensException,
    UserNotFoundException,
)
from habit_ledger.models import ForgivenessGrant, Habit, User
from habit_ledger.repositories.completion_repository import CompletionRepository
from habit_ledger.repositories.habit_repository import HabitRepository
from habit_ledger.repositories.ledger_repository import ForgivenessGrantRepository
from habit_ledger.repositories.user_repository import UserRepository
from habit_ledger.services.abuse_service import AbuseDetectionService, AbuseReport
from habit_ledger.services.completion_service import CompletionResult, CompletionService
from habit_ledger.services.date_service import DateService
from habit_ledger.services.streak_service import calculate_current_streak

logger = logging.getLogger("habit_ledger.forgiveness")


@dataclass
class ForgivenessAuthorization:
    user_id: int
    habit_id: int
    day: date
    today: date
    timezone: str
    remaining_tokens: int
    daily_usage_remaining: int
    grant: ForgivenessGrant


@dataclass
class ForgivenessResult:
    authorization: ForgivenessAuthorization
    completion: CompletionResult
    abuse: AbuseReport


class ForgivenessService:
    """Service for forgiveness token authorization and replenishment"""

    def __init__(self, db: Session):
        self.db = db
        self.user_repo = UserRepository()
        self.habit_repo = HabitRepository()
        self.completion_repo = CompletionRepository()
        self.grant_repo = ForgivenessGrantRepository()
        self.completion_service = CompletionService(db)
        self.abuse_service = AbuseDetectionService(db)

    def authorize(
        self,
        user_id: int,
        habit_id: int,
        day: date,
        timezone: Optional[str] = None,
        automatic: bool = False
    ) -> ForgivenessAuthorization:
        """
        Run the eligibility chain and spend one token.

        The token is taken with a compare-and-swap on the balance and the
        grant is recorded in the same transaction, so the daily limit sees it
        immediately and concurrent requests cannot overspend.

        Raises:
            HabitNotFoundException, HabitInactiveException,
            HabitNotEligibleException, ForgivenessWindowExceededException,
            InsufficientTokensException, DailyForgivenessLimitExceededException,
            DuplicateCompletionException
        """
        user = self.user_repo.get_for_update(self.db, user_id)
        if not user:
            raise UserNotFoundException(user_id)
        habit = self.habit_repo.get_owned(self.db, habit_id, user_id)
        if not habit:
            raise HabitNotFoundException(habit_id)
        if not habit.active or habit.archived:
            raise HabitInactiveException(habit_id)

        tz_name = timezone or user.timezone
        today = DateService.get_local_today(tz_name)

        if habit.frequency != FREQUENCY_DAILY:
            raise HabitNotEligibleException(habit.id, habit.frequency)

        days_late = (today - day).days
        if days_late <= 0 or days_late > FORGIVENESS_WINDOW_DAYS:
            raise ForgivenessWindowExceededException(day, today, FORGIVENESS_WINDOW_DAYS)

        if user.forgiveness_tokens <= 0:
            raise InsufficientTokensException(user_id)

        owner_today = DateService.get_local_today(user.timezone)
        cap_start = DateService.local_day_start_utc(owner_today, user.timezone)
        used_today = self.grant_repo.count_since(self.db, user_id, cap_start)
        if used_today >= DAILY_FORGIVENESS_LIMIT:
            raise DailyForgivenessLimitExceededException(user_id, DAILY_FORGIVENESS_LIMIT)

        if self.completion_repo.exists_for_day(self.db, habit.id, day):
            raise DuplicateCompletionException(habit.id, day)

        if not self.user_repo.consume_token(self.db, user_id):
            # Balance changed since it was read
            raise InsufficientTokensException(user_id)

        grant = self.grant_repo.create(self.db, ForgivenessGrant(
            user_id=user_id,
            habit_id=habit.id,
            forgiven_date=day,
            grant_local_date=owner_today,
            automatic=automatic,
            granted_at=DateService.now(),
        ))
        self.user_repo.refresh(self.db, user)

        return ForgivenessAuthorization(
            user_id=user_id,
            habit_id=habit.id,
            day=day,
            today=today,
            timezone=tz_name,
            remaining_tokens=user.forgiveness_tokens,
            daily_usage_remaining=DAILY_FORGIVENESS_LIMIT - used_today - 1,
            grant=grant,
        )

    def forgive(
        self,
        user_id: int,
        habit_id: int,
        day: date,
        timezone: Optional[str] = None,
        automatic: bool = False
    ) -> ForgivenessResult:
        """Authorize, record the forgiven completion, then run the advisory abuse scan"""
        authorization = self.authorize(user_id, habit_id, day, timezone, automatic)
        completion = self.completion_service.record_forgiveness_completion(
            habit_id, user_id, day, authorization.timezone, automatic=automatic
        )
        abuse = self.abuse_service.scan(user_id)
        logger.info(
            f"Forgiveness token used: user {user_id}, habit {habit_id}, "
            f"date {day.isoformat()}, remaining {authorization.remaining_tokens}"
        )
        return ForgivenessResult(authorization=authorization, completion=completion, abuse=abuse)

    def award_daily_token(self, user: User, day: date) -> bool:
        """
        Reward one token (up to MAX_FORGIVENESS_TOKENS) if every habit due on
        day was completed. At most one reward per user per local day.

        Daily habits are due every day, custom habits on their selected
        weekdays; weekly habits are not tied to a day and are ignored.
        Forgiven days do not count as completed.

        Returns:
            True if a token was added
        """
        if user.forgiveness_tokens >= MAX_FORGIVENESS_TOKENS:
            return False
        if user.last_token_reward_date is not None and user.last_token_reward_date >= day:
            return False

        due = [
            habit for habit in self.habit_repo.get_active_by_user(self.db, user.id)
            if self._is_due(habit, day)
        ]
        if not due:
            return False

        completed = set(self.completion_repo.get_habit_ids_completed_on(
            self.db, user.id, day, include_forgiven=False
        ))
        if not all(habit.id in completed for habit in due):
            return False

        awarded = self.user_repo.grant_token(self.db, user.id, day)
        if awarded:
            self.user_repo.refresh(self.db, user)
            logger.info(
                f"Awarded forgiveness token to user {user.id} for {day.isoformat()}. "
                f"New count: {user.forgiveness_tokens}/{MAX_FORGIVENESS_TOKENS}"
            )
        return awarded

    def select_auto_forgiveness_habit(self, user: User) -> Optional[Tuple[Habit, date]]:
        """
        Pick the habit to protect with automatic forgiveness.

        Candidates are active daily habits that missed yesterday but were
        completed the day before, i.e. whose streak yesterday's miss would
        break. The longest streak wins; ties are broken randomly.

        Returns:
            (habit, day to forgive) or None
        """
        if not user.auto_forgiveness_enabled or user.forgiveness_tokens <= 0:
            return None

        yesterday = DateService.get_local_today(user.timezone) - timedelta(days=1)
        day_before = yesterday - timedelta(days=1)

        candidates = []
        for habit in self.habit_repo.get_active_daily_by_user(self.db, user.id):
            dates = self.completion_repo.get_dates_for_habit(self.db, habit.id)
            if yesterday in dates or day_before not in dates:
                continue
            streak = calculate_current_streak(dates, FREQUENCY_DAILY, day_before)
            candidates.append((streak, habit))

        if not candidates:
            return None

        longest = max(streak for streak, _ in candidates)
        best = [habit for streak, habit in candidates if streak == longest]
        selected = random.choice(best) if len(best) > 1 else best[0]
        logger.info(
            f"Selected habit \"{selected.name}\" with {longest}-day streak "
            f"({len(best)} habits had longest streak) for user {user.id}"
        )
        return selected, yesterday

    @staticmethod
    def _is_due(habit: Habit, day: date) -> bool:
        if habit.frequency == FREQUENCY_DAILY:
            return True
        if habit.frequency == FREQUENCY_CUSTOM:
            return day.weekday() in habit.get_days_of_week()
        return False
