"""
Habit ledger orchestration.
Entry points used by the API and the scheduler. Each mutating operation is
one transaction (retried as a whole on transient storage failures); events
are published only after the transaction commits.
"""
import logging
from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from habit_ledger.constants import (
    EVENT_FORGIVENESS_ABUSE_FLAGGED,
    EVENT_FORGIVENESS_USED,
    EVENT_HABIT_COMPLETED,
    EVENT_LEVEL_UP,
    EVENT_XP_GAINED,
    FREQUENCY_CUSTOM,
)
from habit_ledger.database import run_in_transaction
from habit_ledger.exceptions import UserNotFoundException, ValidationException
from habit_ledger.models import Habit, User
from habit_ledger.repositories.habit_repository import HabitRepository
from habit_ledger.repositories.user_repository import UserRepository
from habit_ledger.schemas import HabitCreate, UserCreate
from habit_ledger.services.completion_service import (
    CompletionResult, CompletionService, HabitDeletionResult
)
from habit_ledger.services.date_service import DateService
from habit_ledger.services.event_service import Event, EventBus, event_bus
from habit_ledger.services.forgiveness_service import ForgivenessResult, ForgivenessService
from habit_ledger.services.gamification_service import XPAwardResult
from habit_ledger.services.integrity_service import IntegrityAuditor, IntegrityViolation
from habit_ledger.services.streak_service import StreakService

logger = logging.getLogger("habit_ledger.habits")


class HabitService:
    """Transactional entry points for the completion ledger and XP engine"""

    def __init__(self, db: Session, bus: Optional[EventBus] = None):
        self.db = db
        self.bus = bus or event_bus
        self.user_repo = UserRepository()
        self.habit_repo = HabitRepository()
        self.completion_service = CompletionService(db)
        self.forgiveness_service = ForgivenessService(db)
        self.streak_service = StreakService(db)
        self.auditor = IntegrityAuditor(db)

    def create_user(self, user_data: UserCreate) -> User:
        self._check_timezone(user_data.timezone)

        def operation():
            return self.user_repo.create(self.db, User(**user_data.model_dump()))

        user = run_in_transaction(self.db, operation, "create_user")
        self.db.refresh(user)
        logger.info(f"Created user {user.id} ({user.timezone})")
        return user

    def create_habit(self, user_id: int, habit_data: HabitCreate) -> Habit:
        def operation():
            if not self.user_repo.get_by_id(self.db, user_id):
                raise UserNotFoundException(user_id)
            days = habit_data.days_of_week if habit_data.frequency == FREQUENCY_CUSTOM else None
            return self.habit_repo.create(self.db, Habit(
                user_id=user_id,
                name=habit_data.name,
                frequency=habit_data.frequency,
                days_of_week=DateService.serialize_days_of_week(days),
            ))

        habit = run_in_transaction(self.db, operation, "create_habit")
        self.db.refresh(habit)
        logger.info(f"Created {habit.frequency} habit {habit.id} for user {user_id}")
        return habit

    def complete_habit(
        self,
        user_id: int,
        habit_id: int,
        day: Optional[date] = None,
        timezone: Optional[str] = None
    ) -> CompletionResult:
        """Record a normal completion, award XP and publish HABIT_COMPLETED"""
        if timezone is not None:
            self._check_timezone(timezone)
        result = run_in_transaction(
            self.db,
            lambda: self.completion_service.record_completion(habit_id, user_id, day, timezone),
            "complete_habit",
        )
        self._publish_completion(EVENT_HABIT_COMPLETED, user_id, result)
        return result

    def use_forgiveness_token(
        self,
        user_id: int,
        habit_id: int,
        day: date,
        timezone: Optional[str] = None,
        automatic: bool = False
    ) -> ForgivenessResult:
        """
        Spend a token to credit a missed day.

        Authorization, token debit, completion, streak and XP updates commit
        together; the abuse scan result is published afterwards.
        """
        if timezone is not None:
            self._check_timezone(timezone)
        result = run_in_transaction(
            self.db,
            lambda: self.forgiveness_service.forgive(user_id, habit_id, day, timezone, automatic),
            "use_forgiveness_token",
        )
        self._publish_completion(EVENT_FORGIVENESS_USED, user_id, result.completion, {
            "remaining_tokens": result.authorization.remaining_tokens,
            "daily_usage_remaining": result.authorization.daily_usage_remaining,
            "automatic": automatic,
        })
        if result.abuse.flagged:
            self.bus.publish(Event(EVENT_FORGIVENESS_ABUSE_FLAGGED, user_id, {
                "flags": list(result.abuse.flags),
                "duplicate_dates": [d.isoformat() for d in result.abuse.duplicate_dates],
                "consecutive_pairs": result.abuse.consecutive_pairs,
            }))
        return result

    def delete_habit(self, user_id: int, habit_id: int) -> HabitDeletionResult:
        """Delete a habit with its completions and refund their XP"""
        result = run_in_transaction(
            self.db,
            lambda: self.completion_service.delete_habit_cascade(habit_id, user_id),
            "delete_habit",
        )
        if result.xp is not None:
            self.bus.publish_all(self._xp_events(user_id, result.xp, {"habit_id": habit_id}))
        return result

    def recalculate_stats(self, user_id: int) -> int:
        """Bulk repair of every habit's cached aggregates"""
        def operation():
            if not self.user_repo.get_by_id(self.db, user_id):
                raise UserNotFoundException(user_id)
            return self.streak_service.recalculate_user(user_id)

        return run_in_transaction(self.db, operation, "recalculate_stats")

    def audit_integrity(self, user_id: int) -> List[IntegrityViolation]:
        return self.auditor.audit_user(user_id)

    def award_daily_token(self, user_id: int, day: date) -> bool:
        def operation():
            user = self.user_repo.get_for_update(self.db, user_id)
            if not user:
                raise UserNotFoundException(user_id)
            return self.forgiveness_service.award_daily_token(user, day)

        return run_in_transaction(self.db, operation, "award_daily_token")

    def auto_forgive(self, user_id: int) -> Optional[ForgivenessResult]:
        """Forgive yesterday for the user's most valuable at-risk daily habit"""
        user = self.user_repo.get_by_id(self.db, user_id)
        if not user:
            raise UserNotFoundException(user_id)
        selection = self.forgiveness_service.select_auto_forgiveness_habit(user)
        # Selection only reads; end the read transaction before the write one
        self.db.rollback()
        if selection is None:
            return None
        habit, day = selection
        return self.use_forgiveness_token(user_id, habit.id, day, user.timezone, automatic=True)

    @staticmethod
    def _check_timezone(tz_name: str) -> None:
        if not DateService.is_valid_timezone(tz_name):
            raise ValidationException("timezone", f"Unknown timezone '{tz_name}'")

    def _publish_completion(
        self,
        event_type: str,
        user_id: int,
        result: CompletionResult,
        extra: Optional[dict] = None
    ) -> None:
        payload = {
            "habit_id": result.habit.id,
            "completion_id": result.completion.id,
            "day": result.completion.completed_date.isoformat(),
            "xp_earned": result.completion.xp_earned,
            "current_streak": result.stats.current_streak,
            "longest_streak": result.stats.longest_streak,
        }
        if extra:
            payload.update(extra)
        self.bus.publish_all(
            [Event(event_type, user_id, payload)]
            + self._xp_events(user_id, result.xp, {"habit_id": result.habit.id})
        )

    @staticmethod
    def _xp_events(user_id: int, xp: XPAwardResult, context: dict) -> List[Event]:
        events = [Event(EVENT_XP_GAINED, user_id, {
            **context,
            "amount": xp.awarded + xp.level_bonus,
            "total_xp": xp.total_xp,
            "level": xp.level,
        })]
        if xp.leveled_up:
            events.append(Event(EVENT_LEVEL_UP, user_id, {
                "previous_level": xp.previous_level,
                "level": xp.level,
                "total_xp": xp.total_xp,
            }))
        return events
