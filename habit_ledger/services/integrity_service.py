"""
Integrity auditor - read-only diagnostics over a user's ledgers.
Used by the audit endpoint and tests, never in the request path.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from typing import List

from sqlalchemy.orm import Session

from habit_ledger.constants import FORGIVENESS_XP, MAX_FORGIVENESS_TOKENS
from habit_ledger.exceptions import UserNotFoundException
from habit_ledger.repositories.completion_repository import CompletionRepository
from habit_ledger.repositories.habit_repository import HabitRepository
from habit_ledger.repositories.ledger_repository import XPTransactionRepository
from habit_ledger.repositories.user_repository import UserRepository
from habit_ledger.services.date_service import DateService
from habit_ledger.services.gamification_service import level_for_xp
from habit_ledger.services.streak_service import StreakService

logger = logging.getLogger("habit_ledger.integrity")

VIOLATION_DUPLICATE_COMPLETION = "duplicate_completion"
VIOLATION_FUTURE_COMPLETION = "future_completion"
VIOLATION_FORGIVENESS_FLAGS = "forgiveness_flags"
VIOLATION_TOKEN_RANGE = "token_range"
VIOLATION_STALE_AGGREGATES = "stale_aggregates"
VIOLATION_XP_MISMATCH = "xp_mismatch"
VIOLATION_LEVEL_MISMATCH = "level_mismatch"


@dataclass
class IntegrityViolation:
    kind: str
    entity: str
    message: str


class IntegrityAuditor:
    """Checks that a user's stored state satisfies the ledger invariants"""

    def __init__(self, db: Session):
        self.db = db
        self.user_repo = UserRepository()
        self.habit_repo = HabitRepository()
        self.completion_repo = CompletionRepository()
        self.xp_repo = XPTransactionRepository()
        self.streak_service = StreakService(db)

    def audit_user(self, user_id: int) -> List[IntegrityViolation]:
        user = self.user_repo.get_by_id(self.db, user_id)
        if not user:
            raise UserNotFoundException(user_id)

        violations = []
        completions = self.completion_repo.get_by_user(self.db, user_id)

        per_day = Counter((c.habit_id, c.completed_date) for c in completions)
        for (habit_id, day), count in per_day.items():
            if count > 1:
                violations.append(IntegrityViolation(
                    VIOLATION_DUPLICATE_COMPLETION,
                    f"habit:{habit_id}",
                    f"{count} completions for {day.isoformat()}",
                ))

        for completion in completions:
            local_today = DateService.get_local_today(completion.device_timezone)
            if completion.completed_date > local_today:
                violations.append(IntegrityViolation(
                    VIOLATION_FUTURE_COMPLETION,
                    f"completion:{completion.id}",
                    f"Credited day {completion.completed_date.isoformat()} is in the future",
                ))
            if completion.forgiveness_used and (
                completion.xp_earned != FORGIVENESS_XP or not completion.edited_flag
            ):
                violations.append(IntegrityViolation(
                    VIOLATION_FORGIVENESS_FLAGS,
                    f"completion:{completion.id}",
                    f"Forgiven completion has xp_earned={completion.xp_earned}, "
                    f"edited_flag={completion.edited_flag}",
                ))

        if not 0 <= user.forgiveness_tokens <= MAX_FORGIVENESS_TOKENS:
            violations.append(IntegrityViolation(
                VIOLATION_TOKEN_RANGE,
                f"user:{user_id}",
                f"Token balance {user.forgiveness_tokens} outside 0-{MAX_FORGIVENESS_TOKENS}",
            ))

        for habit in self.habit_repo.get_by_user(self.db, user_id):
            fresh = self.streak_service.compute_for_habit(habit)
            cached = (
                habit.current_streak, habit.longest_streak,
                habit.total_completions, habit.consistency_rate,
            )
            expected = (
                fresh.current_streak, fresh.longest_streak,
                fresh.total_completions, fresh.consistency_rate,
            )
            if cached != expected:
                violations.append(IntegrityViolation(
                    VIOLATION_STALE_AGGREGATES,
                    f"habit:{habit.id}",
                    f"Cached (current, longest, total, consistency) {cached} != fresh {expected}",
                ))

        ledger_total = self.xp_repo.sum_for_user(self.db, user_id)
        if user.total_xp != ledger_total:
            violations.append(IntegrityViolation(
                VIOLATION_XP_MISMATCH,
                f"user:{user_id}",
                f"total_xp {user.total_xp} != ledger sum {ledger_total}",
            ))

        expected_level = level_for_xp(user.total_xp)
        if user.level != expected_level:
            violations.append(IntegrityViolation(
                VIOLATION_LEVEL_MISMATCH,
                f"user:{user_id}",
                f"Cached level {user.level} != {expected_level} for {user.total_xp} XP",
            ))

        if violations:
            logger.warning(f"Integrity audit of user {user_id}: {len(violations)} violations")
        else:
            logger.info(f"Integrity audit of user {user_id}: OK")
        return violations
