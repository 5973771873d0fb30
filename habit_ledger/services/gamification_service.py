"""
XP and leveling service.

Leveling curve (progressive, each level needs ~20% more XP than the previous):
- Level 1 -> 2: 100 XP
- Level 2 -> 3: 120 XP
- Level 3 -> 4: 140 XP
- Level 4 -> 5: 170 XP
Step for level N = round_to_ten(LEVEL_XP_BASE * LEVEL_XP_MULTIPLIER ** (N - 1))

XP award rules:
- Habit completion: 10 XP base
- Streak bonus: +5 at 7 days, +10 more at 30, +20 more at 100
- First completion of a habit: +5
- Perfect week (every expected day of the week done): +20
- Forgiveness completion: fixed 5 XP, no bonuses
- Level up: new_level * 10 per level gained

Every award is its own XPTransaction, so total_xp can always be rebuilt by
summing the ledger. The level is a pure function of total_xp and is only
cached on the user.
"""
import json
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from habit_ledger.constants import (
    BASE_COMPLETION_XP,
    FIRST_COMPLETION_BONUS,
    LEVEL_BONUS_PER_LEVEL,
    LEVEL_XP_BASE,
    LEVEL_XP_MULTIPLIER,
    PERFECT_WEEK_BONUS,
    STREAK_BONUS_TIERS,
    XP_SOURCE_FIRST_COMPLETION,
    XP_SOURCE_HABIT_COMPLETION,
    XP_SOURCE_LEVEL_BONUS,
    XP_SOURCE_PERFECT_WEEK,
    XP_SOURCE_STREAK_BONUS,
    XP_SOURCES,
)
from habit_ledger.exceptions import UserNotFoundException, ValidationException
from habit_ledger.models import User, XPTransaction
from habit_ledger.repositories.ledger_repository import XPTransactionRepository
from habit_ledger.repositories.user_repository import UserRepository
from habit_ledger.services.date_service import DateService

logger = logging.getLogger("habit_ledger.gamification")


def _round_to_ten(value: float) -> int:
    return int(math.floor(value / 10 + 0.5)) * 10


def xp_step_for_level(level: int) -> int:
    """XP needed to go from level to level + 1"""
    return _round_to_ten(LEVEL_XP_BASE * LEVEL_XP_MULTIPLIER ** (level - 1))


def xp_for_level(level: int) -> int:
    """Cumulative XP at which level is reached"""
    return sum(xp_step_for_level(lvl) for lvl in range(1, level))


def level_for_xp(total_xp: int) -> int:
    """Level reached with total_xp (level 1 at 0 XP)"""
    level = 1
    accumulated = 0
    step = xp_step_for_level(level)
    while total_xp >= accumulated + step:
        accumulated += step
        level += 1
        step = xp_step_for_level(level)
    return level


@dataclass
class XPEntry:
    """One XP award, becomes one XPTransaction"""
    amount: int
    source: str
    description: str
    details: dict = field(default_factory=dict)


@dataclass
class XPAwardResult:
    awarded: int
    level_bonus: int
    total_xp: int
    level: int
    previous_level: int
    transactions: List[XPTransaction] = field(default_factory=list)

    @property
    def leveled_up(self) -> bool:
        return self.level > self.previous_level


def calculate_completion_xp(
    habit_name: str,
    current_streak: int,
    is_first_completion: bool,
    perfect_week: bool
) -> List[XPEntry]:
    """
    XP entries for a normal completion, base first then each bonus.

    Args:
        habit_name: Used in transaction descriptions
        current_streak: Streak including this completion
        is_first_completion: Habit had no completions before
        perfect_week: This completion filled every expected day of its week

    Returns:
        List of entries; sum is the completion's xp_earned
    """
    entries = [XPEntry(
        amount=BASE_COMPLETION_XP,
        source=XP_SOURCE_HABIT_COMPLETION,
        description=f"Completed {habit_name}",
        details={"streak_length": current_streak},
    )]

    streak_bonus = sum(bonus for minimum, bonus in STREAK_BONUS_TIERS if current_streak >= minimum)
    if streak_bonus:
        entries.append(XPEntry(
            amount=streak_bonus,
            source=XP_SOURCE_STREAK_BONUS,
            description=f"{current_streak}-day streak bonus for {habit_name}",
            details={"streak_length": current_streak},
        ))

    if is_first_completion:
        entries.append(XPEntry(
            amount=FIRST_COMPLETION_BONUS,
            source=XP_SOURCE_FIRST_COMPLETION,
            description=f"First completion of {habit_name}",
        ))

    if perfect_week:
        entries.append(XPEntry(
            amount=PERFECT_WEEK_BONUS,
            source=XP_SOURCE_PERFECT_WEEK,
            description=f"Perfect week for {habit_name}",
        ))

    return entries


class GamificationService:
    """Service for XP awards and level tracking"""

    def __init__(self, db: Session):
        self.db = db
        self.user_repo = UserRepository()
        self.xp_repo = XPTransactionRepository()

    def award_xp(
        self,
        user_id: int,
        amount: int,
        source: str,
        description: str,
        habit_id: Optional[int] = None,
        completion_id: Optional[int] = None,
        details: Optional[dict] = None
    ) -> XPAwardResult:
        """Append a single XP transaction and update the user's totals"""
        entry = XPEntry(amount=amount, source=source, description=description, details=details or {})
        return self.award_entries(user_id, [entry], habit_id=habit_id, completion_id=completion_id)

    def award_entries(
        self,
        user_id: int,
        entries: List[XPEntry],
        habit_id: Optional[int] = None,
        completion_id: Optional[int] = None
    ) -> XPAwardResult:
        """
        Append XP transactions, update total_xp and detect level-up.

        Level is checked once after all entries. Each level gained adds a
        level_bonus transaction; if bonuses cross further levels those are
        rewarded too.

        Args:
            user_id: User receiving the XP
            entries: Awards to record
            habit_id: Habit the awards belong to, if any
            completion_id: Completion the awards belong to, if any

        Returns:
            XPAwardResult with the new totals
        """
        user = self.user_repo.get_by_id(self.db, user_id)
        if not user:
            raise UserNotFoundException(user_id)

        for entry in entries:
            if entry.amount == 0:
                raise ValidationException("amount", "XP amount must be a non-zero integer")
            if entry.source not in XP_SOURCES:
                raise ValidationException("source", f"Unknown XP source '{entry.source}'")

        previous_level = level_for_xp(user.total_xp)
        transactions = []
        awarded = 0

        for entry in entries:
            transactions.append(self._append(user_id, entry, habit_id, completion_id))
            awarded += entry.amount

        self.user_repo.add_xp(self.db, user_id, awarded)
        self.user_repo.refresh(self.db, user)

        level_bonus = 0
        rewarded_level = previous_level
        level = level_for_xp(user.total_xp)
        while level > rewarded_level:
            for new_level in range(rewarded_level + 1, level + 1):
                bonus = new_level * LEVEL_BONUS_PER_LEVEL
                transactions.append(self._append(user_id, XPEntry(
                    amount=bonus,
                    source=XP_SOURCE_LEVEL_BONUS,
                    description=f"Level {new_level} bonus",
                    details={"new_level": new_level, "old_level": new_level - 1},
                ), None, None))
                level_bonus += bonus
            self.user_repo.add_xp(self.db, user_id, sum(
                lvl * LEVEL_BONUS_PER_LEVEL for lvl in range(rewarded_level + 1, level + 1)
            ))
            self.user_repo.refresh(self.db, user)
            rewarded_level = level
            level = level_for_xp(user.total_xp)

        user.level = level
        self.db.flush()

        if level > previous_level:
            logger.info(f"User {user_id} leveled up: {previous_level} -> {level}")

        return XPAwardResult(
            awarded=awarded,
            level_bonus=level_bonus,
            total_xp=user.total_xp,
            level=level,
            previous_level=previous_level,
            transactions=transactions,
        )

    def _append(
        self,
        user_id: int,
        entry: XPEntry,
        habit_id: Optional[int],
        completion_id: Optional[int]
    ) -> XPTransaction:
        transaction = XPTransaction(
            user_id=user_id,
            habit_id=habit_id,
            completion_id=completion_id,
            amount=entry.amount,
            source=entry.source,
            description=entry.description[:200],
            details=json.dumps(entry.details) if entry.details else None,
            created_at=DateService.now(),
        )
        return self.xp_repo.create(self.db, transaction)

    def get_level_progress(self, user: User) -> dict:
        """Level summary for a user (original gamification dashboard data)"""
        level = level_for_xp(user.total_xp)
        xp_for_current = xp_for_level(level)
        step = xp_step_for_level(level)
        progress = (user.total_xp - xp_for_current) / step * 100
        return {
            "total_xp": user.total_xp,
            "current_level": level,
            "xp_for_current_level": xp_for_current,
            "xp_for_next_level": xp_for_current + step,
            "progress_percentage": round(progress),
            "forgiveness_tokens": user.forgiveness_tokens,
        }

    def get_xp_history(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        source: Optional[str] = None
    ) -> dict:
        """Paginated XP transaction history, newest first"""
        skip = (page - 1) * limit
        transactions = self.xp_repo.get_history(self.db, user_id, skip, limit, source)
        total = self.xp_repo.count_for_user(self.db, user_id, source)
        return {
            "transactions": transactions,
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        }
