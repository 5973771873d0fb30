import json

from sqlalchemy import (
    Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer,
    String, UniqueConstraint
)

from habit_ledger.constants import (
    DEFAULT_TIMEZONE, FREQUENCY_DAILY, MAX_FORGIVENESS_TOKENS
)
from habit_ledger.database import Base
from habit_ledger.services import date_service


def _now():
    return date_service.utcnow()


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            f"forgiveness_tokens >= 0 AND forgiveness_tokens <= {MAX_FORGIVENESS_TOKENS}",
            name="ck_users_forgiveness_tokens_range"
        ),
        CheckConstraint("total_xp >= 0", name="ck_users_total_xp_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    timezone = Column(String, default=DEFAULT_TIMEZONE, nullable=False)

    forgiveness_tokens = Column(Integer, default=MAX_FORGIVENESS_TOKENS, nullable=False)
    auto_forgiveness_enabled = Column(Boolean, default=True, nullable=False)
    last_token_reward_date = Column(Date, nullable=True)  # Local day of last token reward

    # Caches of the XP ledger (see GamificationService)
    total_xp = Column(Integer, default=0, nullable=False)
    level = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=_now)


class Habit(Base):
    __tablename__ = "habits"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    frequency = Column(String, default=FREQUENCY_DAILY, nullable=False)  # daily, weekly, custom
    days_of_week = Column(String, nullable=True)  # For custom: JSON array like "[0,2,4]" (Mon,Wed,Fri)
    active = Column(Boolean, default=True, nullable=False)
    archived = Column(Boolean, default=False, nullable=False)

    # Cached aggregates, recomputed from completions by StreakService
    current_streak = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    total_completions = Column(Integer, default=0, nullable=False)
    consistency_rate = Column(Integer, default=0, nullable=False)  # 0-100
    stats_updated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_now)

    def get_days_of_week(self) -> list:
        """Selected weekdays for custom habits (0=Monday)"""
        return date_service.DateService.parse_days_of_week(self.days_of_week)


class Completion(Base):
    __tablename__ = "completions"
    __table_args__ = (
        UniqueConstraint("habit_id", "completed_date", name="uq_completions_habit_day"),
        Index("ix_completions_user_forgiveness", "user_id", "forgiveness_used", "completed_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    habit_id = Column(Integer, ForeignKey("habits.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    completed_date = Column(Date, nullable=False)  # Calendar day credited (device timezone)
    device_timezone = Column(String, default=DEFAULT_TIMEZONE, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)  # Server receipt (UTC)

    xp_earned = Column(Integer, default=0, nullable=False)
    forgiveness_used = Column(Boolean, default=False, nullable=False)
    edited_flag = Column(Boolean, default=False, nullable=False)

    details = Column(String, nullable=True)  # JSON: days_late, forgiveness_timezone, auto_forgiveness

    def get_details(self) -> dict:
        if not self.details:
            return {}
        try:
            return json.loads(self.details)
        except json.JSONDecodeError:
            return {}


class XPTransaction(Base):
    __tablename__ = "xp_transactions"
    __table_args__ = (
        CheckConstraint("amount != 0", name="ck_xp_transactions_amount_nonzero"),
        Index("ix_xp_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # Plain ids: the ledger outlives deleted habits and completions
    habit_id = Column(Integer, nullable=True, index=True)
    completion_id = Column(Integer, nullable=True)

    amount = Column(Integer, nullable=False)  # Signed
    source = Column(String, nullable=False)
    description = Column(String, nullable=False)
    details = Column(String, nullable=True)  # JSON

    created_at = Column(DateTime, default=_now, nullable=False)


class ForgivenessGrant(Base):
    __tablename__ = "forgiveness_grants"
    __table_args__ = (
        Index("ix_forgiveness_grants_user_granted_at", "user_id", "granted_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    habit_id = Column(Integer, nullable=False)
    forgiven_date = Column(Date, nullable=False)
    grant_local_date = Column(Date, nullable=False)  # Day the token was spent, stored timezone
    automatic = Column(Boolean, default=False, nullable=False)
    granted_at = Column(DateTime, default=_now, nullable=False)
