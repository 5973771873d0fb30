from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import datetime, date
from typing import List, Optional

from habit_ledger.constants import HABIT_FREQUENCIES, FREQUENCY_CUSTOM
from habit_ledger.services.date_service import DateService


# User schemas
class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    timezone: str = Field(default="UTC")
    auto_forgiveness_enabled: bool = True


class UserResponse(BaseModel):
    id: int
    name: str
    timezone: str
    forgiveness_tokens: int
    auto_forgiveness_enabled: bool
    total_xp: int
    level: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Habit schemas
class HabitCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    frequency: str = Field(default="daily")  # daily, weekly, custom
    days_of_week: Optional[List[int]] = None  # For custom: [0, 2, 4] = Mon, Wed, Fri

    @field_validator("frequency")
    @classmethod
    def validate_frequency(cls, v):
        if v not in HABIT_FREQUENCIES:
            raise ValueError(f"frequency must be one of {', '.join(HABIT_FREQUENCIES)}")
        return v

    @field_validator("days_of_week")
    @classmethod
    def validate_days_of_week(cls, v):
        if v is not None and any(day < 0 or day > 6 for day in v):
            raise ValueError("days_of_week values must be between 0 (Monday) and 6 (Sunday)")
        return v

    @model_validator(mode="after")
    def validate_custom_days(self):
        if self.frequency == FREQUENCY_CUSTOM and not self.days_of_week:
            raise ValueError("custom habits need at least one day in days_of_week")
        return self


class HabitResponse(BaseModel):
    id: int
    user_id: int
    name: str
    frequency: str
    days_of_week: List[int] = []
    active: bool
    archived: bool
    current_streak: int
    longest_streak: int
    total_completions: int
    consistency_rate: int
    stats_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("days_of_week", mode="before")
    @classmethod
    def parse_days_of_week(cls, v):
        # Stored as a JSON string on the model
        if v is None or isinstance(v, str):
            return DateService.parse_days_of_week(v)
        return v


# Completion schemas
class CompleteRequest(BaseModel):
    day: Optional[date] = None  # Defaults to today in timezone
    timezone: Optional[str] = None  # Device timezone, defaults to the user's


class ForgiveRequest(BaseModel):
    day: date
    timezone: Optional[str] = None


class CompletionResponse(BaseModel):
    id: int
    habit_id: int
    user_id: int
    completed_date: date
    device_timezone: str
    created_at: datetime
    xp_earned: int
    forgiveness_used: bool
    edited_flag: bool
    details: Optional[str] = None

    class Config:
        from_attributes = True


class XPStateResponse(BaseModel):
    awarded: int
    level_bonus: int
    total_xp: int
    level: int
    previous_level: int
    leveled_up: bool


class StreakStatsResponse(BaseModel):
    current_streak: int
    longest_streak: int
    total_completions: int
    consistency_rate: int


class CompleteHabitResponse(BaseModel):
    completion: CompletionResponse
    stats: StreakStatsResponse
    xp: XPStateResponse


class ForgiveHabitResponse(BaseModel):
    completion: CompletionResponse
    stats: StreakStatsResponse
    xp: XPStateResponse
    remaining_tokens: int
    daily_usage_remaining: int
    abuse_flags: List[str] = []


class CompletionHistoryResponse(BaseModel):
    completions: List[CompletionResponse]
    page: int
    limit: int
    total: int
    pages: int


class TodayCompletionsResponse(BaseModel):
    habit_ids: List[int]


class HabitDeleteResponse(BaseModel):
    habit_id: int
    completions_deleted: int
    xp_refunded: int
    total_xp: int
    level: int


# Gamification schemas
class GamificationResponse(BaseModel):
    total_xp: int
    current_level: int
    xp_for_current_level: int
    xp_for_next_level: int
    progress_percentage: int
    forgiveness_tokens: int


class XPTransactionResponse(BaseModel):
    id: int
    user_id: int
    habit_id: Optional[int] = None
    completion_id: Optional[int] = None
    amount: int
    source: str
    description: str
    details: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class XPHistoryResponse(BaseModel):
    transactions: List[XPTransactionResponse]
    page: int
    limit: int
    total: int
    pages: int


# Maintenance schemas
class RecalculateResponse(BaseModel):
    habits_updated: int


class IntegrityViolationResponse(BaseModel):
    kind: str
    entity: str
    message: str

    class Config:
        from_attributes = True


class AuditResponse(BaseModel):
    user_id: int
    ok: bool
    violations: List[IntegrityViolationResponse]
