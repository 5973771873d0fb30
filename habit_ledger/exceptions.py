"""
Custom exceptions for the habit ledger.
Each validation outcome has its own type so callers can render a specific message.
"""
from datetime import date
from typing import Optional


class HabitLedgerException(Exception):
    """Base exception for habit ledger application"""
    error_code = "habit_ledger_error"
    status_code = 400

    def to_dict(self) -> dict:
        return {"error": self.error_code, "detail": str(self)}


class UserNotFoundException(HabitLedgerException):
    """Raised when a user is not found"""
    error_code = "user_not_found"
    status_code = 404

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"User with ID {user_id} not found")


class HabitNotFoundException(HabitLedgerException):
    """Raised when a habit is not found or is not owned by the user"""
    error_code = "habit_not_found"
    status_code = 404

    def __init__(self, habit_id: int):
        self.habit_id = habit_id
        super().__init__(f"Habit with ID {habit_id} not found")


class HabitInactiveException(HabitLedgerException):
    """Raised when completing an archived or inactive habit"""
    error_code = "habit_inactive"

    def __init__(self, habit_id: int):
        self.habit_id = habit_id
        super().__init__(f"Habit with ID {habit_id} is not active")


class DuplicateCompletionException(HabitLedgerException):
    """Raised when a habit already has a completion for the given day"""
    error_code = "duplicate_completion"
    status_code = 409

    def __init__(self, habit_id: int, day: date):
        self.habit_id = habit_id
        self.day = day
        super().__init__(f"Habit {habit_id} already completed or forgiven for {day.isoformat()}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"habit_id": self.habit_id, "day": self.day.isoformat()})
        return data


class InvalidCompletionDateException(HabitLedgerException):
    """Raised when a normal completion targets a day other than today"""
    error_code = "invalid_completion_date"

    def __init__(self, day: date, today: date):
        self.day = day
        self.today = today
        super().__init__(
            f"Cannot complete habit for {day.isoformat()} (today is {today.isoformat()}). "
            "Use a forgiveness token for missed days."
        )


class HabitNotScheduledException(HabitLedgerException):
    """Raised when a weekly/custom habit is not due on the given day"""
    error_code = "habit_not_scheduled"

    def __init__(self, habit_id: int, reason: str):
        self.habit_id = habit_id
        self.reason = reason
        super().__init__(reason)


class HabitNotEligibleException(HabitLedgerException):
    """Raised when forgiveness is requested for a non-daily habit"""
    error_code = "habit_not_eligible"

    def __init__(self, habit_id: int, frequency: str):
        self.habit_id = habit_id
        self.frequency = frequency
        super().__init__(
            f"Forgiveness tokens can only be used on daily habits (habit {habit_id} is {frequency})"
        )


class ForgivenessWindowExceededException(HabitLedgerException):
    """Raised when the forgiven day is today, in the future, or too far back"""
    error_code = "forgiveness_window_exceeded"

    def __init__(self, day: date, today: date, window_days: int):
        self.day = day
        self.today = today
        self.window_days = window_days
        self.days_late = (today - day).days
        if self.days_late <= 0:
            message = (
                f"Cannot use forgiveness token for {day.isoformat()}: "
                "only past days can be forgiven"
            )
        else:
            message = (
                f"Cannot use forgiveness token for {day.isoformat()}: "
                f"only the last {window_days} days can be forgiven"
            )
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"day": self.day.isoformat(), "window_days": self.window_days})
        return data


class InsufficientTokensException(HabitLedgerException):
    """Raised when the user has no forgiveness tokens left"""
    error_code = "insufficient_tokens"

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__("No forgiveness tokens available")


class DailyForgivenessLimitExceededException(HabitLedgerException):
    """Raised when the user already used the daily forgiveness allowance"""
    error_code = "daily_forgiveness_limit_exceeded"
    status_code = 429

    def __init__(self, user_id: int, limit: int):
        self.user_id = user_id
        self.limit = limit
        super().__init__(
            f"Daily forgiveness limit reached ({limit} per day). Please try again tomorrow."
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["limit"] = self.limit
        return data


class TransientStorageException(HabitLedgerException):
    """Raised when storage stays unavailable after all retries"""
    error_code = "transient_storage_failure"
    status_code = 503

    def __init__(self, operation: str, details: str, attempts: Optional[int] = None):
        self.operation = operation
        self.details = details
        self.attempts = attempts
        super().__init__(f"Database {operation} failed: {details}")


class ValidationException(HabitLedgerException):
    """Raised when data validation fails"""
    error_code = "validation_error"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation error for {field}: {message}")
