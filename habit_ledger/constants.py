"""
Application constants and environment-driven configuration.
"""
import os

# Environment
DATABASE_URL = os.getenv("HABIT_LEDGER_DATABASE_URL", "sqlite:///./habit_ledger.db")
API_KEY = os.getenv("HABIT_LEDGER_API_KEY", "your-secret-key-change-me")

DEFAULT_LOG_DIRECTORY_PROD = "/var/log/habit-ledger"
DEFAULT_LOG_DIRECTORY_DEV = "./logs"

CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "HABIT_LEDGER_CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"
    ).split(",")
    if origin.strip()
]

DEFAULT_TIMEZONE = "UTC"

# Habit frequencies
FREQUENCY_DAILY = "daily"
FREQUENCY_WEEKLY = "weekly"
FREQUENCY_CUSTOM = "custom"
HABIT_FREQUENCIES = (FREQUENCY_DAILY, FREQUENCY_WEEKLY, FREQUENCY_CUSTOM)

# XP transaction sources
XP_SOURCE_HABIT_COMPLETION = "habit_completion"
XP_SOURCE_STREAK_BONUS = "streak_bonus"
XP_SOURCE_FIRST_COMPLETION = "first_completion"
XP_SOURCE_PERFECT_WEEK = "perfect_week"
XP_SOURCE_FORGIVENESS = "forgiveness"
XP_SOURCE_LEVEL_BONUS = "level_bonus"
XP_SOURCE_REFUND = "refund"
XP_SOURCES = (
    XP_SOURCE_HABIT_COMPLETION,
    XP_SOURCE_STREAK_BONUS,
    XP_SOURCE_FIRST_COMPLETION,
    XP_SOURCE_PERFECT_WEEK,
    XP_SOURCE_FORGIVENESS,
    XP_SOURCE_LEVEL_BONUS,
    XP_SOURCE_REFUND,
)

# Completion XP
BASE_COMPLETION_XP = 10
FORGIVENESS_XP = 5
FIRST_COMPLETION_BONUS = 5
PERFECT_WEEK_BONUS = 20
# (minimum streak, bonus) - bonuses stack
STREAK_BONUS_TIERS = (
    (7, 5),
    (30, 10),
    (100, 20),
)

# Normal completions may only credit today (0) or this many days back
COMPLETION_BACKDATE_DAYS = 0

# Level curve: step from level N to N+1 is round10(XP_BASE * XP_MULTIPLIER ** (N - 1))
LEVEL_XP_BASE = 100
LEVEL_XP_MULTIPLIER = 1.2
LEVEL_BONUS_PER_LEVEL = 10

# Forgiveness tokens
MAX_FORGIVENESS_TOKENS = 3
FORGIVENESS_WINDOW_DAYS = 7
DAILY_FORGIVENESS_LIMIT = 3

# Abuse detection
ABUSE_SCAN_LIMIT = 10
ABUSE_CONSECUTIVE_THRESHOLD = 3
ABUSE_FLAG_DUPLICATE_DATE = "duplicate-date usage"
ABUSE_FLAG_CONSECUTIVE_RUN = "possible abuse pattern"

# Streaks
CONSISTENCY_LOOKBACK_DAYS = 30

# Transient storage failure retry
STORAGE_MAX_RETRIES = 5
STORAGE_RETRY_BASE_DELAY = 0.05  # seconds
STORAGE_RETRY_MAX_DELAY = 1.0  # seconds

# Scheduler: jobs run for users whose local hour equals this value
MIDNIGHT_JOBS_LOCAL_HOUR = 0

# Events
EVENT_HABIT_COMPLETED = "HABIT_COMPLETED"
EVENT_FORGIVENESS_USED = "FORGIVENESS_USED"
EVENT_XP_GAINED = "XP_GAINED"
EVENT_LEVEL_UP = "LEVEL_UP"
EVENT_FORGIVENESS_ABUSE_FLAGGED = "FORGIVENESS_ABUSE_FLAGGED"
