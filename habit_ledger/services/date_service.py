"""
Date calculation service.
Resolves user-local calendar days from timezones and handles week/weekday logic.
All "now" reads go through utcnow() so they can be controlled in one place.
"""
import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from habit_ledger.constants import DEFAULT_TIMEZONE

logger = logging.getLogger("habit_ledger.dates")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DateService:
    """Service for timezone and calendar-day operations"""

    @staticmethod
    def now() -> datetime:
        """Current naive UTC time, read through utcnow()"""
        return utcnow()

    @staticmethod
    def get_zone(tz_name: Optional[str]) -> ZoneInfo:
        """
        Resolve an IANA timezone name.

        Unknown or empty names fall back to UTC rather than failing the request.
        """
        try:
            return ZoneInfo(tz_name or DEFAULT_TIMEZONE)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            logger.warning(f"Unknown timezone '{tz_name}', falling back to {DEFAULT_TIMEZONE}")
            return ZoneInfo(DEFAULT_TIMEZONE)

    @staticmethod
    def is_valid_timezone(tz_name: str) -> bool:
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            return False
        return True

    @staticmethod
    def get_local_now(tz_name: Optional[str]) -> datetime:
        """Current time in the given timezone (aware)"""
        zone = DateService.get_zone(tz_name)
        return utcnow().replace(tzinfo=timezone.utc).astimezone(zone)

    @staticmethod
    def get_local_today(tz_name: Optional[str]) -> date:
        """
        Calendar day "today" in the given timezone.

        Example: at 2026-01-30 03:00 UTC it is still 2026-01-29 in
        America/New_York.
        """
        return DateService.get_local_now(tz_name).date()

    @staticmethod
    def local_day_start_utc(target_date: date, tz_name: Optional[str]) -> datetime:
        """Local midnight of target_date expressed as naive UTC"""
        zone = DateService.get_zone(tz_name)
        local_midnight = datetime.combine(target_date, datetime.min.time(), tzinfo=zone)
        return local_midnight.astimezone(timezone.utc).replace(tzinfo=None)

    @staticmethod
    def week_start(target_date: date) -> date:
        """Monday of the week containing target_date"""
        return target_date - timedelta(days=target_date.weekday())

    @staticmethod
    def week_dates(target_date: date) -> List[date]:
        """All seven days (Mon-Sun) of the week containing target_date"""
        start = DateService.week_start(target_date)
        return [start + timedelta(days=offset) for offset in range(7)]

    @staticmethod
    def parse_days_of_week(raw: Optional[str]) -> List[int]:
        """
        Parse days_of_week JSON array like "[0,2,4]" (Mon, Wed, Fri).

        Invalid values are dropped; malformed JSON yields an empty list.
        """
        if not raw:
            return []
        try:
            days = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return []
        if not isinstance(days, list):
            return []
        return sorted({int(d) for d in days if isinstance(d, int) and 0 <= d <= 6})

    @staticmethod
    def serialize_days_of_week(days: Optional[List[int]]) -> Optional[str]:
        if not days:
            return None
        return json.dumps(sorted(set(days)))
