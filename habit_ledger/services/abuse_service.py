"""
Forgiveness abuse detection.
Advisory only: scans recent forgiveness usage and reports suspicious patterns,
it never blocks a forgiveness grant.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import List

from sqlalchemy.orm import Session

from habit_ledger.constants import (
    ABUSE_CONSECUTIVE_THRESHOLD,
    ABUSE_FLAG_CONSECUTIVE_RUN,
    ABUSE_FLAG_DUPLICATE_DATE,
    ABUSE_SCAN_LIMIT,
)
from habit_ledger.repositories.completion_repository import CompletionRepository

logger = logging.getLogger("habit_ledger.abuse")


@dataclass
class AbuseReport:
    user_id: int
    scanned: int
    flags: List[str] = field(default_factory=list)
    duplicate_dates: List[date] = field(default_factory=list)
    consecutive_pairs: int = 0

    @property
    def flagged(self) -> bool:
        return bool(self.flags)


def analyze_forgiveness_dates(user_id: int, dates: List[date]) -> AbuseReport:
    """
    Look for abuse patterns in forgiven days.

    - Same calendar date forgiven more than once (across habits)
    - Adjacent forgiven days (sorted descending, gap <= 1 day) counted as
      pairs; ABUSE_CONSECUTIVE_THRESHOLD or more pairs is flagged
    """
    report = AbuseReport(user_id=user_id, scanned=len(dates))

    counts = Counter(dates)
    report.duplicate_dates = sorted(d for d, count in counts.items() if count > 1)
    if report.duplicate_dates:
        report.flags.append(ABUSE_FLAG_DUPLICATE_DATE)

    ordered = sorted(dates, reverse=True)
    report.consecutive_pairs = sum(
        1 for newer, older in zip(ordered, ordered[1:])
        if abs((newer - older).days) <= 1
    )
    if report.consecutive_pairs >= ABUSE_CONSECUTIVE_THRESHOLD:
        report.flags.append(ABUSE_FLAG_CONSECUTIVE_RUN)

    return report


class AbuseDetectionService:
    """Read-only scan of a user's recent forgiveness completions"""

    def __init__(self, db: Session):
        self.db = db
        self.completion_repo = CompletionRepository()

    def scan(self, user_id: int, limit: int = ABUSE_SCAN_LIMIT) -> AbuseReport:
        completions = self.completion_repo.get_recent_forgiveness(self.db, user_id, limit)
        report = analyze_forgiveness_dates(user_id, [c.completed_date for c in completions])

        if ABUSE_FLAG_DUPLICATE_DATE in report.flags:
            logger.warning(
                f"User {user_id}: multiple forgiveness tokens used on same date "
                f"({', '.join(d.isoformat() for d in report.duplicate_dates)})"
            )
        if ABUSE_FLAG_CONSECUTIVE_RUN in report.flags:
            logger.warning(
                f"User {user_id}: forgiveness used on {report.consecutive_pairs} "
                "consecutive days - possible abuse pattern"
            )
        return report
