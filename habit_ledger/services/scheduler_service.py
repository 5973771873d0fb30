"""
Background scheduler for forgiveness token jobs
Handles:
- Rewarding a token for every fully completed day
- Automatic forgiveness of yesterday's missed daily habit

Jobs run hourly and process only users whose local time just passed
midnight, so each user is handled once per local day.
"""

import logging
from datetime import timedelta
from typing import List

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from habit_ledger.constants import MIDNIGHT_JOBS_LOCAL_HOUR
from habit_ledger.database import SessionLocal
from habit_ledger.exceptions import HabitLedgerException
from habit_ledger.models import User
from habit_ledger.repositories.user_repository import UserRepository
from habit_ledger.services.date_service import DateService
from habit_ledger.services.habit_service import HabitService

logger = logging.getLogger("habit_ledger.scheduler")

# Create scheduler instance
scheduler = AsyncIOScheduler()


def _users_at_local_midnight(users: List[User]) -> List[User]:
    return [
        user for user in users
        if DateService.get_local_now(user.timezone).hour == MIDNIGHT_JOBS_LOCAL_HOUR
    ]


def award_tokens_for_users(db, users: List[User]) -> int:
    """Reward yesterday's fully completed day for each user, returns tokens awarded"""
    service = HabitService(db)
    awarded = 0
    for user in users:
        user_id = user.id
        yesterday = DateService.get_local_today(user.timezone) - timedelta(days=1)
        try:
            if service.award_daily_token(user_id, yesterday):
                awarded += 1
        except Exception as e:
            logger.error(f"Token reward failed for user {user_id}: {e}")
    return awarded


def auto_forgive_users(db, users: List[User]) -> int:
    """Run automatic forgiveness for each user, returns habits forgiven"""
    service = HabitService(db)
    forgiven = 0
    for user in users:
        user_id = user.id
        try:
            result = service.auto_forgive(user_id)
            if result is not None:
                forgiven += 1
                logger.info(
                    f"Auto-forgiveness applied for user {user_id}: habit "
                    f"{result.authorization.habit_id} on {result.authorization.day.isoformat()}"
                )
        except HabitLedgerException as e:
            # Ineligible today (daily cap, no tokens left, already completed)
            logger.info(f"Auto-forgiveness skipped for user {user_id}: {e}")
        except Exception as e:
            logger.error(f"Auto-forgiveness failed for user {user_id}: {e}")
    return forgiven


async def run_token_rewards():
    """Job: forgiveness token reward"""
    db = SessionLocal()
    try:
        users = _users_at_local_midnight(UserRepository.get_with_tokens_below_max(db))
        if not users:
            return
        awarded = award_tokens_for_users(db, users)
        logger.info(f"Token reward job: {awarded} tokens awarded to {len(users)} users checked")
    except Exception as e:
        logger.error(f"Scheduler Error (Token Rewards): {e}")
    finally:
        db.close()


async def run_auto_forgiveness():
    """Job: automatic forgiveness"""
    db = SessionLocal()
    try:
        users = _users_at_local_midnight(UserRepository.get_auto_forgiveness_candidates(db))
        if not users:
            return
        forgiven = auto_forgive_users(db, users)
        logger.info(f"Auto-forgiveness job: {forgiven} habits forgiven for {len(users)} users checked")
    except Exception as e:
        logger.error(f"Scheduler Error (Auto-Forgiveness): {e}")
    finally:
        db.close()


def start_scheduler():
    """Start the scheduler"""
    if not scheduler.running:
        # Top of every hour: some timezone has just reached local midnight
        trigger = CronTrigger(minute=0)

        scheduler.add_job(
            run_token_rewards,
            trigger,
            id='token_rewards',
            replace_existing=True
        )

        scheduler.add_job(
            run_auto_forgiveness,
            CronTrigger(minute=1),
            id='auto_forgiveness',
            replace_existing=True
        )

        scheduler.start()
        logger.info(">>> APScheduler STARTED <<<")
        logger.info(f"Scheduled jobs: {[job.id for job in scheduler.get_jobs()]}")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")
