"""
User repository - Data access layer for User model.
Writes are flushed, not committed: the calling service owns the transaction.
"""
from datetime import date
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from habit_ledger.constants import MAX_FORGIVENESS_TOKENS
from habit_ledger.models import User


class UserRepository:
    """Repository for User data access"""

    @staticmethod
    def get_by_id(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID"""
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_for_update(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID, locking the row until the transaction ends"""
        return db.query(User).filter(User.id == user_id).with_for_update().first()

    @staticmethod
    def get_with_tokens_below_max(db: Session) -> List[User]:
        """Users that can still receive a forgiveness token"""
        return db.query(User).filter(
            User.forgiveness_tokens < MAX_FORGIVENESS_TOKENS
        ).order_by(User.id).all()

    @staticmethod
    def get_auto_forgiveness_candidates(db: Session) -> List[User]:
        """Users with auto-forgiveness enabled and at least one token"""
        return db.query(User).filter(
            User.auto_forgiveness_enabled == True,
            User.forgiveness_tokens > 0
        ).order_by(User.id).all()

    @staticmethod
    def create(db: Session, user: User) -> User:
        """Create new user"""
        db.add(user)
        db.flush()
        return user

    @staticmethod
    def consume_token(db: Session, user_id: int) -> bool:
        """
        Atomically take one forgiveness token.

        Compare-and-swap on the balance: only succeeds while tokens > 0, so two
        concurrent spends of the last token cannot both succeed.

        Returns:
            True if a token was taken
        """
        result = db.execute(
            update(User)
            .where(User.id == user_id, User.forgiveness_tokens > 0)
            .values(forgiveness_tokens=User.forgiveness_tokens - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def grant_token(db: Session, user_id: int, reward_date: date) -> bool:
        """
        Atomically add one forgiveness token (capped) and mark the reward day.

        Returns:
            True if a token was added
        """
        result = db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.forgiveness_tokens < MAX_FORGIVENESS_TOKENS
            )
            .values(
                forgiveness_tokens=User.forgiveness_tokens + 1,
                last_token_reward_date=reward_date
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def add_xp(db: Session, user_id: int, amount: int) -> None:
        """Apply a signed XP delta to the cached total in place"""
        db.execute(
            update(User)
            .where(User.id == user_id)
            .values(total_xp=User.total_xp + amount)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def refresh(db: Session, user: User) -> User:
        db.refresh(user)
        return user
