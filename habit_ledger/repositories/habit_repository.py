"""
Habit repository - Data access layer for Habit model.
"""
from typing import List, Optional

from sqlalchemy.orm import Session

from habit_ledger.constants import FREQUENCY_DAILY
from habit_ledger.models import Habit


class HabitRepository:
    """Repository for Habit data access"""

    @staticmethod
    def get_by_id(db: Session, habit_id: int) -> Optional[Habit]:
        """Get habit by ID"""
        return db.query(Habit).filter(Habit.id == habit_id).first()

    @staticmethod
    def get_owned(db: Session, habit_id: int, user_id: int) -> Optional[Habit]:
        """Get habit by ID only if it belongs to user"""
        return db.query(Habit).filter(
            Habit.id == habit_id,
            Habit.user_id == user_id
        ).first()

    @staticmethod
    def get_owned_for_update(db: Session, habit_id: int, user_id: int) -> Optional[Habit]:
        """Get owned habit, locking the row so stat cache writes serialize per habit"""
        return db.query(Habit).filter(
            Habit.id == habit_id,
            Habit.user_id == user_id
        ).with_for_update().first()

    @staticmethod
    def get_by_user(db: Session, user_id: int) -> List[Habit]:
        """Get all habits of a user, archived included"""
        return db.query(Habit).filter(Habit.user_id == user_id).order_by(Habit.id).all()

    @staticmethod
    def get_active_by_user(db: Session, user_id: int) -> List[Habit]:
        """Get active, non-archived habits of a user"""
        return db.query(Habit).filter(
            Habit.user_id == user_id,
            Habit.active == True,
            Habit.archived == False
        ).order_by(Habit.id).all()

    @staticmethod
    def get_active_daily_by_user(db: Session, user_id: int) -> List[Habit]:
        """Get active daily habits (the only ones eligible for forgiveness)"""
        return db.query(Habit).filter(
            Habit.user_id == user_id,
            Habit.active == True,
            Habit.archived == False,
            Habit.frequency == FREQUENCY_DAILY
        ).order_by(Habit.id).all()

    @staticmethod
    def create(db: Session, habit: Habit) -> Habit:
        """Create new habit"""
        db.add(habit)
        db.flush()
        return habit

    @staticmethod
    def delete(db: Session, habit: Habit) -> None:
        """Delete a habit"""
        db.delete(habit)
        db.flush()
