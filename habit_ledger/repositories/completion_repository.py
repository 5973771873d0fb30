"""
Completion repository - Data access layer for the completion ledger.
"""
from datetime import date
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from habit_ledger.models import Completion


class CompletionRepository:
    """Repository for Completion data access"""

    @staticmethod
    def get_by_habit_and_date(db: Session, habit_id: int, target_date: date) -> Optional[Completion]:
        """Get the completion for a habit on a calendar day"""
        return db.query(Completion).filter(
            Completion.habit_id == habit_id,
            Completion.completed_date == target_date
        ).first()

    @staticmethod
    def exists_for_day(db: Session, habit_id: int, target_date: date) -> bool:
        return CompletionRepository.get_by_habit_and_date(db, habit_id, target_date) is not None

    @staticmethod
    def get_dates_for_habit(db: Session, habit_id: int) -> List[date]:
        """All credited days for a habit, ascending"""
        rows = db.query(Completion.completed_date).filter(
            Completion.habit_id == habit_id
        ).order_by(Completion.completed_date).all()
        return [row[0] for row in rows]

    @staticmethod
    def get_by_habit(db: Session, habit_id: int) -> List[Completion]:
        return db.query(Completion).filter(
            Completion.habit_id == habit_id
        ).order_by(Completion.completed_date).all()

    @staticmethod
    def get_by_user(db: Session, user_id: int) -> List[Completion]:
        return db.query(Completion).filter(
            Completion.user_id == user_id
        ).order_by(Completion.habit_id, Completion.completed_date).all()

    @staticmethod
    def get_history(
        db: Session,
        habit_id: int,
        from_date: date,
        skip: int = 0,
        limit: int = 50
    ) -> List[Completion]:
        """Paginated completions for a habit since from_date, newest first"""
        return db.query(Completion).filter(
            Completion.habit_id == habit_id,
            Completion.completed_date >= from_date
        ).order_by(Completion.completed_date.desc()).offset(skip).limit(limit).all()

    @staticmethod
    def count_history(db: Session, habit_id: int, from_date: date) -> int:
        return db.query(Completion).filter(
            Completion.habit_id == habit_id,
            Completion.completed_date >= from_date
        ).count()

    @staticmethod
    def get_habit_ids_completed_on(
        db: Session,
        user_id: int,
        target_date: date,
        include_forgiven: bool = True
    ) -> List[int]:
        query = db.query(Completion.habit_id).filter(
            Completion.user_id == user_id,
            Completion.completed_date == target_date
        )
        if not include_forgiven:
            query = query.filter(Completion.forgiveness_used == False)
        rows = query.all()
        return [row[0] for row in rows]

    @staticmethod
    def get_recent_forgiveness(db: Session, user_id: int, limit: int) -> List[Completion]:
        """Most recent forgiveness completions by credited day"""
        return db.query(Completion).filter(
            Completion.user_id == user_id,
            Completion.forgiveness_used == True
        ).order_by(Completion.completed_date.desc(), Completion.id.desc()).limit(limit).all()

    @staticmethod
    def sum_xp_for_habit(db: Session, habit_id: int) -> int:
        total = db.query(func.coalesce(func.sum(Completion.xp_earned), 0)).filter(
            Completion.habit_id == habit_id
        ).scalar()
        return int(total or 0)

    @staticmethod
    def create(db: Session, completion: Completion) -> Completion:
        """
        Insert a completion.

        Flushes immediately so the (habit_id, completed_date) unique
        constraint fires here; callers translate IntegrityError.
        """
        db.add(completion)
        db.flush()
        return completion

    @staticmethod
    def delete_for_habit(db: Session, habit_id: int) -> int:
        """Delete all completions of a habit, returns number deleted"""
        deleted = db.query(Completion).filter(
            Completion.habit_id == habit_id
        ).delete(synchronize_session=False)
        db.flush()
        return deleted
