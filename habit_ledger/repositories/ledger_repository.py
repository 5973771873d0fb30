"""
Ledger repository - Data access layer for the append-only XP and forgiveness ledgers.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from habit_ledger.models import ForgivenessGrant, XPTransaction


class XPTransactionRepository:
    """Repository for XPTransaction data access"""

    @staticmethod
    def create(db: Session, transaction: XPTransaction) -> XPTransaction:
        """Append a transaction"""
        db.add(transaction)
        db.flush()
        return transaction

    @staticmethod
    def sum_for_user(db: Session, user_id: int) -> int:
        """Running XP total reconstructed from the ledger"""
        total = db.query(func.coalesce(func.sum(XPTransaction.amount), 0)).filter(
            XPTransaction.user_id == user_id
        ).scalar()
        return int(total or 0)

    @staticmethod
    def sum_for_completion(db: Session, completion_id: int) -> int:
        total = db.query(func.coalesce(func.sum(XPTransaction.amount), 0)).filter(
            XPTransaction.completion_id == completion_id
        ).scalar()
        return int(total or 0)

    @staticmethod
    def get_history(
        db: Session,
        user_id: int,
        skip: int = 0,
        limit: int = 20,
        source: Optional[str] = None
    ) -> List[XPTransaction]:
        """Transactions for a user, newest first"""
        query = db.query(XPTransaction).filter(XPTransaction.user_id == user_id)
        if source:
            query = query.filter(XPTransaction.source == source)
        return query.order_by(
            XPTransaction.created_at.desc(), XPTransaction.id.desc()
        ).offset(skip).limit(limit).all()

    @staticmethod
    def count_for_user(db: Session, user_id: int, source: Optional[str] = None) -> int:
        query = db.query(XPTransaction).filter(XPTransaction.user_id == user_id)
        if source:
            query = query.filter(XPTransaction.source == source)
        return query.count()


class ForgivenessGrantRepository:
    """Repository for ForgivenessGrant data access"""

    @staticmethod
    def create(db: Session, grant: ForgivenessGrant) -> ForgivenessGrant:
        db.add(grant)
        db.flush()
        return grant

    @staticmethod
    def count_since(db: Session, user_id: int, since: datetime) -> int:
        """Grants made to a user at or after the given UTC instant"""
        return db.query(ForgivenessGrant).filter(
            ForgivenessGrant.user_id == user_id,
            ForgivenessGrant.granted_at >= since
        ).count()
