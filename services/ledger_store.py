"""
Ledger Store - transactional persistence for settlement entities

Every balance or status mutation is a single conditional UPDATE whose WHERE
clause carries the guard (expected status, sufficient funds). The affected
row count tells the caller whether it won: zero rows means another request
already moved the entity, and the caller decides between no-op and conflict.
"""

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Generator, Iterable, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from models import BalanceLedgerEntry, CreatorBalance

logger = logging.getLogger(__name__)


class LedgerStore:
    """Injected persistence seam shared by all settlement services"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    @property
    def engine(self):
        return self.session_factory.kw["bind"]

    @contextmanager
    def unit_of_work(self) -> Generator[Session, None, None]:
        """Commit on success, roll back and re-raise on any error"""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.debug(f"Unit of work rolled back: {type(e).__name__}: {e}")
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Conditional status updates
    # ------------------------------------------------------------------

    def conditional_update(self, session: Session, model, criteria: Iterable, values: Dict[str, Any]) -> int:
        """UPDATE model SET values WHERE criteria; returns affected row count"""
        session.flush()
        stmt = (
            update(model)
            .where(and_(*criteria))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        rowcount = session.execute(stmt).rowcount
        # Loaded instances of the model reload from the row on next access
        for instance in list(session.identity_map.values()):
            if isinstance(instance, model):
                session.expire(instance)
        return rowcount

    def transition_status(
        self,
        session: Session,
        model,
        row_id: int,
        from_statuses: Iterable[str],
        to_status: str,
        **fields,
    ) -> int:
        """Move one row to ``to_status`` only if it currently sits in ``from_statuses``"""
        allowed = list(from_statuses)
        return self.conditional_update(
            session,
            model,
            [model.id == row_id, model.status.in_(allowed)],
            {"status": to_status, **fields},
        )

    # ------------------------------------------------------------------
    # Creator balance deltas
    # ------------------------------------------------------------------

    def ensure_balance_row(self, session: Session, creator_id: str) -> CreatorBalance:
        """Return the creator's balance row, creating an empty one if absent"""
        balance = session.execute(
            select(CreatorBalance).where(CreatorBalance.creator_id == creator_id)
        ).scalar_one_or_none()
        if balance is not None:
            return balance

        try:
            with session.begin_nested():
                balance = CreatorBalance(
                    creator_id=creator_id,
                    available=Decimal("0"),
                    pending_withdrawal=Decimal("0"),
                    total_earned=Decimal("0"),
                    total_withdrawn=Decimal("0"),
                )
                session.add(balance)
            logger.info(f"✅ BALANCE_ROW_CREATED: creator={creator_id}")
            return balance
        except IntegrityError:
            # Another transaction created the row first
            return session.execute(
                select(CreatorBalance).where(CreatorBalance.creator_id == creator_id)
            ).scalar_one()

    def credit_balance(self, session: Session, creator_id: str, amount: Decimal) -> int:
        """available += amount, total_earned += amount"""
        self.ensure_balance_row(session, creator_id)
        return self.conditional_update(
            session,
            CreatorBalance,
            [CreatorBalance.creator_id == creator_id],
            {
                "available": CreatorBalance.available + amount,
                "total_earned": CreatorBalance.total_earned + amount,
            },
        )

    def reserve_balance(self, session: Session, creator_id: str, amount: Decimal) -> int:
        """Move amount from available to pending_withdrawal if available covers it"""
        self.ensure_balance_row(session, creator_id)
        return self.conditional_update(
            session,
            CreatorBalance,
            [CreatorBalance.creator_id == creator_id, CreatorBalance.available >= amount],
            {
                "available": CreatorBalance.available - amount,
                "pending_withdrawal": CreatorBalance.pending_withdrawal + amount,
            },
        )

    def restore_reservation(self, session: Session, creator_id: str, amount: Decimal) -> int:
        """Return a reserved amount from pending_withdrawal to available"""
        return self.conditional_update(
            session,
            CreatorBalance,
            [CreatorBalance.creator_id == creator_id, CreatorBalance.pending_withdrawal >= amount],
            {
                "available": CreatorBalance.available + amount,
                "pending_withdrawal": CreatorBalance.pending_withdrawal - amount,
            },
        )

    def settle_reservation(self, session: Session, creator_id: str, amount: Decimal) -> int:
        """Pay out a reserved amount: pending_withdrawal -= amount, total_withdrawn += amount"""
        return self.conditional_update(
            session,
            CreatorBalance,
            [CreatorBalance.creator_id == creator_id, CreatorBalance.pending_withdrawal >= amount],
            {
                "pending_withdrawal": CreatorBalance.pending_withdrawal - amount,
                "total_withdrawn": CreatorBalance.total_withdrawn + amount,
            },
        )

    def append_ledger_entry(
        self, session: Session, creator_id: str, entry_type: str, amount: Decimal, reference: str
    ) -> BalanceLedgerEntry:
        entry = BalanceLedgerEntry(
            creator_id=creator_id,
            entry_type=entry_type,
            amount=amount,
            reference=reference,
        )
        session.add(entry)
        return entry

    @staticmethod
    def balance_snapshot(balance: CreatorBalance) -> Dict[str, Any]:
        return {
            "creator_id": balance.creator_id,
            "available": balance.available,
            "pending_withdrawal": balance.pending_withdrawal,
            "total_earned": balance.total_earned,
            "total_withdrawn": balance.total_withdrawn,
        }
