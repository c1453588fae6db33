"""
Escrow & Balance Accounting

Funds captured for an order sit in an agreement escrow until the brand approves
the content. Release moves the amount minus the platform commission into the
creator's available balance. The active -> released step is a conditional
UPDATE, so concurrent approvals credit the creator exactly once.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import CreatorBalance, EscrowRecord, EscrowStatus, LedgerEntryType, Order, utcnow
from services.ledger_store import LedgerStore
from utils.exception_handler import ConflictError, InternalInconsistencyError, NotFoundError
from utils.financial import FinancialCalculator

logger = logging.getLogger(__name__)


class EscrowAccounting:
    """Owns agreement escrow rows and creator balance credits"""

    def __init__(self, store: LedgerStore):
        self.store = store

    def open_escrow(self, session: Session, order: Order) -> EscrowRecord:
        """Hold the creator amount (not the gateway fee) for a freshly paid order"""
        existing = self._escrow_for_agreement(session, order.agreement_id)
        if existing is not None:
            if existing.amount != order.amount or existing.order_id != order.id:
                raise InternalInconsistencyError(
                    "Escrow already exists for agreement with different terms",
                    {
                        "agreement_id": order.agreement_id,
                        "escrow_amount": str(existing.amount),
                        "order_amount": str(order.amount),
                    },
                )
            logger.info(f"🔁 ESCROW_OPEN_REPLAY: agreement={order.agreement_id} already held")
            return existing

        escrow = EscrowRecord(
            agreement_id=order.agreement_id,
            order_id=order.id,
            brand_id=order.brand_id,
            creator_id=order.creator_id,
            amount=order.amount,
            status=EscrowStatus.ACTIVE.value,
        )
        session.add(escrow)
        session.flush()
        logger.info(
            f"✅ ESCROW_OPENED: agreement={order.agreement_id} order={order.id} amount={order.amount}"
        )
        return escrow

    def release_escrow(self, agreement_id: int, session: Optional[Session] = None) -> Dict[str, Any]:
        """Release an active escrow into the creator balance; a second release is a no-op"""
        if session is None:
            with self.store.unit_of_work() as own_session:
                return self.release_escrow(agreement_id, session=own_session)

        escrow = self._escrow_for_agreement(session, agreement_id)
        if escrow is None:
            raise NotFoundError(f"No escrow for agreement {agreement_id}")

        escrow_id = escrow.id
        creator_id = escrow.creator_id
        amount = escrow.amount
        # Commission rate is read at release time
        split = FinancialCalculator.calculate_release_split(amount, Config.platform_fee_rate())

        rowcount = self.store.conditional_update(
            session,
            EscrowRecord,
            [
                EscrowRecord.agreement_id == agreement_id,
                EscrowRecord.status == EscrowStatus.ACTIVE.value,
            ],
            {
                "status": EscrowStatus.RELEASED.value,
                "released_at": utcnow(),
                "platform_fee": split["platform_fee"],
                "net_amount": split["net_amount"],
            },
        )
        if rowcount == 0:
            session.refresh(escrow)
            logger.info(f"🔁 ESCROW_RELEASE_NOOP: agreement={agreement_id} status={escrow.status}")
            return {
                "released": False,
                "agreement_id": agreement_id,
                "status": escrow.status,
                "creator_id": creator_id,
            }

        credited = self.store.credit_balance(session, creator_id, split["net_amount"])
        if credited != 1:
            raise InternalInconsistencyError(
                "Creator balance row missing during escrow release",
                {"agreement_id": agreement_id, "creator_id": creator_id},
            )
        self.store.append_ledger_entry(
            session,
            creator_id,
            LedgerEntryType.ESCROW_RELEASE.value,
            split["net_amount"],
            f"escrow:{escrow_id}",
        )
        self.check_invariants(session, creator_id)

        logger.info(
            f"✅ ESCROW_RELEASED: agreement={agreement_id} creator={creator_id} amount={amount} "
            f"platform_fee={split['platform_fee']} net={split['net_amount']}"
        )
        return {
            "released": True,
            "agreement_id": agreement_id,
            "status": EscrowStatus.RELEASED.value,
            "creator_id": creator_id,
            "amount": amount,
            "platform_fee": split["platform_fee"],
            "net_amount": split["net_amount"],
        }

    def refund_escrow(self, agreement_id: int, session: Optional[Session] = None) -> bool:
        """Mark an active escrow refunded; never touches the creator balance"""
        if session is None:
            with self.store.unit_of_work() as own_session:
                return self.refund_escrow(agreement_id, session=own_session)

        rowcount = self.store.conditional_update(
            session,
            EscrowRecord,
            [
                EscrowRecord.agreement_id == agreement_id,
                EscrowRecord.status == EscrowStatus.ACTIVE.value,
            ],
            {"status": EscrowStatus.REFUNDED.value, "refunded_at": utcnow()},
        )
        if rowcount:
            logger.info(f"✅ ESCROW_REFUNDED: agreement={agreement_id}")
            return True

        escrow = self._escrow_for_agreement(session, agreement_id)
        if escrow is None:
            logger.warning(f"⚠️ ESCROW_REFUND_MISSING: agreement={agreement_id} has no escrow row")
            return False
        if escrow.status == EscrowStatus.RELEASED.value:
            raise ConflictError(
                "Escrow already released to the creator",
                {"agreement_id": agreement_id},
            )
        logger.info(f"🔁 ESCROW_REFUND_NOOP: agreement={agreement_id} status={escrow.status}")
        return False

    def get_balance(self, creator_id: str) -> Dict[str, Any]:
        """Balance snapshot; creates an empty row for first-time creators"""
        with self.store.unit_of_work() as session:
            balance = self.store.ensure_balance_row(session, creator_id)
            session.flush()
            return self.store.balance_snapshot(balance)

    def verify_balance_invariants(self, creator_id: str) -> Dict[str, Any]:
        with self.store.unit_of_work() as session:
            return self.check_invariants(session, creator_id)

    def check_invariants(self, session: Session, creator_id: str) -> Dict[str, Any]:
        balance = session.execute(
            select(CreatorBalance).where(CreatorBalance.creator_id == creator_id)
        ).scalar_one_or_none()
        if balance is None:
            raise NotFoundError(f"No balance for creator {creator_id}")

        snapshot = self.store.balance_snapshot(balance)
        columns = ("available", "pending_withdrawal", "total_earned", "total_withdrawn")
        negative = [name for name in columns if snapshot[name] < 0]
        if negative:
            raise InternalInconsistencyError(
                f"Negative balance columns: {', '.join(negative)}",
                {key: str(value) for key, value in snapshot.items()},
            )
        held = snapshot["available"] + snapshot["pending_withdrawal"]
        owed = snapshot["total_earned"] - snapshot["total_withdrawn"]
        if held > owed:
            raise InternalInconsistencyError(
                "Balance exceeds lifetime earnings minus withdrawals",
                {key: str(value) for key, value in snapshot.items()},
            )
        return snapshot

    @staticmethod
    def _escrow_for_agreement(session: Session, agreement_id: int) -> Optional[EscrowRecord]:
        return session.execute(
            select(EscrowRecord).where(EscrowRecord.agreement_id == agreement_id)
        ).scalar_one_or_none()
