"""
Creator Withdrawal Workflow

PENDING -> APPROVED -> PROCESSING -> COMPLETED, PENDING -> REJECTED.

A request reserves its amount (available -> pending_withdrawal) at creation.
Rejection gives the reservation back; completion pays it out. Status change
and balance delta always commit together.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    ACTIVE_WITHDRAWAL_STATUSES,
    CreatorBalance,
    LedgerEntryType,
    WithdrawalRequest,
    WithdrawalStatus,
    utcnow,
)
from services.escrow_accounting import EscrowAccounting
from services.ledger_store import LedgerStore
from utils.exception_handler import (
    ConflictError,
    InsufficientBalanceError,
    InternalInconsistencyError,
    NotFoundError,
    ValidationError,
)
from utils.financial import FinancialCalculator

logger = logging.getLogger(__name__)


class WithdrawalWorkflow:
    """Creator payout requests and their admin processing"""

    def __init__(self, store: LedgerStore, escrow: EscrowAccounting):
        self.store = store
        self.escrow = escrow

    def request_withdrawal(self, creator_id: str, amount: Any, bank_details: Any) -> Dict[str, Any]:
        if amount is None or not bank_details:
            raise ValidationError("requested_amount and bank_details are required")
        if not isinstance(bank_details, dict):
            raise ValidationError("bank_details must be an object")

        amount = FinancialCalculator.to_money(amount, "requested_amount")
        minimum = FinancialCalculator.quantize(Config.MIN_WITHDRAWAL_AMOUNT)
        bank_fee = FinancialCalculator.quantize(Config.BANK_WITHDRAWAL_FEE)
        if amount < minimum:
            raise ValidationError(
                f"Minimum withdrawal amount is {minimum} {Config.DEFAULT_CURRENCY}",
                {"minimum": str(minimum)},
            )
        if amount <= bank_fee:
            raise ValidationError(f"Withdrawal amount must exceed the bank fee of {bank_fee}")
        net_amount = FinancialCalculator.quantize(amount - bank_fee)

        with self.store.unit_of_work() as session:
            active = session.execute(
                select(WithdrawalRequest.id).where(
                    WithdrawalRequest.creator_id == creator_id,
                    WithdrawalRequest.status.in_(ACTIVE_WITHDRAWAL_STATUSES),
                )
            ).scalars().first()
            if active is not None:
                raise ConflictError("A withdrawal request is already in progress", {"request_id": active})

            reserved = self.store.reserve_balance(session, creator_id, amount)
            if reserved == 0:
                available = session.execute(
                    select(CreatorBalance.available).where(CreatorBalance.creator_id == creator_id)
                ).scalar_one_or_none()
                raise InsufficientBalanceError(
                    "Insufficient balance",
                    {"available": str(available or 0), "requested": str(amount)},
                )

            request = WithdrawalRequest(
                creator_id=creator_id,
                requested_amount=amount,
                bank_fee=bank_fee,
                net_amount=net_amount,
                bank_details=bank_details,
                status=WithdrawalStatus.PENDING.value,
            )
            session.add(request)
            try:
                session.flush()
            except IntegrityError:
                raise ConflictError("A withdrawal request is already in progress")

            self.store.append_ledger_entry(
                session, creator_id, LedgerEntryType.WITHDRAWAL_RESERVE.value, amount, f"withdrawal:{request.id}"
            )
            self.escrow.check_invariants(session, creator_id)
            result = self.serialize(request)

        logger.info(
            f"✅ WITHDRAWAL_REQUESTED: request={result['id']} creator={creator_id} "
            f"amount={amount} fee={bank_fee} net={net_amount}"
        )
        return result

    def approve(self, request_id: int, admin_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        with self.store.unit_of_work() as session:
            request = self._transition(
                session,
                request_id,
                [WithdrawalStatus.PENDING.value],
                WithdrawalStatus.APPROVED.value,
                processed_by=admin_id,
                processed_at=utcnow(),
                notes=notes,
            )
            result = self.serialize(request)
        logger.info(f"✅ WITHDRAWAL_APPROVED: request={request_id} by admin={admin_id}")
        return result

    def reject(self, request_id: int, admin_id: str, reason: Optional[str]) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise ValidationError("rejection_reason is required")

        with self.store.unit_of_work() as session:
            request = self._transition(
                session,
                request_id,
                [WithdrawalStatus.PENDING.value],
                WithdrawalStatus.REJECTED.value,
                processed_by=admin_id,
                processed_at=utcnow(),
                rejection_reason=reason.strip(),
            )
            restored = self.store.restore_reservation(session, request.creator_id, request.requested_amount)
            if restored != 1:
                raise InternalInconsistencyError(
                    "Reservation missing while rejecting withdrawal",
                    {"request_id": request_id, "creator_id": request.creator_id},
                )
            self.store.append_ledger_entry(
                session,
                request.creator_id,
                LedgerEntryType.WITHDRAWAL_RESTORE.value,
                request.requested_amount,
                f"withdrawal:{request_id}",
            )
            self.escrow.check_invariants(session, request.creator_id)
            result = self.serialize(request)

        logger.info(f"✅ WITHDRAWAL_REJECTED: request={request_id} by admin={admin_id} reason={reason!r}")
        return result

    def mark_processing(self, request_id: int, admin_id: str) -> Dict[str, Any]:
        """Admin has initiated the bank transfer"""
        with self.store.unit_of_work() as session:
            request = self._transition(
                session,
                request_id,
                [WithdrawalStatus.APPROVED.value],
                WithdrawalStatus.PROCESSING.value,
                processed_by=admin_id,
                processed_at=utcnow(),
            )
            result = self.serialize(request)
        logger.info(f"✅ WITHDRAWAL_PROCESSING: request={request_id} by admin={admin_id}")
        return result

    def complete(
        self,
        request_id: int,
        admin_id: str,
        receipt_url: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self.store.unit_of_work() as session:
            request = self._transition(
                session,
                request_id,
                [WithdrawalStatus.APPROVED.value, WithdrawalStatus.PROCESSING.value],
                WithdrawalStatus.COMPLETED.value,
                processed_by=admin_id,
                processed_at=utcnow(),
                receipt_url=receipt_url,
                notes=notes or "Withdrawal completed",
            )
            settled = self.store.settle_reservation(session, request.creator_id, request.requested_amount)
            if settled != 1:
                raise InternalInconsistencyError(
                    "Reservation missing while completing withdrawal",
                    {"request_id": request_id, "creator_id": request.creator_id},
                )
            self.store.append_ledger_entry(
                session,
                request.creator_id,
                LedgerEntryType.WITHDRAWAL_COMPLETE.value,
                request.requested_amount,
                f"withdrawal:{request_id}",
            )
            self.escrow.check_invariants(session, request.creator_id)
            result = self.serialize(request)

        logger.info(f"✅ WITHDRAWAL_COMPLETED: request={request_id} by admin={admin_id}")
        return result

    def list_requests(self, status: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """Admin listing, newest first"""
        stmt = select(WithdrawalRequest)
        if status:
            stmt = stmt.where(WithdrawalRequest.status == status)
        stmt = stmt.order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc())
        with self.store.unit_of_work() as session:
            rows = session.execute(stmt.limit(limit).offset(offset)).scalars()
            return [self.serialize(row) for row in rows]

    def list_creator_requests(self, creator_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        stmt = (
            select(WithdrawalRequest)
            .where(WithdrawalRequest.creator_id == creator_id)
            .order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self.store.unit_of_work() as session:
            return [self.serialize(row) for row in session.execute(stmt).scalars()]

    def _transition(
        self, session: Session, request_id: int, from_statuses: List[str], to_status: str, **fields
    ) -> WithdrawalRequest:
        request = session.get(WithdrawalRequest, request_id)
        if request is None:
            raise NotFoundError("Withdrawal request not found")

        rowcount = self.store.transition_status(
            session, WithdrawalRequest, request_id, from_statuses, to_status, **fields
        )
        session.refresh(request)
        if rowcount == 0:
            raise ConflictError(
                f"Withdrawal request cannot move from {request.status} to {to_status}",
                {"request_id": request_id, "status": request.status},
            )
        return request

    @staticmethod
    def serialize(request: WithdrawalRequest) -> Dict[str, Any]:
        return {
            "id": request.id,
            "creator_id": request.creator_id,
            "requested_amount": request.requested_amount,
            "bank_fee": request.bank_fee,
            "net_amount": request.net_amount,
            "bank_details": request.bank_details,
            "status": request.status,
            "processed_by": request.processed_by,
            "processed_at": request.processed_at,
            "notes": request.notes,
            "rejection_reason": request.rejection_reason,
            "receipt_url": request.receipt_url,
            "created_at": request.created_at,
        }
