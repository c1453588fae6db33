"""
Order State Machine with Atomic Transitions
Orders move PENDING_PAYMENT -> PAID | FAILED | CANCELLED and PAID -> REFUNDED.
Every transition is a conditional UPDATE on the expected source state, so
racing requests (brand cancel vs. gateway webhook) resolve by whichever
commits first.
"""

import logging
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import AgreementStatus, CampaignAgreement, Order, OrderStatus, utcnow
from services.caller import Caller
from services.ledger_store import LedgerStore
from utils.exception_handler import ConflictError, NotFoundError, ValidationError
from utils.financial import FinancialCalculator

logger = logging.getLogger(__name__)


class OrderStateValidator:
    """Validates order state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {OrderStatus.PENDING_PAYMENT.value},
        OrderStatus.PENDING_PAYMENT.value: {
            OrderStatus.PAID.value,
            OrderStatus.FAILED.value,
            OrderStatus.CANCELLED.value,
        },
        OrderStatus.PAID.value: {OrderStatus.REFUNDED.value},
        # Terminal states
        OrderStatus.FAILED.value: set(),
        OrderStatus.CANCELLED.value: set(),
        OrderStatus.REFUNDED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, from_status: Optional[str], to_status: str) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)

    @classmethod
    def sources_for(cls, to_status: str) -> List[str]:
        """States from which ``to_status`` may legally be entered"""
        return [
            source for source, targets in cls.VALID_TRANSITIONS.items()
            if source is not None and to_status in targets
        ]


# Gateway outcome name -> order status
PAYMENT_OUTCOMES = {
    "succeeded": OrderStatus.PAID.value,
    "failed": OrderStatus.FAILED.value,
    "canceled": OrderStatus.CANCELLED.value,
}


class OrderService:
    """Creates orders and applies their lifecycle transitions"""

    def __init__(self, store: LedgerStore):
        self.store = store

    def create_order(
        self,
        brand_id: str,
        agreement_id: Any,
        amount: Any,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create a PENDING_PAYMENT order for an accepted agreement owned by the brand"""
        if agreement_id is None:
            raise ValidationError("agreement_id is required")
        amount = FinancialCalculator.to_money(amount)
        if amount <= 0:
            raise ValidationError("amount must be greater than zero")

        totals = FinancialCalculator.calculate_order_totals(amount, Config.gateway_fee_rate())

        with self.store.unit_of_work() as session:
            agreement = session.get(CampaignAgreement, agreement_id)
            if agreement is None or agreement.brand_id != brand_id:
                raise NotFoundError("Agreement not found")
            if agreement.status != AgreementStatus.ACCEPTED.value:
                raise ConflictError(
                    f"Agreement must be accepted before ordering (status: {agreement.status})"
                )

            existing = session.execute(
                select(Order.id).where(Order.agreement_id == agreement.id)
            ).scalar_one_or_none()
            if existing is not None:
                raise ConflictError("An order already exists for this agreement", {"order_id": existing})

            order = Order(
                brand_id=brand_id,
                creator_id=agreement.creator_id,
                campaign_id=agreement.campaign_id,
                agreement_id=agreement.id,
                amount=totals["amount"],
                gateway_fee=totals["gateway_fee"],
                total_charged=totals["total_charged"],
                currency=Config.DEFAULT_CURRENCY,
                status=OrderStatus.PENDING_PAYMENT.value,
                description=description,
                order_metadata=metadata or {},
            )
            session.add(order)
            try:
                session.flush()
            except IntegrityError:
                raise ConflictError("An order already exists for this agreement")

            agreement.order_id = order.id
            result = self.serialize(order)

        logger.info(
            f"✅ ORDER_CREATED: order={result['id']} agreement={agreement_id} "
            f"amount={totals['amount']} fee={totals['gateway_fee']} total={totals['total_charged']}"
        )
        return result

    def cancel_order(self, order_id: int, brand_id: str) -> Dict[str, Any]:
        """Brand cancels its own order while payment is still pending"""
        target = OrderStatus.CANCELLED.value
        with self.store.unit_of_work() as session:
            order = session.get(Order, order_id)
            if order is None or order.brand_id != brand_id:
                raise NotFoundError("Order not found")

            rowcount = self.store.transition_status(
                session, Order, order_id, OrderStateValidator.sources_for(target), target
            )
            if rowcount == 0:
                session.refresh(order)
                raise ConflictError(
                    f"Order cannot be cancelled in status {order.status}",
                    {"order_id": order_id, "status": order.status},
                )
            session.refresh(order)
            result = self.serialize(order)

        logger.info(f"✅ ORDER_CANCELLED: order={order_id} by brand={brand_id}")
        return result

    def apply_payment_outcome(self, session: Session, order_id: int, outcome: str) -> bool:
        """
        Apply a gateway outcome inside the caller's unit of work.

        Returns True when the order transitioned. A replay of the same outcome
        or a contradicting outcome for an already-settled order is a no-op;
        the latter is logged as an inconsistency for manual review.
        """
        if outcome not in PAYMENT_OUTCOMES:
            raise ValidationError(f"Unknown payment outcome: {outcome}")
        target = PAYMENT_OUTCOMES[outcome]
        extra = {"paid_at": utcnow()} if target == OrderStatus.PAID.value else {}

        rowcount = self.store.transition_status(
            session, Order, order_id, OrderStateValidator.sources_for(target), target, **extra
        )
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")

        if rowcount:
            self._mirror_agreement_payment_status(session, order, target)
            logger.info(f"✅ ORDER_TRANSITION: order={order_id} -> {target} ({outcome})")
            return True

        if order.status == target:
            logger.info(f"🔁 ORDER_OUTCOME_REPLAY: order={order_id} already {target}")
        else:
            logger.warning(
                f"⚠️ ORDER_OUTCOME_INCONSISTENT: order={order_id} is {order.status}, "
                f"ignoring gateway outcome '{outcome}'"
            )
        return False

    def mark_refunded(self, session: Session, order_id: int) -> None:
        """PAID -> REFUNDED inside the caller's unit of work"""
        target = OrderStatus.REFUNDED.value
        rowcount = self.store.transition_status(
            session, Order, order_id, OrderStateValidator.sources_for(target), target
        )
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if rowcount == 0:
            raise ConflictError(f"Order cannot be refunded in status {order.status}")
        self._mirror_agreement_payment_status(session, order, target)
        logger.info(f"✅ ORDER_TRANSITION: order={order_id} -> {target}")

    def get_order(self, order_id: int, caller: Caller) -> Dict[str, Any]:
        with self.store.unit_of_work() as session:
            order = session.get(Order, order_id)
            if order is None or not self._is_visible(order, caller):
                raise NotFoundError("Order not found")
            return self.serialize(order)

    def list_orders(
        self, caller: Caller, status: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> List[Dict[str, Any]]:
        stmt = select(Order)
        if not caller.is_admin:
            stmt = stmt.where(or_(Order.brand_id == caller.id, Order.creator_id == caller.id))
        if status:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset)

        with self.store.unit_of_work() as session:
            return [self.serialize(order) for order in session.execute(stmt).scalars()]

    @staticmethod
    def _is_visible(order: Order, caller: Caller) -> bool:
        return caller.is_admin or caller.id in (order.brand_id, order.creator_id)

    @staticmethod
    def _mirror_agreement_payment_status(session: Session, order: Order, status: str) -> None:
        agreement = session.get(CampaignAgreement, order.agreement_id)
        if agreement is not None:
            agreement.payment_status = status
            agreement.order_id = order.id

    @staticmethod
    def serialize(order: Order) -> Dict[str, Any]:
        return {
            "id": order.id,
            "brand_id": order.brand_id,
            "creator_id": order.creator_id,
            "campaign_id": order.campaign_id,
            "agreement_id": order.agreement_id,
            "amount": order.amount,
            "gateway_fee": order.gateway_fee,
            "total_charged": order.total_charged,
            "currency": order.currency,
            "status": order.status,
            "description": order.description,
            "metadata": order.order_metadata or {},
            "created_at": order.created_at,
            "paid_at": order.paid_at,
        }
