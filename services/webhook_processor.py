"""
Stripe Webhook Processor - at-least-once delivery, at-most-once effect

Flow per delivery:
1. Verify the signature before touching the body
2. PROCESSED marker for (provider, event_id) -> duplicate, no writes
3. Insert a PENDING marker (or reclaim a FAILED one) in the same unit of
   work that applies the effects
4. Dispatch on the event type; every effect is a status-guarded set
5. Mark PROCESSED in the same commit

On failure the unit of work rolls back, the marker is recorded FAILED in a
fresh transaction and the error propagates so the provider redelivers.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import Order, OrderStatus, PaymentRecord, PaymentStatus, WebhookEvent, WebhookEventStatus, utcnow
from services.escrow_accounting import EscrowAccounting
from services.ledger_store import LedgerStore
from services.order_state_machine import OrderService
from services.payment_gateway import StripeGatewayAdapter, minor_units_to_amount
from utils.exception_handler import ConflictError, InternalInconsistencyError, NotFoundError
from utils.financial import FinancialCalculator

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    """Outcome of one webhook delivery"""
    status: str  # processed | ignored | duplicate
    event_id: str
    event_type: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _ConcurrentDelivery(Exception):
    """Another worker holds or just finished the same event id"""


class WebhookProcessor:
    """Deduplicates Stripe events and applies payment outcomes exactly once"""

    # Stripe event type -> payment outcome
    HANDLED_EVENTS = {
        "payment_intent.succeeded": "succeeded",
        "payment_intent.payment_failed": "failed",
        "payment_intent.canceled": "canceled",
    }

    def __init__(
        self,
        store: LedgerStore,
        gateway: StripeGatewayAdapter,
        orders: OrderService,
        escrow: EscrowAccounting,
    ):
        self.store = store
        self.gateway = gateway
        self.orders = orders
        self.escrow = escrow
        self.provider = gateway.provider

    def process(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        event = self.gateway.construct_event(payload, signature)
        event_id = event["id"]
        event_type = event["type"]

        try:
            with self.store.unit_of_work() as session:
                marker_id = self._claim(session, event_id, event_type, event)
                if marker_id is None:
                    result = WebhookResult("duplicate", event_id, event_type)
                else:
                    status = self._dispatch(session, event_type, event)
                    marked = self.store.transition_status(
                        session,
                        WebhookEvent,
                        marker_id,
                        [WebhookEventStatus.PENDING.value],
                        WebhookEventStatus.PROCESSED.value,
                        processed_at=utcnow(),
                        error_message=None,
                    )
                    if marked != 1:
                        raise _ConcurrentDelivery(event_id)
                    result = WebhookResult(status, event_id, event_type)
        except _ConcurrentDelivery:
            return self._resolve_concurrent_delivery(event_id, event_type).to_dict()
        except Exception as e:
            self._record_failure(event_id, event_type, event, e)
            raise

        if result.status == "duplicate":
            logger.info(f"🔁 WEBHOOK_DUPLICATE: {self.provider} event={event_id} type={event_type}")
        else:
            logger.info(f"✅ WEBHOOK_{result.status.upper()}: {self.provider} event={event_id} type={event_type}")
        return result.to_dict()

    # ------------------------------------------------------------------
    # Idempotency marker
    # ------------------------------------------------------------------

    def _claim(self, session: Session, event_id: str, event_type: str, event: Dict[str, Any]) -> Optional[int]:
        """Return the marker id this delivery owns, or None when already processed"""
        marker = self._find_marker(session, event_id)

        if marker is None:
            marker = WebhookEvent(
                provider=self.provider,
                event_id=event_id,
                event_type=event_type,
                status=WebhookEventStatus.PENDING.value,
                payload=event,
                attempts=1,
            )
            session.add(marker)
            try:
                session.flush()
            except IntegrityError:
                raise _ConcurrentDelivery(event_id)
            return marker.id

        if marker.status == WebhookEventStatus.PROCESSED.value:
            return None

        if marker.status == WebhookEventStatus.FAILED.value:
            marker_id = marker.id
            reclaimed = self.store.conditional_update(
                session,
                WebhookEvent,
                [WebhookEvent.id == marker_id, WebhookEvent.status == WebhookEventStatus.FAILED.value],
                {
                    "status": WebhookEventStatus.PENDING.value,
                    "attempts": WebhookEvent.attempts + 1,
                },
            )
            if reclaimed == 0:
                raise _ConcurrentDelivery(event_id)
            logger.info(f"🔄 WEBHOOK_RETRY: {self.provider} event={event_id} reclaiming FAILED marker")
            return marker_id

        raise _ConcurrentDelivery(event_id)

    def _resolve_concurrent_delivery(self, event_id: str, event_type: str) -> WebhookResult:
        with self.store.unit_of_work() as session:
            marker = self._find_marker(session, event_id)
            if marker is not None and marker.status == WebhookEventStatus.PROCESSED.value:
                logger.info(f"🔁 WEBHOOK_DUPLICATE: {self.provider} event={event_id} finished by another worker")
                return WebhookResult("duplicate", event_id, event_type)
        logger.warning(f"⚠️ WEBHOOK_IN_FLIGHT: {self.provider} event={event_id} held by another worker")
        raise ConflictError("Webhook event is being processed by another worker", {"event_id": event_id})

    def _record_failure(self, event_id: str, event_type: str, event: Dict[str, Any], error: Exception) -> None:
        message = f"{type(error).__name__}: {error}"[:2000]
        logger.error(f"❌ WEBHOOK_FAILED: {self.provider} event={event_id} type={event_type} - {message}")
        try:
            with self.store.unit_of_work() as session:
                marker = self._find_marker(session, event_id)
                if marker is None:
                    session.add(WebhookEvent(
                        provider=self.provider,
                        event_id=event_id,
                        event_type=event_type,
                        status=WebhookEventStatus.FAILED.value,
                        payload=event,
                        error_message=message,
                        attempts=1,
                    ))
                elif marker.status != WebhookEventStatus.PROCESSED.value:
                    marker.status = WebhookEventStatus.FAILED.value
                    marker.error_message = message
                    marker.attempts = marker.attempts + 1
        except SQLAlchemyError as record_error:
            # The original error still propagates; the provider will redeliver
            logger.error(f"❌ WEBHOOK_FAILURE_NOT_RECORDED: event={event_id} - {record_error}")

    def _find_marker(self, session: Session, event_id: str) -> Optional[WebhookEvent]:
        return session.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == self.provider,
                WebhookEvent.event_id == event_id,
            )
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, session: Session, event_type: str, event: Dict[str, Any]) -> str:
        outcome = self.HANDLED_EVENTS.get(event_type)
        if outcome is None:
            logger.info(f"ℹ️ WEBHOOK_IGNORED: {self.provider} type={event_type} has no settlement effect")
            return "ignored"

        intent = (event.get("data") or {}).get("object") or {}
        intent_id = intent.get("id")
        if not intent_id:
            raise NotFoundError("Webhook event carries no payment intent id")

        payment = session.execute(
            select(PaymentRecord).where(PaymentRecord.payment_intent_id == intent_id)
        ).scalar_one_or_none()
        order = self._resolve_order(session, intent, payment)

        if payment is None:
            payment = self._reconcile_payment_record(session, order, intent)
        elif payment.order_id != order.id:
            raise InternalInconsistencyError(
                "Payment intent metadata points at a different order than the payment record",
                {"payment_intent_id": intent_id, "record_order": payment.order_id, "metadata_order": order.id},
            )

        if payment.superseded and not self._settle_superseded(session, payment, order, outcome):
            return "processed"

        if outcome == "succeeded":
            expected_minor = FinancialCalculator.to_minor_units(order.total_charged)
            received_minor = intent.get("amount_received", intent.get("amount"))
            if received_minor is not None and received_minor != expected_minor:
                logger.warning(
                    f"⚠️ PAYMENT_AMOUNT_MISMATCH: order={order.id} expected={expected_minor} "
                    f"received={received_minor} (minor units)"
                )
            payment_sources = [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]
            payment_target = PaymentStatus.CAPTURED.value
        else:
            payment_sources = [PaymentStatus.PENDING.value]
            payment_target = PaymentStatus.FAILED.value

        payment_id = payment.id
        order_id = order.id
        moved = self.store.transition_status(session, PaymentRecord, payment_id, payment_sources, payment_target)
        if not moved:
            logger.info(f"🔁 PAYMENT_RECORD_UNCHANGED: intent={intent_id} target={payment_target}")

        transitioned = self.orders.apply_payment_outcome(session, order_id, outcome)
        if outcome == "succeeded" and transitioned:
            self.escrow.open_escrow(session, session.get(Order, order_id))
        return "processed"

    def _settle_superseded(self, session: Session, payment: PaymentRecord, order: Order, outcome: str) -> bool:
        """
        Outcome for an intent a newer checkout replaced.

        Returns True when the normal payment flow should continue. A capture
        on a still-unpaid order is real money, so that intent becomes the
        order's payment and the newer pending ones are superseded instead.
        Anything else is recorded without moving the order.
        """
        payment_id = payment.id
        order_id = order.id
        intent_id = payment.payment_intent_id
        order_status = order.status

        if outcome != "succeeded":
            logger.warning(
                f"⚠️ PAYMENT_SUPERSEDED_EVENT: intent={intent_id} order={order_id} outcome={outcome} "
                f"ignored, a newer checkout replaced this intent"
            )
            return False

        if order_status == OrderStatus.PENDING_PAYMENT.value:
            replaced = self.store.conditional_update(
                session,
                PaymentRecord,
                [
                    PaymentRecord.order_id == order_id,
                    PaymentRecord.id != payment_id,
                    PaymentRecord.status == PaymentStatus.PENDING.value,
                ],
                {"status": PaymentStatus.FAILED.value, "superseded": True},
            )
            self.store.conditional_update(
                session, PaymentRecord, [PaymentRecord.id == payment_id], {"superseded": False}
            )
            logger.warning(
                f"⚠️ PAYMENT_SUPERSEDED_CAPTURE: intent={intent_id} order={order_id} captured after being "
                f"replaced; it becomes the order payment and {replaced} newer pending intents are superseded"
            )
            return True

        self.store.transition_status(
            session,
            PaymentRecord,
            payment_id,
            [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value],
            PaymentStatus.CAPTURED.value,
        )
        logger.warning(
            f"⚠️ PAYMENT_SUPERSEDED_EVENT: intent={intent_id} captured but order={order_id} is {order_status}; "
            f"manual refund required"
        )
        return False

    def _resolve_order(self, session: Session, intent: Dict[str, Any], payment: Optional[PaymentRecord]) -> Order:
        metadata = intent.get("metadata") or {}
        order_id = metadata.get("order_id")
        if order_id is None and payment is not None:
            order_id = payment.order_id
        if order_id is None:
            raise NotFoundError(f"Cannot resolve order for payment intent {intent.get('id')}")

        order = session.get(Order, int(order_id))
        if order is None:
            raise NotFoundError(f"Order {order_id} not found for payment intent {intent.get('id')}")
        return order

    def _reconcile_payment_record(self, session: Session, order: Order, intent: Dict[str, Any]) -> PaymentRecord:
        """Intent created at the gateway but never recorded locally (e.g. timed-out request)"""
        amount = minor_units_to_amount(intent.get("amount")) or order.total_charged
        payment = PaymentRecord(
            order_id=order.id,
            provider=self.provider,
            payment_intent_id=intent["id"],
            status=PaymentStatus.PENDING.value,
            amount=amount,
            fee=order.gateway_fee,
            currency=order.currency,
            gateway_payload={"id": intent["id"], "status": intent.get("status"), "reconciled": True},
        )
        session.add(payment)
        session.flush()
        logger.warning(f"⚠️ PAYMENT_RECORD_RECONCILED: intent={intent['id']} order={order.id}")
        return payment
