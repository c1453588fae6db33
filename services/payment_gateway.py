"""
Stripe Payment Gateway Adapter

Thin mapping onto the stripe SDK: payment intents, refunds, intent status
lookups and webhook signature verification. Gateway errors never touch the
order; only a successful gateway answer is persisted.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import orjson
import stripe
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import Config
from models import EscrowRecord, EscrowStatus, Order, OrderStatus, PaymentRecord, PaymentStatus
from services.caller import Caller
from services.escrow_accounting import EscrowAccounting
from services.ledger_store import LedgerStore
from services.order_state_machine import OrderService
from utils.exception_handler import (
    AuthenticityError,
    ConflictError,
    GatewayError,
    GatewayTimeoutError,
    InternalInconsistencyError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from utils.financial import FinancialCalculator

logger = logging.getLogger(__name__)


def _gateway_failure(operation: str, error: stripe.StripeError) -> SettlementError:
    """Translate a stripe SDK error into the settlement taxonomy"""
    message = getattr(error, "user_message", None) or str(error) or type(error).__name__
    if isinstance(error, stripe.APIConnectionError):
        logger.error(f"⏱️ STRIPE_UNREACHABLE: {operation} - {message}")
        return GatewayTimeoutError(f"Payment gateway unreachable: {message}")
    logger.error(f"❌ STRIPE_ERROR: {operation} - {type(error).__name__}: {message}")
    return GatewayError(f"Payment gateway error: {message}")


def configure_stripe_client(
    stripe_client: Any = stripe,
    timeout: Optional[float] = None,
    api_version: Optional[str] = None,
) -> Any:
    """Bound every SDK HTTP call and pin the API version the adapter was written against"""
    timeout = timeout if timeout is not None else Config.GATEWAY_TIMEOUT_SECONDS
    stripe_client.default_http_client = stripe_client.RequestsClient(timeout=timeout)
    stripe_client.api_version = api_version or Config.STRIPE_API_VERSION
    logger.info(f"✅ STRIPE_CLIENT_CONFIGURED: api_version={stripe_client.api_version} timeout={timeout}s")
    return stripe_client


class StripeGatewayAdapter:
    """Payment intents and refunds against Stripe with local bookkeeping"""

    provider = Config.STRIPE_PROVIDER_NAME

    def __init__(
        self,
        store: LedgerStore,
        orders: OrderService,
        escrow: EscrowAccounting,
        stripe_client: Any = stripe,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ):
        self.store = store
        self.orders = orders
        self.escrow = escrow
        self.stripe = stripe_client
        self.api_key = api_key if api_key is not None else Config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else Config.STRIPE_WEBHOOK_SECRET

    def create_payment_intent(self, order_id: int, brand_id: str) -> Dict[str, Any]:
        """Create a card payment intent for the full amount charged to the brand"""
        with self.store.unit_of_work() as session:
            order = session.get(Order, order_id)
            if (
                order is None
                or order.brand_id != brand_id
                or order.status != OrderStatus.PENDING_PAYMENT.value
            ):
                raise NotFoundError("Order not found or already paid")
            attempt = session.execute(
                select(func.count(PaymentRecord.id)).where(PaymentRecord.order_id == order_id)
            ).scalar_one() + 1
            total_charged = order.total_charged
            gateway_fee = order.gateway_fee
            currency = order.currency
            metadata = {
                "order_id": str(order.id),
                "agreement_id": str(order.agreement_id),
                "campaign_id": str(order.campaign_id),
                "brand_id": order.brand_id,
                "creator_id": order.creator_id,
                "amount_creator": str(order.amount),
                "gateway_fee": str(gateway_fee),
            }
            description = order.description or f"Campaign {order.campaign_id} content order"

        try:
            intent = self.stripe.PaymentIntent.create(
                amount=FinancialCalculator.to_minor_units(total_charged),
                currency=currency.lower(),
                metadata=metadata,
                description=description,
                automatic_payment_methods={"enabled": True},
                idempotency_key=f"order-{order_id}-intent-{attempt}",
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise _gateway_failure(f"create_payment_intent order={order_id}", e)

        try:
            payment_id = self._record_intent(order_id, intent, attempt, total_charged, gateway_fee, currency)
        except IntegrityError:
            # A concurrent checkout with the same idempotency key recorded the intent first
            payment_id = self._existing_intent_record(order_id, intent.id)
            if payment_id is None:
                raise ConflictError("Checkout already in progress for this order", {"order_id": order_id})

        logger.info(
            f"✅ PAYMENT_INTENT_CREATED: order={order_id} intent={intent.id} "
            f"total={total_charged} {currency}"
        )
        return {
            "client_secret": intent.client_secret,
            "payment_intent_id": intent.id,
            "payment_id": payment_id,
            "amount_total": total_charged,
            "gateway_fee": gateway_fee,
            "currency": currency,
        }

    def _record_intent(
        self, order_id: int, intent: Any, attempt: int, total_charged: Decimal, gateway_fee: Decimal, currency: str
    ) -> int:
        with self.store.unit_of_work() as session:
            existing = session.execute(
                select(PaymentRecord).where(PaymentRecord.payment_intent_id == intent.id)
            ).scalar_one_or_none()
            if existing is not None:
                if existing.order_id != order_id:
                    raise InternalInconsistencyError(
                        "Gateway returned an intent already recorded for another order",
                        {"payment_intent_id": intent.id, "order_id": order_id, "record_order": existing.order_id},
                    )
                logger.info(f"🔁 PAYMENT_INTENT_REPLAY: order={order_id} intent={intent.id} already recorded")
                return existing.id

            # Only one non-terminal payment record per order
            superseded = self.store.conditional_update(
                session,
                PaymentRecord,
                [
                    PaymentRecord.order_id == order_id,
                    PaymentRecord.status == PaymentStatus.PENDING.value,
                ],
                {"status": PaymentStatus.FAILED.value, "superseded": True},
            )
            if superseded:
                logger.info(f"🔁 PAYMENT_SUPERSEDED: order={order_id} earlier pending intents={superseded}")

            payment = PaymentRecord(
                order_id=order_id,
                provider=self.provider,
                payment_intent_id=intent.id,
                status=PaymentStatus.PENDING.value,
                amount=total_charged,
                fee=gateway_fee,
                currency=currency,
                gateway_payload={"id": intent.id, "status": getattr(intent, "status", None), "attempt": attempt},
                superseded=False,
            )
            session.add(payment)
            session.flush()
            return payment.id

    def _existing_intent_record(self, order_id: int, payment_intent_id: str) -> Optional[int]:
        with self.store.unit_of_work() as session:
            return session.execute(
                select(PaymentRecord.id).where(
                    PaymentRecord.order_id == order_id,
                    PaymentRecord.payment_intent_id == payment_intent_id,
                )
            ).scalar_one_or_none()

    def refund(self, payment_intent_id: str, admin_id: str, amount: Any = None) -> Dict[str, Any]:
        """
        Refund a captured payment whose escrow has not been released.

        Escrow holds are all-or-nothing, so only a full refund is accepted.
        """
        if not payment_intent_id:
            raise ValidationError("payment_intent_id is required")

        with self.store.unit_of_work() as session:
            payment = session.execute(
                select(PaymentRecord).where(PaymentRecord.payment_intent_id == payment_intent_id)
            ).scalar_one_or_none()
            if payment is None:
                raise NotFoundError("Payment not found")
            if payment.status != PaymentStatus.CAPTURED.value:
                raise ConflictError(f"Payment cannot be refunded in status {payment.status}")

            order = session.get(Order, payment.order_id)
            if order is None or order.status != OrderStatus.PAID.value:
                raise ConflictError("Only paid orders can be refunded")

            escrow = session.execute(
                select(EscrowRecord).where(EscrowRecord.agreement_id == order.agreement_id)
            ).scalar_one_or_none()
            if escrow is not None and escrow.status == EscrowStatus.RELEASED.value:
                raise ConflictError(
                    "Escrow already released to the creator; refund requires a manual reversal",
                    {"agreement_id": order.agreement_id},
                )

            refund_amount = payment.amount
            if amount is not None and FinancialCalculator.to_money(amount) != refund_amount:
                raise ValidationError(f"Only full refunds are supported ({refund_amount} {payment.currency})")
            payment_id = payment.id
            order_id = order.id
            agreement_id = order.agreement_id
            currency = payment.currency

        try:
            refund = self.stripe.Refund.create(
                payment_intent=payment_intent_id,
                amount=FinancialCalculator.to_minor_units(refund_amount),
                idempotency_key=f"refund-{payment_intent_id}",
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise _gateway_failure(f"refund intent={payment_intent_id}", e)

        try:
            with self.store.unit_of_work() as session:
                rowcount = self.store.transition_status(
                    session,
                    PaymentRecord,
                    payment_id,
                    [PaymentStatus.CAPTURED.value],
                    PaymentStatus.REFUNDED.value,
                )
                if rowcount == 0:
                    raise ConflictError("Payment was refunded concurrently")
                self.orders.mark_refunded(session, order_id)
                self.escrow.refund_escrow(agreement_id, session=session)
        except (ConflictError, SQLAlchemyError) as e:
            # Money already went back to the brand at the gateway
            raise InternalInconsistencyError(
                "Gateway refund succeeded but local state could not follow",
                {"payment_intent_id": payment_intent_id, "refund_id": refund.id, "reason": str(e)},
            )

        logger.info(
            f"✅ PAYMENT_REFUNDED: intent={payment_intent_id} order={order_id} "
            f"amount={refund_amount} {currency} by admin={admin_id}"
        )
        return {
            "refund_id": refund.id,
            "status": getattr(refund, "status", None),
            "payment_intent_id": payment_intent_id,
            "order_id": order_id,
            "amount": refund_amount,
            "currency": currency,
        }

    def get_payment_status(self, payment_intent_id: str, caller: Caller) -> Dict[str, Any]:
        """Local payment record plus the live gateway status"""
        with self.store.unit_of_work() as session:
            payment = session.execute(
                select(PaymentRecord).where(PaymentRecord.payment_intent_id == payment_intent_id)
            ).scalar_one_or_none()
            order = session.get(Order, payment.order_id) if payment is not None else None
            if (
                payment is None
                or order is None
                or not (caller.is_admin or caller.id in (order.brand_id, order.creator_id))
            ):
                raise NotFoundError("Payment not found")
            result = {
                "payment_intent_id": payment.payment_intent_id,
                "payment_status": payment.status,
                "order_id": order.id,
                "order_status": order.status,
                "amount": payment.amount,
                "currency": payment.currency,
            }

        try:
            intent = self.stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.api_key)
            result["gateway_status"] = intent.status
        except stripe.StripeError as e:
            logger.warning(f"⚠️ STRIPE_STATUS_UNAVAILABLE: intent={payment_intent_id} - {e}")
            result["gateway_status"] = "unknown"
        return result

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header, then parse the raw body"""
        if not signature:
            logger.warning("🚨 STRIPE_WEBHOOK_UNSIGNED: missing Stripe-Signature header")
            raise AuthenticityError("Missing Stripe-Signature header")
        if not self.webhook_secret:
            logger.error("❌ STRIPE_WEBHOOK_SECRET not configured - rejecting webhook")
            raise AuthenticityError("Webhook signing secret not configured")

        try:
            self.stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"🚨 STRIPE_WEBHOOK_BAD_SIGNATURE: {e}")
            raise AuthenticityError("Invalid webhook signature")
        except ValueError as e:
            raise ValidationError(f"Invalid webhook payload: {e}")

        event = orjson.loads(payload)
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError("Webhook payload is missing id or type")
        return event


def minor_units_to_amount(minor: Optional[int]) -> Optional[Decimal]:
    return FinancialCalculator.from_minor_units(minor) if minor is not None else None
