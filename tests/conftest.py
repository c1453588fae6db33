"""
Shared Test Fixtures for the Settlement Engine
Provides a file-backed SQLite ledger store per test, a mocked Stripe client
with real webhook signature verification, and a data factory for campaigns,
agreements, orders, submissions and balances.
"""

import hashlib
import hmac
import itertools
import json
import time
from decimal import Decimal
from typing import Any, Dict, Optional
from unittest.mock import MagicMock, patch

import pytest
import stripe
from sqlalchemy.orm import sessionmaker

from config import Config
from database import build_engine, create_tables
from models import (
    AgreementStatus, Campaign, CampaignAgreement, CreatorBalance, Submission, SubmissionStatus
)
from services.ledger_store import LedgerStore
from services.registry import build_services

WEBHOOK_SECRET = "whsec_test_settlement_secret"


@pytest.fixture(autouse=True)
def default_fee_config():
    """Pin fee and withdrawal settings regardless of the local environment"""
    with patch.object(Config, "GATEWAY_FEE_PERCENTAGE", Decimal("5")), \
         patch.object(Config, "PLATFORM_FEE_PERCENTAGE", Decimal("15")), \
         patch.object(Config, "MIN_WITHDRAWAL_AMOUNT", Decimal("200")), \
         patch.object(Config, "BANK_WITHDRAWAL_FEE", Decimal("17")), \
         patch.object(Config, "DEFAULT_CURRENCY", "MAD"):
        yield


@pytest.fixture
def test_engine(tmp_path):
    """File-backed SQLite so worker threads share one database"""
    engine = build_engine(f"sqlite:///{tmp_path / 'settlement.db'}", timeout_seconds=15)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(test_engine):
    return LedgerStore(sessionmaker(bind=test_engine, autoflush=False, expire_on_commit=False))


@pytest.fixture
def fake_stripe():
    """Stripe SDK double: API resources mocked, webhook verification real"""
    client = MagicMock(name="stripe_client")
    client.Webhook = stripe.Webhook
    counter = itertools.count(1)

    def create_intent(**kwargs):
        number = next(counter)
        intent = MagicMock()
        intent.id = f"pi_test_{number}"
        intent.client_secret = f"pi_test_{number}_secret_abc"
        intent.status = "requires_payment_method"
        return intent

    client.PaymentIntent.create.side_effect = create_intent
    client.PaymentIntent.retrieve.return_value = MagicMock(status="succeeded")
    refund = MagicMock()
    refund.id = "re_test_1"
    refund.status = "succeeded"
    client.Refund.create.return_value = refund
    return client


@pytest.fixture
def webhook_secret():
    return WEBHOOK_SECRET


@pytest.fixture
def services(store, fake_stripe):
    return build_services(store=store, stripe_client=fake_stripe, webhook_secret=WEBHOOK_SECRET)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhooks"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class SettlementDataFactory:
    """Creates marketplace rows and drives orders through payment"""

    def __init__(self, store: LedgerStore, services):
        self.store = store
        self.services = services
        self._event_ids = itertools.count(1)

    def create_agreement(
        self,
        brand_id: str = "brand-1",
        creator_id: str = "creator-1",
        price: Decimal = Decimal("1000.00"),
        status: str = AgreementStatus.ACCEPTED.value,
    ) -> int:
        with self.store.unit_of_work() as session:
            campaign = Campaign(brand_id=brand_id, title="Ramadan launch campaign")
            session.add(campaign)
            session.flush()
            agreement = CampaignAgreement(
                campaign_id=campaign.id,
                brand_id=brand_id,
                creator_id=creator_id,
                price=price,
                status=status,
            )
            session.add(agreement)
            session.flush()
            return agreement.id

    def create_order(
        self,
        brand_id: str = "brand-1",
        creator_id: str = "creator-1",
        amount: Decimal = Decimal("1000.00"),
    ) -> Dict[str, Any]:
        agreement_id = self.create_agreement(brand_id=brand_id, creator_id=creator_id, price=amount)
        return self.services.orders.create_order(brand_id, agreement_id, amount)

    def create_submission(self, campaign_id: int, creator_id: str = "creator-1") -> int:
        with self.store.unit_of_work() as session:
            submission = Submission(
                campaign_id=campaign_id,
                creator_id=creator_id,
                watermarked_url="https://cdn.example.com/videos/42-watermarked.mp4",
                original_url="https://cdn.example.com/videos/42-original.mp4",
                watermark_removed=False,
                status=SubmissionStatus.PENDING.value,
            )
            session.add(submission)
            session.flush()
            return submission.id

    def seed_balance(self, creator_id: str, available: Decimal) -> None:
        with self.store.unit_of_work() as session:
            session.add(CreatorBalance(
                creator_id=creator_id,
                available=available,
                pending_withdrawal=Decimal("0"),
                total_earned=available,
                total_withdrawn=Decimal("0"),
            ))

    def get(self, model, row_id):
        with self.store.unit_of_work() as session:
            return session.get(model, row_id)

    def event(
        self,
        event_type: str,
        intent_id: str,
        order_id: int,
        amount_minor: int = 105000,
        event_id: Optional[str] = None,
    ) -> bytes:
        body = {
            "id": event_id or f"evt_test_{next(self._event_ids)}",
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": intent_id,
                    "object": "payment_intent",
                    "amount": amount_minor,
                    "amount_received": amount_minor if event_type == "payment_intent.succeeded" else 0,
                    "currency": "mad",
                    "status": "succeeded" if event_type == "payment_intent.succeeded" else "canceled",
                    "metadata": {"order_id": str(order_id)},
                }
            },
        }
        return json.dumps(body).encode("utf-8")

    def sign(self, payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
        return sign_payload(payload, secret)

    def deliver(self, payload: bytes) -> Dict[str, Any]:
        return self.services.webhooks.process(payload, self.sign(payload))

    def pay_order(self, order: Dict[str, Any]) -> str:
        """Checkout plus a succeeded webhook; returns the payment intent id"""
        intent = self.services.gateway.create_payment_intent(order["id"], order["brand_id"])
        self.deliver(self.event("payment_intent.succeeded", intent["payment_intent_id"], order["id"]))
        return intent["payment_intent_id"]


@pytest.fixture
def test_data_factory(store, services):
    return SettlementDataFactory(store, services)
