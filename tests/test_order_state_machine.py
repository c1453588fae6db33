"""
Test Suite for the Order State Machine
Covers transition legality, order creation rules, brand cancellation and
gateway outcome application (including replays and contradicting outcomes)
"""

import logging
from decimal import Decimal

import pytest

from models import AgreementStatus, CampaignAgreement, Order, OrderStatus
from services.caller import Caller
from services.order_state_machine import OrderStateValidator
from utils.exception_handler import ConflictError, NotFoundError, ValidationError


class TestOrderStateValidator:
    """Transition table"""

    def test_pending_payment_transitions(self):
        assert OrderStateValidator.is_valid_transition("PENDING_PAYMENT", "PAID")
        assert OrderStateValidator.is_valid_transition("PENDING_PAYMENT", "FAILED")
        assert OrderStateValidator.is_valid_transition("PENDING_PAYMENT", "CANCELLED")
        assert not OrderStateValidator.is_valid_transition("PENDING_PAYMENT", "REFUNDED")

    def test_paid_can_only_be_refunded(self):
        assert OrderStateValidator.is_valid_transition("PAID", "REFUNDED")
        assert not OrderStateValidator.is_valid_transition("PAID", "CANCELLED")
        assert not OrderStateValidator.is_valid_transition("PAID", "FAILED")

    @pytest.mark.parametrize("status", ["FAILED", "CANCELLED", "REFUNDED"])
    def test_terminal_states(self, status):
        assert OrderStateValidator.is_terminal_state(status)
        assert not OrderStateValidator.is_valid_transition(status, "PAID")

    def test_sources_for(self):
        assert OrderStateValidator.sources_for("PAID") == ["PENDING_PAYMENT"]
        assert OrderStateValidator.sources_for("REFUNDED") == ["PAID"]


class TestCreateOrder:
    """Order creation from accepted agreements"""

    def test_creates_pending_order_with_gateway_fee(self, services, test_data_factory):
        agreement_id = test_data_factory.create_agreement()

        order = services.orders.create_order("brand-1", agreement_id, Decimal("1000"))

        assert order["status"] == OrderStatus.PENDING_PAYMENT.value
        assert order["amount"] == Decimal("1000.00")
        assert order["gateway_fee"] == Decimal("50.00")
        assert order["total_charged"] == Decimal("1050.00")
        assert order["currency"] == "MAD"
        assert order["creator_id"] == "creator-1"

        agreement = test_data_factory.get(CampaignAgreement, agreement_id)
        assert agreement.order_id == order["id"]

    @pytest.mark.parametrize("amount", [None, 0, "-5"])
    def test_rejects_missing_or_non_positive_amount(self, services, test_data_factory, amount):
        agreement_id = test_data_factory.create_agreement()

        with pytest.raises(ValidationError):
            services.orders.create_order("brand-1", agreement_id, amount)

    def test_unknown_agreement_is_not_found(self, services):
        with pytest.raises(NotFoundError):
            services.orders.create_order("brand-1", 9999, Decimal("100"))

    def test_agreement_of_another_brand_is_not_found(self, services, test_data_factory):
        agreement_id = test_data_factory.create_agreement(brand_id="brand-2")

        with pytest.raises(NotFoundError):
            services.orders.create_order("brand-1", agreement_id, Decimal("100"))

    def test_agreement_must_be_accepted(self, services, test_data_factory):
        agreement_id = test_data_factory.create_agreement(status=AgreementStatus.PENDING.value)

        with pytest.raises(ConflictError):
            services.orders.create_order("brand-1", agreement_id, Decimal("100"))

    def test_one_order_per_agreement(self, services, test_data_factory):
        agreement_id = test_data_factory.create_agreement()
        services.orders.create_order("brand-1", agreement_id, Decimal("100"))

        with pytest.raises(ConflictError):
            services.orders.create_order("brand-1", agreement_id, Decimal("100"))


class TestCancelOrder:
    """Brand cancellation"""

    def test_cancel_pending_order(self, services, test_data_factory):
        order = test_data_factory.create_order()

        cancelled = services.orders.cancel_order(order["id"], "brand-1")

        assert cancelled["status"] == OrderStatus.CANCELLED.value

    def test_cancel_paid_order_conflicts(self, services, test_data_factory):
        order = test_data_factory.create_order()
        test_data_factory.pay_order(order)

        with pytest.raises(ConflictError):
            services.orders.cancel_order(order["id"], "brand-1")

        assert test_data_factory.get(Order, order["id"]).status == OrderStatus.PAID.value

    def test_cancel_twice_conflicts(self, services, test_data_factory):
        order = test_data_factory.create_order()
        services.orders.cancel_order(order["id"], "brand-1")

        with pytest.raises(ConflictError):
            services.orders.cancel_order(order["id"], "brand-1")

    def test_other_brand_cannot_cancel(self, services, test_data_factory):
        order = test_data_factory.create_order()

        with pytest.raises(NotFoundError):
            services.orders.cancel_order(order["id"], "brand-2")


class TestApplyPaymentOutcome:
    """Gateway outcomes applied inside a unit of work"""

    @pytest.mark.parametrize("outcome,expected", [
        ("succeeded", "PAID"),
        ("failed", "FAILED"),
        ("canceled", "CANCELLED"),
    ])
    def test_outcome_moves_pending_order(self, store, services, test_data_factory, outcome, expected):
        order = test_data_factory.create_order()

        with store.unit_of_work() as session:
            assert services.orders.apply_payment_outcome(session, order["id"], outcome) is True

        stored = test_data_factory.get(Order, order["id"])
        assert stored.status == expected
        assert (stored.paid_at is not None) == (expected == "PAID")

    def test_replay_is_noop(self, store, services, test_data_factory):
        order = test_data_factory.create_order()
        with store.unit_of_work() as session:
            services.orders.apply_payment_outcome(session, order["id"], "succeeded")

        with store.unit_of_work() as session:
            assert services.orders.apply_payment_outcome(session, order["id"], "succeeded") is False

        assert test_data_factory.get(Order, order["id"]).status == "PAID"

    def test_contradicting_outcome_logs_inconsistency(self, store, services, test_data_factory, caplog):
        order = test_data_factory.create_order()
        with store.unit_of_work() as session:
            services.orders.apply_payment_outcome(session, order["id"], "succeeded")

        with caplog.at_level(logging.WARNING, logger="services.order_state_machine"):
            with store.unit_of_work() as session:
                assert services.orders.apply_payment_outcome(session, order["id"], "failed") is False

        assert test_data_factory.get(Order, order["id"]).status == "PAID"
        assert "ORDER_OUTCOME_INCONSISTENT" in caplog.text

    def test_unknown_outcome_is_rejected(self, store, services, test_data_factory):
        order = test_data_factory.create_order()

        with pytest.raises(ValidationError):
            with store.unit_of_work() as session:
                services.orders.apply_payment_outcome(session, order["id"], "disputed")


class TestOrderQueries:
    """Visibility of orders to brands, creators and admins"""

    def test_brand_and_creator_see_their_orders(self, services, test_data_factory):
        order = test_data_factory.create_order()
        test_data_factory.create_order(brand_id="brand-2", creator_id="creator-2")

        brand_orders = services.orders.list_orders(Caller("brand-1", "brand"))
        creator_orders = services.orders.list_orders(Caller("creator-1", "creator"))
        admin_orders = services.orders.list_orders(Caller("admin-1", "admin"))

        assert [o["id"] for o in brand_orders] == [order["id"]]
        assert [o["id"] for o in creator_orders] == [order["id"]]
        assert len(admin_orders) == 2

    def test_status_filter(self, services, test_data_factory):
        order = test_data_factory.create_order()
        services.orders.cancel_order(order["id"], "brand-1")

        assert services.orders.list_orders(Caller("brand-1", "brand"), status="PAID") == []
        assert len(services.orders.list_orders(Caller("brand-1", "brand"), status="CANCELLED")) == 1

    def test_foreign_order_is_not_found(self, services, test_data_factory):
        order = test_data_factory.create_order()

        with pytest.raises(NotFoundError):
            services.orders.get_order(order["id"], Caller("brand-2", "brand"))
