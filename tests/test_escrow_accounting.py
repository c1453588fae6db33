"""
Test Suite for Escrow & Balance Accounting
Release splits, exactly-once crediting under concurrency, refunds and the
creator balance invariants.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import select

from config import Config
from models import BalanceLedgerEntry, CreatorBalance, EscrowRecord
from utils.exception_handler import ConflictError, InternalInconsistencyError, NotFoundError


@pytest.fixture
def paid_order(test_data_factory):
    order = test_data_factory.create_order()
    test_data_factory.pay_order(order)
    return order


def _escrow(store, agreement_id):
    with store.unit_of_work() as session:
        return session.execute(
            select(EscrowRecord).where(EscrowRecord.agreement_id == agreement_id)
        ).scalar_one()


class TestReleaseEscrow:
    """Escrow release into the creator balance"""

    def test_release_credits_net_of_commission(self, services, store, paid_order):
        result = services.escrow.release_escrow(paid_order["agreement_id"])

        assert result["released"] is True
        assert result["platform_fee"] == Decimal("150.00")
        assert result["net_amount"] == Decimal("850.00")

        balance = services.escrow.get_balance("creator-1")
        assert balance["available"] == Decimal("850.00")
        assert balance["total_earned"] == Decimal("850.00")
        assert balance["pending_withdrawal"] == Decimal("0.00")

        escrow = _escrow(store, paid_order["agreement_id"])
        assert escrow.status == "released"
        assert escrow.released_at is not None
        assert escrow.net_amount == Decimal("850.00")

        with store.unit_of_work() as session:
            entries = list(session.execute(select(BalanceLedgerEntry)).scalars())
        assert [(e.entry_type, e.amount) for e in entries] == [("escrow_release", Decimal("850.00"))]

    def test_second_release_is_noop(self, services, paid_order):
        services.escrow.release_escrow(paid_order["agreement_id"])

        again = services.escrow.release_escrow(paid_order["agreement_id"])

        assert again["released"] is False
        assert again["status"] == "released"
        assert services.escrow.get_balance("creator-1")["available"] == Decimal("850.00")

    def test_concurrent_releases_credit_once(self, services, paid_order):
        agreement_id = paid_order["agreement_id"]

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: services.escrow.release_escrow(agreement_id), range(4)))

        assert sum(1 for r in results if r["released"]) == 1
        balance = services.escrow.get_balance("creator-1")
        assert balance["available"] == Decimal("850.00")
        assert balance["total_earned"] == Decimal("850.00")

    def test_commission_rate_read_at_release_time(self, services, paid_order):
        with patch.object(Config, "PLATFORM_FEE_PERCENTAGE", Decimal("10")):
            result = services.escrow.release_escrow(paid_order["agreement_id"])

        assert result["net_amount"] == Decimal("900.00")
        assert result["platform_fee"] == Decimal("100.00")

    def test_missing_escrow_is_not_found(self, services):
        with pytest.raises(NotFoundError):
            services.escrow.release_escrow(9999)

    def test_refunded_escrow_cannot_be_released(self, services, paid_order):
        services.escrow.refund_escrow(paid_order["agreement_id"])

        result = services.escrow.release_escrow(paid_order["agreement_id"])

        assert result["released"] is False
        assert result["status"] == "refunded"
        assert services.escrow.get_balance("creator-1")["available"] == Decimal("0.00")


class TestRefundEscrow:
    """Escrow refunds never touch the creator balance"""

    def test_refund_active_escrow(self, services, store, paid_order):
        assert services.escrow.refund_escrow(paid_order["agreement_id"]) is True

        escrow = _escrow(store, paid_order["agreement_id"])
        assert escrow.status == "refunded"
        assert escrow.refunded_at is not None

    def test_second_refund_is_noop(self, services, paid_order):
        services.escrow.refund_escrow(paid_order["agreement_id"])

        assert services.escrow.refund_escrow(paid_order["agreement_id"]) is False

    def test_refund_after_release_conflicts(self, services, paid_order):
        services.escrow.release_escrow(paid_order["agreement_id"])

        with pytest.raises(ConflictError):
            services.escrow.refund_escrow(paid_order["agreement_id"])

    def test_refund_without_escrow_is_noop(self, services):
        assert services.escrow.refund_escrow(9999) is False


class TestCreatorBalance:
    """Balance rows and invariants"""

    def test_get_balance_creates_empty_row(self, services, store):
        balance = services.escrow.get_balance("creator-new")

        assert balance == {
            "creator_id": "creator-new",
            "available": Decimal("0"),
            "pending_withdrawal": Decimal("0"),
            "total_earned": Decimal("0"),
            "total_withdrawn": Decimal("0"),
        }
        with store.unit_of_work() as session:
            rows = session.execute(
                select(CreatorBalance).where(CreatorBalance.creator_id == "creator-new")
            ).scalars().all()
        assert len(rows) == 1

    def test_invariants_hold_after_release(self, services, paid_order):
        services.escrow.release_escrow(paid_order["agreement_id"])

        snapshot = services.escrow.verify_balance_invariants("creator-1")

        assert snapshot["available"] == Decimal("850.00")

    def test_balance_above_lifetime_earnings_is_inconsistent(self, services, store, test_data_factory):
        test_data_factory.seed_balance("creator-1", Decimal("100.00"))
        with store.unit_of_work() as session:
            balance = session.execute(
                select(CreatorBalance).where(CreatorBalance.creator_id == "creator-1")
            ).scalar_one()
            balance.total_earned = Decimal("50.00")

        with pytest.raises(InternalInconsistencyError):
            services.escrow.verify_balance_invariants("creator-1")

    def test_unknown_creator_has_no_invariants(self, services):
        with pytest.raises(NotFoundError):
            services.escrow.verify_balance_invariants("creator-ghost")
