"""
Test Suite for the Watermark Gate
Video variant decisions per caller and paid-content approval releasing escrow.
"""

from decimal import Decimal

import pytest

from models import CampaignAgreement, Submission
from services.caller import Caller
from services.watermark_gate import resolve_video_access
from utils.exception_handler import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentRequiredError,
)


@pytest.fixture
def submission_setup(test_data_factory):
    """Pending order for creator-1 plus that creator's submission on the same campaign"""
    order = test_data_factory.create_order()
    campaign_id = test_data_factory.get(CampaignAgreement, order["agreement_id"]).campaign_id
    submission_id = test_data_factory.create_submission(campaign_id, "creator-1")
    return order, submission_id


class TestResolveVideoAccess:
    """Pure variant decision table"""

    @pytest.mark.parametrize("role,owner,brand,removed,variant,level,preview", [
        ("admin", False, False, False, "original", "admin", False),
        ("creator", True, False, False, "watermarked", "creator", False),
        ("creator", True, False, True, "watermarked", "creator", False),
        ("brand", False, True, False, "watermarked", "brand_preview", True),
        ("brand", False, True, True, "original", "brand_approved", False),
    ])
    def test_decision_table(self, role, owner, brand, removed, variant, level, preview):
        decision = resolve_video_access(role, owner, brand, removed)

        assert decision.variant == variant
        assert decision.access_level == level
        assert decision.is_preview is preview
        assert decision.can_download_original is (variant == "original")
        assert decision.watermark_status == ("removed" if removed else "active")

    @pytest.mark.parametrize("role", ["creator", "brand"])
    def test_unrelated_caller_is_forbidden(self, role):
        with pytest.raises(AuthorizationError):
            resolve_video_access(role, False, False, True)


class TestGetVideo:
    """Video reads through the gate"""

    def test_brand_gets_watermarked_preview_before_approval(self, services, submission_setup):
        _, submission_id = submission_setup

        video = services.watermark.get_video(submission_id, Caller("brand-1", "brand"))

        assert video["video_url"].endswith("42-watermarked.mp4")
        assert video["access_level"] == "brand_preview"
        assert video["is_preview"] is True

    def test_admin_gets_original(self, services, submission_setup):
        _, submission_id = submission_setup

        video = services.watermark.get_video(submission_id, Caller("admin-1", "admin"))

        assert video["video_url"].endswith("42-original.mp4")

    def test_other_brand_is_forbidden(self, services, submission_setup):
        _, submission_id = submission_setup

        with pytest.raises(AuthorizationError):
            services.watermark.get_video(submission_id, Caller("brand-2", "brand"))

    def test_unknown_submission(self, services):
        with pytest.raises(NotFoundError):
            services.watermark.get_video(9999, Caller("admin-1", "admin"))

    def test_status_reports_payment(self, services, test_data_factory, submission_setup):
        order, submission_id = submission_setup
        test_data_factory.pay_order(order)

        status = services.watermark.get_submission_status(submission_id, Caller("creator-1", "creator"))

        assert status["status"] == "pending"
        assert status["order_id"] == order["id"]
        assert status["payment_status"] == "PAID"
        assert status["watermark_removed"] is False


class TestApproveSubmission:
    """Brand approval of paid content"""

    def test_unpaid_content_requires_payment(self, services, test_data_factory, submission_setup):
        _, submission_id = submission_setup

        with pytest.raises(PaymentRequiredError):
            services.watermark.approve_submission(submission_id, "brand-1")

        submission = test_data_factory.get(Submission, submission_id)
        assert submission.status == "pending"
        assert submission.watermark_removed is False

    def test_paid_content_unlocks_original_and_releases_escrow(self, services, test_data_factory, submission_setup):
        order, submission_id = submission_setup
        test_data_factory.pay_order(order)

        result = services.watermark.approve_submission(submission_id, "brand-1")

        assert result["status"] == "approved"
        assert result["original_url"].endswith("42-original.mp4")
        assert result["order_id"] == order["id"]
        assert result["payment_amount"] == Decimal("1000.00")
        assert result["escrow"]["released"] is True
        assert result["escrow"]["net_amount"] == Decimal("850.00")

        submission = test_data_factory.get(Submission, submission_id)
        assert submission.watermark_removed is True
        assert submission.reviewed_at is not None
        assert services.escrow.get_balance("creator-1")["available"] == Decimal("850.00")

        video = services.watermark.get_video(submission_id, Caller("brand-1", "brand"))
        assert video["variant"] == "original"
        assert video["access_level"] == "brand_approved"
        creator_video = services.watermark.get_video(submission_id, Caller("creator-1", "creator"))
        assert creator_video["variant"] == "watermarked"

    def test_second_approval_conflicts_and_credits_once(self, services, test_data_factory, submission_setup):
        order, submission_id = submission_setup
        test_data_factory.pay_order(order)
        services.watermark.approve_submission(submission_id, "brand-1")

        with pytest.raises(ConflictError):
            services.watermark.approve_submission(submission_id, "brand-1")

        assert services.escrow.get_balance("creator-1")["available"] == Decimal("850.00")

    def test_other_brand_cannot_approve(self, services, test_data_factory, submission_setup):
        order, submission_id = submission_setup
        test_data_factory.pay_order(order)

        with pytest.raises(AuthorizationError):
            services.watermark.approve_submission(submission_id, "brand-2")

    def test_unknown_submission(self, services):
        with pytest.raises(NotFoundError):
            services.watermark.approve_submission(9999, "brand-1")
