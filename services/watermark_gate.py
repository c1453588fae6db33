"""
Watermark / Video Access Gate

Decides which video variant a caller may receive and unlocks the original
when the brand approves a paid submission.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Campaign, Order, OrderStatus, Submission, SubmissionStatus, UserRole, utcnow
from services.caller import Caller
from services.escrow_accounting import EscrowAccounting
from services.ledger_store import LedgerStore
from utils.exception_handler import (
    AuthorizationError,
    ConflictError,
    InternalInconsistencyError,
    NotFoundError,
    PaymentRequiredError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VideoAccessDecision:
    variant: str  # original | watermarked
    access_level: str  # admin | creator | brand_approved | brand_preview
    watermark_status: str  # removed | active
    can_download_original: bool
    is_preview: bool


def resolve_video_access(
    role: str,
    is_owner_creator: bool,
    is_campaign_brand: bool,
    watermark_removed: bool,
) -> VideoAccessDecision:
    """Pure capability check; raises AuthorizationError for unrelated callers"""
    watermark_status = "removed" if watermark_removed else "active"

    if role == UserRole.ADMIN.value:
        return VideoAccessDecision("original", "admin", watermark_status, True, False)

    if role == UserRole.CREATOR.value and is_owner_creator:
        # Creators always see their own upload with the watermark
        return VideoAccessDecision("watermarked", "creator", watermark_status, False, False)

    if role == UserRole.BRAND.value and is_campaign_brand:
        if watermark_removed:
            return VideoAccessDecision("original", "brand_approved", watermark_status, True, False)
        return VideoAccessDecision("watermarked", "brand_preview", watermark_status, False, True)

    raise AuthorizationError("Not allowed to access this video")


class WatermarkGate:
    """Video reads and content approval for campaign submissions"""

    def __init__(self, store: LedgerStore, escrow: EscrowAccounting):
        self.store = store
        self.escrow = escrow

    def get_video(self, submission_id: int, caller: Caller) -> Dict[str, Any]:
        with self.store.unit_of_work() as session:
            submission, campaign = self._load(session, submission_id)
            decision = self._decide(caller, submission, campaign)
            url = submission.original_url if decision.variant == "original" else submission.watermarked_url

        logger.info(
            f"🎬 VIDEO_ACCESS: submission={submission_id} caller={caller.id} "
            f"level={decision.access_level} variant={decision.variant}"
        )
        return {"submission_id": submission_id, "video_url": url, **asdict(decision)}

    def get_submission_status(self, submission_id: int, caller: Caller) -> Dict[str, Any]:
        with self.store.unit_of_work() as session:
            submission, campaign = self._load(session, submission_id)
            self._decide(caller, submission, campaign)
            order = self._order_for(session, submission)
            return {
                "submission_id": submission.id,
                "campaign_id": submission.campaign_id,
                "creator_id": submission.creator_id,
                "status": submission.status,
                "watermark_removed": submission.watermark_removed,
                "submitted_at": submission.submitted_at,
                "reviewed_at": submission.reviewed_at,
                "order_id": order.id if order is not None else None,
                "payment_status": order.status if order is not None else None,
            }

    def approve_submission(self, submission_id: int, brand_id: str) -> Dict[str, Any]:
        """Approve paid content: remove the watermark and release the escrow together"""
        with self.store.unit_of_work() as session:
            submission, campaign = self._load(session, submission_id)
            if campaign is None or campaign.brand_id != brand_id:
                raise AuthorizationError("Only the campaign brand can approve this submission")
            if submission.status == SubmissionStatus.APPROVED.value:
                raise ConflictError("Submission already approved")
            if submission.watermark_removed:
                raise ConflictError("Watermark already removed")

            order = self._order_for(session, submission, status=OrderStatus.PAID.value)
            if order is None:
                raise PaymentRequiredError(
                    "Payment required before approving this content",
                    {"campaign_id": submission.campaign_id, "creator_id": submission.creator_id},
                )
            order_id = order.id
            agreement_id = order.agreement_id
            payment_amount = order.amount
            original_url = submission.original_url

            rowcount = self.store.conditional_update(
                session,
                Submission,
                [
                    Submission.id == submission_id,
                    Submission.status != SubmissionStatus.APPROVED.value,
                    Submission.watermark_removed.is_(False),
                ],
                {
                    "status": SubmissionStatus.APPROVED.value,
                    "watermark_removed": True,
                    "reviewed_at": utcnow(),
                },
            )
            if rowcount == 0:
                raise ConflictError("Submission already approved")

            try:
                release = self.escrow.release_escrow(agreement_id, session=session)
            except NotFoundError:
                raise InternalInconsistencyError(
                    "Paid order has no escrow to release",
                    {"order_id": order_id, "agreement_id": agreement_id},
                )

        logger.info(
            f"✅ SUBMISSION_APPROVED: submission={submission_id} brand={brand_id} "
            f"order={order_id} escrow_released={release['released']}"
        )
        return {
            "submission_id": submission_id,
            "status": SubmissionStatus.APPROVED.value,
            "original_url": original_url,
            "order_id": order_id,
            "payment_amount": payment_amount,
            "escrow": release,
        }

    @staticmethod
    def _load(session: Session, submission_id: int):
        submission = session.get(Submission, submission_id)
        if submission is None:
            raise NotFoundError("Submission not found")
        return submission, session.get(Campaign, submission.campaign_id)

    @staticmethod
    def _decide(caller: Caller, submission: Submission, campaign) -> VideoAccessDecision:
        return resolve_video_access(
            caller.role,
            is_owner_creator=caller.id == submission.creator_id,
            is_campaign_brand=campaign is not None and caller.id == campaign.brand_id,
            watermark_removed=bool(submission.watermark_removed),
        )

    @staticmethod
    def _order_for(session: Session, submission: Submission, status: str = None):
        stmt = select(Order).where(
            Order.campaign_id == submission.campaign_id,
            Order.creator_id == submission.creator_id,
        )
        if status:
            stmt = stmt.where(Order.status == status)
        return session.execute(stmt.order_by(Order.id.desc())).scalars().first()
