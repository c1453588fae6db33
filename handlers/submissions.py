"""Submission endpoints: watermark-gated video reads and brand approval"""

import logging

from fastapi import APIRouter, Depends

from config import Config
from handlers.auth import get_current_caller, get_services, require_brand
from services.caller import Caller
from services.registry import SettlementServices
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/submissions", tags=["submissions"])


@router.post("/{submission_id}/approve")
async def approve_submission(
    submission_id: int,
    caller: Caller = Depends(require_brand),
    services: SettlementServices = Depends(get_services),
):
    result = await run_io_task(
        services.watermark.approve_submission, submission_id, caller.id, timeout=Config.STORE_TIMEOUT_SECONDS
    )
    return {"success": True, "data": result}


@router.get("/{submission_id}/video")
async def get_video(
    submission_id: int,
    caller: Caller = Depends(get_current_caller),
    services: SettlementServices = Depends(get_services),
):
    video = await run_io_task(
        services.watermark.get_video, submission_id, caller, timeout=Config.STORE_TIMEOUT_SECONDS
    )
    return {"success": True, "data": video}


@router.get("/{submission_id}/status")
async def submission_status(
    submission_id: int,
    caller: Caller = Depends(get_current_caller),
    services: SettlementServices = Depends(get_services),
):
    status = await run_io_task(
        services.watermark.get_submission_status, submission_id, caller, timeout=Config.STORE_TIMEOUT_SECONDS
    )
    return {"success": True, "data": status}
