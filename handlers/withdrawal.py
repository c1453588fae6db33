"""Creator withdrawal endpoints and the admin payout queue"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from config import Config
from handlers.auth import get_services, require_admin, require_creator
from services.caller import Caller
from services.registry import SettlementServices
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/withdrawal", tags=["withdrawal"])


class WithdrawalRequestBody(BaseModel):
    requested_amount: Optional[Decimal] = None
    bank_details: Optional[Dict[str, Any]] = None


class ApproveBody(BaseModel):
    notes: Optional[str] = None


class RejectBody(BaseModel):
    rejection_reason: Optional[str] = None


class CompleteBody(BaseModel):
    receipt_url: Optional[str] = None
    notes: Optional[str] = None


@router.post("/request")
async def request_withdrawal(
    body: WithdrawalRequestBody,
    caller: Caller = Depends(require_creator),
    services: SettlementServices = Depends(get_services),
):
    request = await run_io_task(
        services.withdrawals.request_withdrawal,
        caller.id,
        body.requested_amount,
        body.bank_details,
        timeout=Config.STORE_TIMEOUT_SECONDS,
    )
    return {"success": True, "data": request}


@router.get("/balance")
async def get_balance(
    caller: Caller = Depends(require_creator),
    services: SettlementServices = Depends(get_services),
):
    balance = await run_io_task(services.escrow.get_balance, caller.id, timeout=Config.STORE_TIMEOUT_SECONDS)
    return {"success": True, "data": balance}


@router.get("/my-requests")
async def my_requests(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(require_creator),
    services: SettlementServices = Depends(get_services),
):
    requests = await run_io_task(
        services.withdrawals.list_creator_requests, caller.id, limit, offset, timeout=Config.STORE_TIMEOUT_SECONDS
    )
    return {"success": True, "data": requests}


@router.get("/requests")
async def list_requests(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    requests = await run_io_task(
        services.withdrawals.list_requests, status, limit, offset, timeout=Config.STORE_TIMEOUT_SECONDS
    )
    return {"success": True, "data": requests}


@router.patch("/{request_id}/approve")
async def approve_request(
    request_id: int,
    body: Optional[ApproveBody] = None,
    caller: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    notes = body.notes if body else None
    request = await run_io_task(
        services.withdrawals.approve, request_id, caller.id, notes, timeout=Config.STORE_TIMEOUT_SECONDS
    )
    return {"success": True, "data": request}


@router.patch("/{request_id}/reject")
async def reject_request(
    request_id: int,
    body: RejectBody,
    caller: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    request = await run_io_task(
        services.withdrawals.reject, request_id, caller.id, body.rejection_reason,
        timeout=Config.STORE_TIMEOUT_SECONDS,
    )
    return {"success": True, "data": request}


@router.patch("/{request_id}/processing")
async def mark_processing(
    request_id: int,
    caller: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    request = await run_io_task(
        services.withdrawals.mark_processing, request_id, caller.id, timeout=Config.STORE_TIMEOUT_SECONDS
    )
    return {"success": True, "data": request}


@router.patch("/{request_id}/complete")
async def complete_request(
    request_id: int,
    body: Optional[CompleteBody] = None,
    caller: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    receipt_url = body.receipt_url if body else None
    notes = body.notes if body else None
    request = await run_io_task(
        services.withdrawals.complete, request_id, caller.id, receipt_url, notes,
        timeout=Config.STORE_TIMEOUT_SECONDS,
    )
    return {"success": True, "data": request}
