"""
Stripe payment endpoints

The webhook route is unauthenticated: the Stripe-Signature header over the raw
body is verified before anything is parsed. Processing failures answer 5xx so
Stripe redelivers the same event id.
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from config import Config
from handlers.auth import get_current_caller, get_services, require_admin, require_brand
from services.caller import Caller
from services.registry import SettlementServices
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


class CheckoutRequest(BaseModel):
    order_id: int


class RefundRequest(BaseModel):
    payment_intent_id: Optional[str] = None
    amount: Optional[Decimal] = None


@router.post("/checkout")
async def create_checkout(
    body: CheckoutRequest,
    caller: Caller = Depends(require_brand),
    services: SettlementServices = Depends(get_services),
):
    intent = await run_io_task(
        services.gateway.create_payment_intent,
        body.order_id,
        caller.id,
        timeout=Config.GATEWAY_TIMEOUT_SECONDS,
    )
    return {"success": True, "data": intent}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services: SettlementServices = Depends(get_services),
):
    payload = await request.body()
    result = await run_io_task(
        services.webhooks.process,
        payload,
        stripe_signature,
        timeout=Config.STORE_TIMEOUT_SECONDS,
    )
    return {"received": True, **result}


@router.get("/status/{payment_intent_id}")
async def payment_status(
    payment_intent_id: str,
    caller: Caller = Depends(get_current_caller),
    services: SettlementServices = Depends(get_services),
):
    status = await run_io_task(
        services.gateway.get_payment_status,
        payment_intent_id,
        caller,
        timeout=Config.GATEWAY_TIMEOUT_SECONDS,
    )
    return {"success": True, "data": status}


@router.post("/refund")
async def refund_payment(
    body: RefundRequest,
    caller: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    refund = await run_io_task(
        services.gateway.refund,
        body.payment_intent_id,
        caller.id,
        amount=body.amount,
        timeout=Config.GATEWAY_TIMEOUT_SECONDS,
    )
    return {"success": True, "data": refund}
