"""Order endpoints: brands create and cancel orders for accepted agreements"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from config import Config
from handlers.auth import get_current_caller, get_services, require_brand
from services.caller import Caller
from services.registry import SettlementServices
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


class CreateOrderRequest(BaseModel):
    agreement_id: Optional[int] = None
    amount: Optional[Decimal] = None
    description: Optional[str] = Field(None, max_length=2000)
    metadata: Optional[Dict[str, Any]] = None


@router.post("")
async def create_order(
    body: CreateOrderRequest,
    caller: Caller = Depends(require_brand),
    services: SettlementServices = Depends(get_services),
):
    order = await run_io_task(
        services.orders.create_order,
        caller.id,
        body.agreement_id,
        body.amount,
        description=body.description,
        metadata=body.metadata,
        timeout=Config.STORE_TIMEOUT_SECONDS,
    )
    return {"success": True, "data": order}


@router.get("")
async def list_orders(
    status: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(get_current_caller),
    services: SettlementServices = Depends(get_services),
):
    orders = await run_io_task(
        services.orders.list_orders, caller, status, limit, offset, timeout=Config.STORE_TIMEOUT_SECONDS
    )
    return {"success": True, "data": orders}


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    caller: Caller = Depends(get_current_caller),
    services: SettlementServices = Depends(get_services),
):
    order = await run_io_task(services.orders.get_order, order_id, caller, timeout=Config.STORE_TIMEOUT_SECONDS)
    return {"success": True, "data": order}


@router.patch("/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    caller: Caller = Depends(require_brand),
    services: SettlementServices = Depends(get_services),
):
    order = await run_io_task(services.orders.cancel_order, order_id, caller.id, timeout=Config.STORE_TIMEOUT_SECONDS)
    return {"success": True, "data": order}
