"""Wires the settlement services around one ledger store and one Stripe client"""

from dataclasses import dataclass
from typing import Any, Optional

import stripe

from services.escrow_accounting import EscrowAccounting
from services.ledger_store import LedgerStore
from services.order_state_machine import OrderService
from services.payment_gateway import StripeGatewayAdapter, configure_stripe_client
from services.watermark_gate import WatermarkGate
from services.webhook_processor import WebhookProcessor
from services.withdrawal_workflow import WithdrawalWorkflow


@dataclass
class SettlementServices:
    store: LedgerStore
    orders: OrderService
    escrow: EscrowAccounting
    gateway: StripeGatewayAdapter
    webhooks: WebhookProcessor
    withdrawals: WithdrawalWorkflow
    watermark: WatermarkGate


def build_services(
    store: Optional[LedgerStore] = None,
    stripe_client: Any = stripe,
    webhook_secret: Optional[str] = None,
) -> SettlementServices:
    store = store or LedgerStore()
    configure_stripe_client(stripe_client)
    orders = OrderService(store)
    escrow = EscrowAccounting(store)
    gateway = StripeGatewayAdapter(
        store, orders, escrow, stripe_client=stripe_client, webhook_secret=webhook_secret
    )
    return SettlementServices(
        store=store,
        orders=orders,
        escrow=escrow,
        gateway=gateway,
        webhooks=WebhookProcessor(store, gateway, orders, escrow),
        withdrawals=WithdrawalWorkflow(store, escrow),
        watermark=WatermarkGate(store, escrow),
    )
