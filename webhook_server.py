"""
FastAPI server for the creator settlement engine
Serves the order, payment, withdrawal and submission APIs plus the Stripe webhook
"""
from contextlib import asynccontextmanager
import logging
import os
from typing import Any, Optional

import stripe
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from handlers.orders import router as orders_router
from handlers.payments import router as payments_router
from handlers.submissions import router as submissions_router
from handlers.withdrawal import router as withdrawal_router
from services.ledger_store import LedgerStore
from services.registry import build_services
from utils.background_task_runner import run_io_task
from utils.exception_handler import register_exception_handlers

logger = logging.getLogger(__name__)


def create_app(
    store: Optional[LedgerStore] = None,
    stripe_client: Any = stripe,
    webhook_secret: Optional[str] = None,
) -> FastAPI:
    """Build the ASGI app around one ledger store and one Stripe client"""
    services = build_services(store=store, stripe_client=stripe_client, webhook_secret=webhook_secret)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🔧 Settlement worker {os.getpid()} starting...")
        Config.log_environment_config()
        create_tables(services.store.engine)
        logger.info(f"✅ Worker {os.getpid()} initialized successfully")

        yield

        logger.info(f"🔄 Settlement worker {os.getpid()} shutting down...")

    app = FastAPI(
        title="Creator Settlement Server",
        description="Orders, escrow, creator payouts and Stripe webhooks",
        lifespan=lifespan,
    )
    app.state.services = services
    register_exception_handlers(app)

    app.include_router(orders_router)
    app.include_router(payments_router)
    app.include_router(withdrawal_router)
    app.include_router(submissions_router)

    @app.get("/health")
    async def health_check():
        """Health check with a ledger store round trip"""
        database_ok = await run_io_task(
            test_connection, services.store.engine, timeout=Config.STORE_TIMEOUT_SECONDS
        )
        body = {
            "status": "ok" if database_ok else "degraded",
            "service": "creator-settlement",
            "database": "connected" if database_ok else "unavailable",
        }
        return JSONResponse(content=body, status_code=200 if database_ok else 503)

    return app


logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("webhook_server:app", host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
