"""
Thread offloading for blocking settlement work called from async handlers

Services talk to the ledger store and the payment gateway through blocking
clients (SQLAlchemy sessions, the stripe SDK). Handlers run them on a worker
thread with an upper bound on how long the request waits.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from config import Config
from utils.exception_handler import GatewayTimeoutError

logger = logging.getLogger(__name__)


async def run_io_task(fn: Callable, *args, timeout: Optional[float] = None, **kwargs) -> Any:
    """
    Execute a blocking function on a worker thread

    Args:
        fn: Function to execute
        *args: Function arguments
        timeout: Seconds to wait before answering with GatewayTimeoutError
        **kwargs: Function keyword arguments

    Returns:
        Function result

    The worker thread is not interrupted on timeout. Every operation run
    here is guarded by conditional updates, so a late finish cannot apply
    an effect twice.
    """
    limit = timeout if timeout is not None else Config.GATEWAY_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=limit)
    except asyncio.TimeoutError:
        name = getattr(fn, "__qualname__", repr(fn))
        logger.error(f"⏱️ IO_TASK_TIMEOUT: {name} exceeded {limit}s")
        raise GatewayTimeoutError(f"Operation timed out after {limit}s")
