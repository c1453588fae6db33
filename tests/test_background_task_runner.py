"""Tests for offloading blocking settlement calls from async handlers"""

import threading
import time

import pytest

from utils.background_task_runner import run_io_task
from utils.exception_handler import GatewayTimeoutError, NotFoundError


class TestRunIoTask:
    """run_io_task worker-thread execution"""

    @pytest.mark.asyncio
    async def test_runs_on_worker_thread(self):
        caller_thread = threading.get_ident()

        def blocking(a, b, scale=1):
            return (a + b) * scale, threading.get_ident()

        result, worker_thread = await run_io_task(blocking, 2, 3, scale=10, timeout=5)

        assert result == 50
        assert worker_thread != caller_thread

    @pytest.mark.asyncio
    async def test_service_errors_propagate(self):
        def missing():
            raise NotFoundError("Order not found")

        with pytest.raises(NotFoundError):
            await run_io_task(missing, timeout=5)

    @pytest.mark.asyncio
    async def test_slow_call_becomes_gateway_timeout(self):
        with pytest.raises(GatewayTimeoutError):
            await run_io_task(time.sleep, 0.5, timeout=0.05)
