"""
Timeout handling for bounded payment operations.

Verify/reject/force-activate calls get a whole-operation time budget that is
independent of the best-effort side-effect timeout.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from shopbilling.shared.core.config import get_settings
from shopbilling.shared.core.exceptions import OperationTimeoutError
from shopbilling.shared.core.ops_metrics import PAYMENT_OPERATION_DURATION

logger = structlog.get_logger()

T = TypeVar("T")


def _default_budgets() -> dict[str, float]:
    settings = get_settings()
    return {
        "default": 30.0,
        "payment_operation": float(settings.PAYMENT_OPERATION_TIMEOUT_SECONDS),
        "side_effect": float(settings.SIDE_EFFECT_TIMEOUT_SECONDS),
        "smtp": float(settings.SMTP_TIMEOUT_SECONDS),
    }


class TimeoutManager:
    """Manages the time budget of one operation type."""

    def __init__(self, operation_type: str = "default", timeout: float | None = None):
        self.operation_type = operation_type
        budgets = _default_budgets()
        self.timeout = timeout or budgets.get(operation_type, budgets["default"])

    async def execute_with_timeout(
        self,
        coro: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Execute a coroutine function within the time budget."""
        start_time = time.perf_counter()

        try:
            result = await asyncio.wait_for(coro(*args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError:
            execution_time = time.perf_counter() - start_time
            logger.warning(
                "operation_timed_out",
                operation_type=self.operation_type,
                execution_time_seconds=round(execution_time, 3),
                timeout_seconds=self.timeout,
            )
            raise OperationTimeoutError(
                f"Operation timed out after {self.timeout} seconds",
                details={
                    "operation_type": self.operation_type,
                    "timeout_seconds": self.timeout,
                },
            )
        finally:
            PAYMENT_OPERATION_DURATION.labels(operation=self.operation_type).observe(
                time.perf_counter() - start_time
            )

        logger.debug(
            "operation_completed_within_timeout",
            operation_type=self.operation_type,
            execution_time_seconds=round(time.perf_counter() - start_time, 3),
            timeout_seconds=self.timeout,
        )
        return result
