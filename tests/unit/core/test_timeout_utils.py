import asyncio

import pytest

from shopbilling.shared.core.config import get_settings
from shopbilling.shared.core.exceptions import OperationTimeoutError
from shopbilling.shared.core.timeout import TimeoutManager


def test_budget_lookup():
    settings = get_settings()
    assert (
        TimeoutManager("payment_operation").timeout
        == settings.PAYMENT_OPERATION_TIMEOUT_SECONDS
    )
    assert TimeoutManager("smtp").timeout == settings.SMTP_TIMEOUT_SECONDS
    assert TimeoutManager("unknown").timeout == 30.0
    assert TimeoutManager("payment_operation", timeout=1.5).timeout == 1.5


@pytest.mark.asyncio
async def test_execute_returns_result():
    async def add(a, b, *, c=0):
        return a + b + c

    manager = TimeoutManager("payment_operation", timeout=1)
    assert await manager.execute_with_timeout(add, 1, 2, c=3) == 6


@pytest.mark.asyncio
async def test_execute_raises_operation_timeout():
    async def slow():
        await asyncio.sleep(5)

    manager = TimeoutManager("payment_operation", timeout=0.01)
    with pytest.raises(OperationTimeoutError) as exc:
        await manager.execute_with_timeout(slow)

    assert exc.value.status_code == 504
    assert exc.value.details == {
        "operation_type": "payment_operation",
        "timeout_seconds": 0.01,
    }


@pytest.mark.asyncio
async def test_execute_propagates_errors():
    async def broken():
        raise RuntimeError("db down")

    with pytest.raises(RuntimeError, match="db down"):
        await TimeoutManager(timeout=1).execute_with_timeout(broken)
