"""
Best-effort side-effect boundary.

Emails and real-time events run as detached asyncio tasks, each with its own
timeout and error boundary. A failing or hanging side effect is logged and
counted; it never reaches the caller and never touches billing state.
"""

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from shopbilling.shared.core.async_utils import maybe_call
from shopbilling.shared.core.config import get_settings
from shopbilling.shared.core.ops_metrics import SIDE_EFFECT_FAILURES

logger = structlog.get_logger()


class SideEffectDispatcher:
    def __init__(self, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else float(get_settings().SIDE_EFFECT_TIMEOUT_SECONDS)
        )
        # Strong references, otherwise the loop may collect running tasks.
        self._tasks: set[asyncio.Task[None]] = set()

    def dispatch(
        self, name: str, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> asyncio.Task[None]:
        """Schedule `func(*args, **kwargs)` without waiting for it."""
        task = asyncio.create_task(
            self._run(name, func, args, kwargs), name=f"side_effect:{name}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        name: str,
        func: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        try:
            await asyncio.wait_for(
                maybe_call(func, *args, **kwargs), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            SIDE_EFFECT_FAILURES.labels(name=name, reason="timeout").inc()
            logger.warning(
                "side_effect_timed_out",
                side_effect=name,
                timeout_seconds=self.timeout_seconds,
            )
        except asyncio.CancelledError:
            SIDE_EFFECT_FAILURES.labels(name=name, reason="cancelled").inc()
            raise
        except Exception as exc:
            SIDE_EFFECT_FAILURES.labels(name=name, reason="error").inc()
            logger.warning(
                "side_effect_failed",
                side_effect=name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        else:
            logger.debug("side_effect_completed", side_effect=name)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled side effect. Used on shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


_dispatcher: SideEffectDispatcher | None = None


def get_side_effect_dispatcher() -> SideEffectDispatcher:
    """Process-wide dispatcher, so shutdown can drain every pending side effect."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = SideEffectDispatcher()
    return _dispatcher
