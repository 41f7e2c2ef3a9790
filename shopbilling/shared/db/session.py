import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, AsyncGenerator, Dict

import structlog
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from shopbilling.shared.core.config import get_settings

logger = structlog.get_logger()

# Ensure ORM mappings are registered for scripts that import the DB layer
# without importing `shopbilling/main.py`.
import shopbilling.models  # noqa: F401, E402

SLOW_QUERY_THRESHOLD_SECONDS = 0.5


@dataclass(slots=True)
class _DBRuntime:
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    if bool(getattr(settings_obj, "TESTING", False)) and not db_url:
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
    }
    if effective_url.endswith(":memory:"):
        # One shared connection, otherwise every session sees an empty database.
        pool_config["poolclass"] = StaticPool
    elif "sqlite" not in effective_url:
        pool_config.update(
            {
                "pool_size": int(getattr(settings_obj, "DB_POOL_SIZE", 10)),
                "max_overflow": int(getattr(settings_obj, "DB_MAX_OVERFLOW", 20)),
                "pool_recycle": 3600,
            }
        )
    return pool_config


def before_cursor_execute(
    conn: Any, cursor: Any, statement: Any, parameters: Any, context: Any, executemany: Any
) -> None:
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Any, cursor: Any, statement: Any, parameters: Any, context: Any, executemany: Any
) -> None:
    starts = conn.info.get("query_start_time")
    if not starts:
        return
    total = time.perf_counter() - starts.pop(-1)
    if total > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            statement=str(statement)[:200],
        )


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    effective_url = _resolve_effective_url(settings_obj)
    if not effective_url:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    engine = create_async_engine(
        effective_url, **_build_pool_config(settings_obj, effective_url)
    )
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(
        engine=engine, session_maker=session_maker, effective_url=effective_url
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


def reset_db_runtime() -> None:
    """Test helper for forcing runtime re-initialization on next access."""
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None
    if runtime is None:
        return
    try:
        runtime.engine.sync_engine.dispose()
    except Exception as exc:
        logger.debug("db_runtime_dispose_skipped", error=str(exc), exc_info=True)


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def async_session_maker(*args: Any, **kwargs: Any) -> Any:
    """Return a new async session from the active session factory."""
    return _get_db_runtime().session_maker(*args, **kwargs)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def health_check() -> Dict[str, Any]:
    start = time.perf_counter()
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
        return {
            "status": "up",
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
        }
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        return {"status": "down", "error": str(exc)}
