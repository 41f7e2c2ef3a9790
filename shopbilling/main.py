import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from shopbilling.modules.billing.api.v1.payments_admin import router as payments_admin_router
from shopbilling.modules.notifications.domain.dispatch import get_side_effect_dispatcher
from shopbilling.shared.core.config import get_settings
from shopbilling.shared.core.error_governance import handle_exception
from shopbilling.shared.core.exceptions import ShopBillingException
from shopbilling.shared.core.logging import setup_logging
from shopbilling.shared.core.ops_metrics import API_ERRORS_TOTAL
from shopbilling.shared.db.session import get_engine, health_check

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)
    yield
    # Let in-flight confirmation emails and events finish before the loop closes.
    await get_side_effect_dispatcher().drain()
    await get_engine().dispose()
    logger.info("app_stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)


@app.exception_handler(ShopBillingException)
async def shopbilling_exception_handler(
    request: Request, exc: ShopBillingException
) -> JSONResponse:
    """Handle custom application exceptions."""
    return handle_exception(request, exc)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": detail_text,
                "code": "http_error",
                "id": None,
                "details": None,
            }
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "The request body or parameters are invalid.",
                "code": "request_validation_error",
                "id": None,
                "details": {"errors": _sanitize_errors(exc.errors())},
            }
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled exceptions get a sanitized body and trace correlation."""
    return handle_exception(request, exc)


@app.get("/health")
async def health() -> Dict[str, Any]:
    database = await health_check()
    return {
        "status": "healthy" if database["status"] == "up" else "degraded",
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "database": database,
    }


app.include_router(payments_admin_router, prefix="/api/v1/admin/payments")

Instrumentator().instrument(app).expose(app)

__all__ = ["app", "lifespan"]
