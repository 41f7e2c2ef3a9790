"""
Unified error governance.

Classifies exceptions, records them on the current OpenTelemetry span and
returns a standardized JSON error body.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from opentelemetry import trace

from shopbilling.shared.core.config import get_settings
from shopbilling.shared.core.exceptions import ShopBillingException
from shopbilling.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

# Operator-facing codes whose messages are safe to show in production.
SAFE_CODES = {
    "not_found",
    "validation_error",
    "invalid_state",
    "activation_failed",
    "timeout_error",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """Classifies and records exceptions, returning a standardized JSON response."""
    error_id = error_id or str(uuid4())
    settings = get_settings()
    is_prod = settings.ENVIRONMENT.lower() in ("production", "staging")

    if isinstance(exc, ShopBillingException):
        billing_exc = exc
        if is_prod and billing_exc.code not in SAFE_CODES:
            billing_exc.message = "An error occurred while processing your request"
    elif isinstance(exc, ValueError):
        msg = "Invalid request parameters" if is_prod else str(exc)
        billing_exc = ShopBillingException(
            message=msg,
            code="value_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        billing_exc = ShopBillingException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    with tracer.start_as_current_span("handle_exception") as span:
        span.set_attribute("error.id", error_id)
        span.set_attribute("error.code", billing_exc.code)
        span.set_attribute("http.path", request.url.path)
        span.set_attribute("http.method", request.method)
        span.record_exception(exc)
        span.set_status(trace.Status(trace.StatusCode.ERROR, billing_exc.code))

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=billing_exc.status_code,
    ).inc()

    log = logger.warning if billing_exc.status_code < 500 else logger.error
    log(
        "api_error",
        error_id=error_id,
        code=billing_exc.code,
        message=billing_exc.message,
        status_code=billing_exc.status_code,
        path=request.url.path,
        details=billing_exc.details,
    )

    response_details: Dict[str, Any] | None = billing_exc.details
    if is_prod and billing_exc.code not in SAFE_CODES:
        response_details = None

    return JSONResponse(
        status_code=billing_exc.status_code,
        content={
            "error": {
                "message": billing_exc.message,
                "code": billing_exc.code,
                "id": error_id,
                "details": response_details if response_details else None,
            }
        },
    )
