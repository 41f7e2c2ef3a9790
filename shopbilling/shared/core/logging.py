import logging
import re
import sys
from typing import Any, cast

import structlog
from opentelemetry import trace

from shopbilling.shared.core.config import get_settings

_EMAIL_REGEX = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
_PHONE_REGEX = re.compile(
    r"(?<!\w)(?:\+?\d{1,3}[\s.-]?)?(?:\(?\d{2,4}\)?[\s.-]?){2,4}\d{2,4}(?!\w)"
)
_PII_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "api_key",
    "apikey",
    "smtp_password",
    "credit_card",
    "access_token",
    "refresh_token",
    "private_key",
}
_PII_SUFFIXES = ("_token", "_secret", "_password", "_key")
# Keys whose values are allowed to carry an email address in logs.
_EMAIL_ALLOWED_KEYS = {"event"}


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _PII_FIELDS:
        return True
    if key_norm.endswith(_PII_SUFFIXES):
        return True
    tokens = [t for t in re.split(r"[^a-z0-9]+", key_norm) if t]
    return any(t in _PII_FIELDS for t in tokens)


def _redact_text(text: Any) -> Any:
    if not isinstance(text, str):
        return text
    text = _EMAIL_REGEX.sub("[EMAIL_REDACTED]", text)

    # Only plausible phone numbers (avoid timestamps/UUID fragments).
    def _replace_phone(match: re.Match[str]) -> str:
        candidate = match.group(0)
        digits = re.sub(r"\D", "", candidate)
        looks_like_phone = len(digits) >= 10 and (
            candidate.strip().startswith("+")
            or any(ch in candidate for ch in (" ", "-", ".", "(", ")"))
        )
        return "[PHONE_REDACTED]" if looks_like_phone else candidate

    return _PHONE_REGEX.sub(_replace_phone, text)


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact common PII and sensitive fields from logs.
    Sender phone numbers and admin emails must never reach log sinks.
    """

    def redact_recursive(data: Any, key: Any = None) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if _is_sensitive_key(k) else redact_recursive(v, k))
                for k, v in data.items()
            }
        if isinstance(data, list):
            return [redact_recursive(item) for item in data]
        if isinstance(data, str) and key not in _EMAIL_ALLOWED_KEYS:
            return _redact_text(data)
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def add_otel_trace_id(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Integrate OTel Trace IDs into structured logs."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
    return event_dict


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_otel_trace_id,
        pii_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route library logs (uvicorn, sqlalchemy) through the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )
