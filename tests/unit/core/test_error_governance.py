import json
from unittest.mock import MagicMock, patch

import pytest

from shopbilling.shared.core.error_governance import handle_exception
from shopbilling.shared.core.exceptions import (
    ExternalAPIError,
    InvalidStateError,
    ResourceNotFoundError,
)


@pytest.fixture
def request_mock():
    request = MagicMock()
    request.url.path = "/api/v1/admin/payments/verify/123"
    request.method = "POST"
    return request


def _body(response):
    return json.loads(response.body)


def _settings(environment):
    settings = MagicMock()
    settings.ENVIRONMENT = environment
    return patch(
        "shopbilling.shared.core.error_governance.get_settings", return_value=settings
    )


def test_billing_exception_is_returned_verbatim(request_mock):
    exc = InvalidStateError("Invoice is paid, not pending", current_status="paid")
    with _settings("development"):
        response = handle_exception(request_mock, exc, error_id="err-1")

    assert response.status_code == 409
    assert _body(response) == {
        "error": {
            "message": "Invoice is paid, not pending",
            "code": "invalid_state",
            "id": "err-1",
            "details": {"current_status": "paid"},
        }
    }


def test_safe_codes_keep_message_in_production(request_mock):
    with _settings("production"):
        response = handle_exception(request_mock, ResourceNotFoundError("Invoice not found"))

    body = _body(response)
    assert response.status_code == 404
    assert body["error"]["message"] == "Invoice not found"
    assert body["error"]["id"]


@pytest.mark.parametrize("environment", ["production", "staging"])
def test_other_codes_are_sanitized_in_production(request_mock, environment):
    exc = ExternalAPIError("SMTP relay smtp.internal refused", details={"host": "smtp.internal"})
    with _settings(environment):
        response = handle_exception(request_mock, exc)

    body = _body(response)
    assert response.status_code == 502
    assert body["error"]["message"] == "An error occurred while processing your request"
    assert body["error"]["details"] is None


def test_value_error_becomes_bad_request(request_mock):
    with _settings("development"):
        response = handle_exception(request_mock, ValueError("bad page size"))
    assert response.status_code == 400
    assert _body(response)["error"]["code"] == "value_error"
    assert _body(response)["error"]["message"] == "bad page size"

    with _settings("production"):
        response = handle_exception(request_mock, ValueError("bad page size"))
    assert _body(response)["error"]["message"] == "Invalid request parameters"


def test_unexpected_exception_is_internal_error(request_mock):
    with _settings("development"):
        response = handle_exception(request_mock, RuntimeError("connection reset"))

    body = _body(response)
    assert response.status_code == 500
    assert body["error"]["code"] == "internal_error"
    assert "connection reset" not in body["error"]["message"]
