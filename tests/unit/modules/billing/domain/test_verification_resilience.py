"""
Failure isolation in the verification workflow: side effects, audit writes
unexpected activation errors and failed status writes.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from shopbilling.models.invoice import InvoiceStatus
from shopbilling.modules.audit.domain.audit_log import AuditOutcome
from shopbilling.modules.billing.domain.invoice_store import InvoiceStore
from shopbilling.modules.billing.domain.subscription_store import SubscriptionStore
from shopbilling.modules.notifications.domain.dispatch import SideEffectDispatcher


def _side_effect_failures(name: str, reason: str) -> float:
    return (
        REGISTRY.get_sample_value(
            "shopbilling_side_effect_failures_total", {"name": name, "reason": reason}
        )
        or 0.0
    )


def _audit_failures(event_type: str) -> float:
    return (
        REGISTRY.get_sample_value(
            "shopbilling_audit_write_failures_total", {"event_type": event_type}
        )
        or 0.0
    )


@pytest.mark.asyncio
async def test_email_failure_does_not_reach_caller(
    db_session, billing, make_workflow, admin, dispatcher, email_service
):
    _, invoice = await billing.upgrade()
    email_service.send_template_email.side_effect = RuntimeError("smtp down")
    before = _side_effect_failures("payment_confirmation_email", "error")

    result = await make_workflow(db_session).verify_payment(invoice.id, admin)
    await dispatcher.drain()

    assert result.success is True
    assert result.upgrade_activated is True
    assert _side_effect_failures("payment_confirmation_email", "error") == before + 1


@pytest.mark.asyncio
async def test_undelivered_email_is_counted(
    db_session, billing, make_workflow, admin, dispatcher, email_service
):
    _, invoice = await billing.upgrade()
    email_service.send_template_email.return_value = False
    before = _side_effect_failures("payment_rejection_email", "error")

    result = await make_workflow(db_session).reject_payment(
        invoice.id, admin, "Receipt was reversed by the carrier"
    )
    await dispatcher.drain()

    assert result.success is True
    assert _side_effect_failures("payment_rejection_email", "error") == before + 1


@pytest.mark.asyncio
async def test_hanging_email_does_not_block_verification(
    db_session, billing, make_workflow, admin, email_service
):
    _, invoice = await billing.upgrade()
    release = asyncio.Event()

    async def hang(*args, **kwargs):
        await release.wait()
        return True

    email_service.send_template_email.side_effect = hang
    dispatcher = SideEffectDispatcher(timeout_seconds=0.05)
    before = _side_effect_failures("payment_confirmation_email", "timeout")

    result = await make_workflow(db_session, dispatcher=dispatcher).verify_payment(
        invoice.id, admin
    )

    assert result.success is True
    assert dispatcher.pending >= 1
    await dispatcher.drain()
    assert dispatcher.pending == 0
    assert _side_effect_failures("payment_confirmation_email", "timeout") == before + 1


@pytest.mark.asyncio
async def test_event_publisher_failure_is_isolated(
    db_session, billing, make_workflow, admin, dispatcher
):
    _, invoice = await billing.upgrade()
    broken = AsyncMock()
    broken.emit.side_effect = ConnectionError("socket closed")

    result = await make_workflow(db_session, events=broken).verify_payment(
        invoice.id, admin
    )
    await dispatcher.drain()

    assert result.success is True
    assert broken.emit.await_count == 2


@pytest.mark.asyncio
async def test_missing_email_service_skips_notification(
    db_session, billing, make_workflow, admin, dispatcher
):
    _, invoice = await billing.upgrade()
    before = _side_effect_failures("payment_confirmation_email", "error")

    result = await make_workflow(db_session, email_service=None).verify_payment(
        invoice.id, admin
    )
    await dispatcher.drain()

    assert result.success is True
    assert _side_effect_failures("payment_confirmation_email", "error") == before


@pytest.mark.asyncio
async def test_shop_without_contact_gets_no_email(
    db_session, billing, make_workflow, admin, dispatcher, email_service, directory
):
    subscription, invoice = await billing.upgrade()
    directory.shops.pop(subscription.shop_id)

    await make_workflow(db_session).verify_payment(invoice.id, admin)
    await dispatcher.drain()

    email_service.send_template_email.assert_not_awaited()


@pytest.mark.asyncio
async def test_audit_failure_is_flagged_not_raised(
    db_session, billing, make_workflow, admin
):
    subscription, invoice = await billing.upgrade(target_plan="pro")
    workflow = make_workflow(db_session)
    before = _audit_failures("payment.verified")
    invoice_id, subscription_id = invoice.id, subscription.id

    with patch.object(
        workflow.audit, "log", AsyncMock(side_effect=RuntimeError("audit store down"))
    ):
        result = await workflow.verify_payment(invoice_id, admin)

    assert result.success is True
    assert result.audit_recorded is False
    assert _audit_failures("payment.verified") == before + 1

    # The rollback after the failed audit write expires loaded rows; re-read them.
    stored = await InvoiceStore(db_session).get(invoice_id)
    assert stored.status == InvoiceStatus.PAID.value
    stored_sub = await SubscriptionStore(db_session).get(subscription_id)
    assert stored_sub.plan_code == "pro"


@pytest.mark.asyncio
async def test_unexpected_activation_error_propagates_but_payment_stays_paid(
    db_session, billing, make_workflow, admin
):
    _, invoice = await billing.upgrade()
    invoice_id = invoice.id
    workflow = make_workflow(db_session)

    with patch.object(
        workflow.activator,
        "activate_pending_upgrade",
        AsyncMock(side_effect=RuntimeError("connection reset")),
    ):
        with pytest.raises(RuntimeError, match="connection reset"):
            await workflow.verify_payment(invoice_id, admin)

    stored = await InvoiceStore(db_session).get(invoice_id)
    assert stored.status == InvoiceStatus.PAID.value

    entries = await billing.audit_entries(invoice_id)
    assert [e.outcome for e in entries] == [AuditOutcome.FAILURE.value]
    assert entries[0].error_message == "connection reset"


def _locked() -> OperationalError:
    return OperationalError("UPDATE payment_attempts", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_failed_verify_write_is_rolled_back_and_audited(
    db_session, billing, make_workflow, admin
):
    _, invoice = await billing.upgrade()
    invoice_id = invoice.id
    workflow = make_workflow(db_session)

    with patch.object(
        workflow.attempts, "mark_success", AsyncMock(side_effect=_locked())
    ):
        with pytest.raises(OperationalError):
            await workflow.verify_payment(invoice_id, admin)

    stored = await InvoiceStore(db_session).get(invoice_id)
    assert stored.status == InvoiceStatus.PENDING_VERIFICATION.value

    entries = await billing.audit_entries(invoice_id)
    assert [e.outcome for e in entries] == [AuditOutcome.FAILURE.value]
    assert entries[0].event_type == "payment.verified"
    assert "database is locked" in entries[0].error_message

    # The session is usable again: a retry goes through.
    retry = await workflow.verify_payment(invoice_id, admin)
    assert retry.activated is True


@pytest.mark.asyncio
async def test_failed_reject_write_is_rolled_back_and_audited(
    db_session, billing, make_workflow, admin
):
    subscription, invoice = await billing.upgrade()
    invoice_id, subscription_id = invoice.id, subscription.id
    workflow = make_workflow(db_session)

    with patch.object(
        workflow.attempts, "mark_failed", AsyncMock(side_effect=_locked())
    ):
        with pytest.raises(OperationalError):
            await workflow.reject_payment(
                invoice_id, admin, "Receipt number not found on the till statement"
            )

    stored = await InvoiceStore(db_session).get(invoice_id)
    assert stored.status == InvoiceStatus.PENDING_VERIFICATION.value
    stored_subscription = await SubscriptionStore(db_session).get(subscription_id)
    assert stored_subscription.pending_upgrade_plan == "pro"

    entries = await billing.audit_entries(invoice_id)
    assert [e.outcome for e in entries] == [AuditOutcome.FAILURE.value]
    assert entries[0].event_type == "payment.rejected"
    assert entries[0].success is False
