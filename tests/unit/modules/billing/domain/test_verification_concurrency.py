"""
Concurrent admin actions on the same invoice, each through its own session
and connection. Exactly one writer may win; the other must observe its result.
"""
import asyncio

import pytest

from shopbilling.models.invoice import InvoiceStatus
from shopbilling.modules.billing.domain.invoice_store import InvoiceStore
from shopbilling.modules.billing.domain.subscription_store import SubscriptionStore
from shopbilling.shared.core.exceptions import InvalidStateError

REJECTION_REASON = "Receipt number does not match any M-Pesa statement line"


@pytest.mark.asyncio
async def test_concurrent_verifications_activate_once(
    session_factory, billing, make_workflow, admin, dispatcher
):
    subscription, invoice = await billing.upgrade(target_plan="pro")

    async with session_factory() as first, session_factory() as second:
        results = await asyncio.gather(
            make_workflow(first).verify_payment(invoice.id, admin),
            make_workflow(second).verify_payment(invoice.id, admin),
        )
    await dispatcher.drain()

    assert all(r.success for r in results)
    assert sorted(r.already_paid for r in results) == [False, True]
    assert sum(r.upgrade_activated for r in results) == 1

    async with session_factory() as check:
        stored_sub = await SubscriptionStore(check).get(subscription.id)
        stored_invoice = await InvoiceStore(check).get(invoice.id)
    assert stored_invoice.status == InvoiceStatus.PAID.value
    assert stored_sub.plan_code == "pro"
    assert stored_sub.pending_upgrade is None
    # One activation write on top of the initial row.
    assert stored_sub.version == 2

    entries = await billing.audit_entries(invoice.id)
    assert len(entries) == 2


@pytest.mark.asyncio
async def test_verify_and_reject_race_has_one_winner(
    session_factory, billing, make_workflow, admin, dispatcher
):
    subscription, invoice = await billing.upgrade(target_plan="pro")

    async with session_factory() as first, session_factory() as second:
        verify_outcome, reject_outcome = await asyncio.gather(
            make_workflow(first).verify_payment(invoice.id, admin),
            make_workflow(second).reject_payment(invoice.id, admin, REJECTION_REASON),
            return_exceptions=True,
        )
    await dispatcher.drain()

    async with session_factory() as check:
        stored_sub = await SubscriptionStore(check).get(subscription.id)
        stored_invoice = await InvoiceStore(check).get(invoice.id)

    if stored_invoice.status == InvoiceStatus.PAID.value:
        assert verify_outcome.upgrade_activated is True
        assert isinstance(reject_outcome, InvalidStateError)
        assert stored_sub.plan_code == "pro"
    else:
        assert stored_invoice.status == InvoiceStatus.FAILED.value
        assert reject_outcome.upgrade_cancelled is True
        assert isinstance(verify_outcome, InvalidStateError)
        assert stored_sub.plan_code == "basic"
    assert stored_sub.pending_upgrade is None

    # Winner and refused loser are both on the trail.
    entries = await billing.audit_entries(invoice.id)
    assert sorted(e.outcome for e in entries) == ["failure", "success"]
