from decimal import Decimal

import pytest

from shopbilling.models.invoice import InvoiceStatus, InvoiceType
from shopbilling.modules.billing.domain.reporting import (
    UNKNOWN_SHOP,
    PaymentReportingService,
)

REJECTION_REASON = "Receipt number does not match any M-Pesa statement line"


@pytest.mark.asyncio
async def test_payment_stats(db_session, billing, directory):
    await billing.upgrade()
    subscription = await billing.subscription()
    await billing.invoice(
        subscription,
        type=InvoiceType.RENEWAL,
        status=InvoiceStatus.PAID,
        amount=Decimal("1500.00"),
    )

    stats = await PaymentReportingService(db_session, directory).payment_stats()

    assert stats.pending_verifications == 1
    assert stats.pending_upgrades == 1
    assert stats.today_payments == 1
    assert stats.today_amount == Decimal("1500.00")
    assert stats.week_payments == 1
    assert stats.week_amount == Decimal("1500.00")


@pytest.mark.asyncio
async def test_pending_verifications_are_enriched(db_session, billing, directory):
    subscription, invoice = await billing.upgrade(target_plan="pro")

    page = await PaymentReportingService(db_session, directory).pending_verifications()

    assert page.total == 1
    item = page.items[0]
    assert item.id == invoice.id
    assert item.shop_name == "Duka la Mama"
    assert item.shop_email == directory.shops[subscription.shop_id].email
    assert item.current_plan == "basic"
    assert item.pending_upgrade is not None
    assert item.pending_upgrade.target_plan == "pro"
    assert item.manual_payment["receipt_number"] == "QHX81KD0PL"


@pytest.mark.asyncio
async def test_unknown_shop_falls_back(db_session, billing):
    await billing.upgrade()

    page = await PaymentReportingService(db_session).pending_verifications()

    assert page.items[0].shop_name == UNKNOWN_SHOP
    assert page.items[0].shop_email is None


@pytest.mark.asyncio
async def test_pending_upgrades_include_invoice_summary(db_session, billing, directory):
    subscription, invoice = await billing.upgrade(target_plan="enterprise")

    page = await PaymentReportingService(db_session, directory).pending_upgrades()

    assert page.total == 1
    listing = page.items[0]
    assert listing.subscription_id == subscription.id
    assert listing.current_plan == "basic"
    assert listing.pending_upgrade.target_plan == "enterprise"
    assert listing.invoice is not None
    assert listing.invoice.invoice_number == invoice.invoice_number
    assert listing.invoice.status == InvoiceStatus.PENDING_VERIFICATION.value


@pytest.mark.asyncio
async def test_payment_history_filters(db_session, billing, directory):
    subscription = await billing.subscription()
    paid = await billing.invoice(
        subscription, type=InvoiceType.RENEWAL, status=InvoiceStatus.PAID
    )
    await billing.invoice(subscription, type=InvoiceType.RENEWAL)
    reporting = PaymentReportingService(db_session, directory)

    everything = await reporting.payment_history()
    only_paid = await reporting.payment_history(status="paid")
    other_shop = await reporting.payment_history(shop_id=paid.id)

    assert everything.total == 2
    assert [i.id for i in only_paid.items] == [paid.id]
    assert only_paid.items[0].shop_name == "Duka la Mama"
    assert other_shop.total == 0


@pytest.mark.asyncio
async def test_attempts_and_statistics(
    db_session, billing, directory, make_workflow, admin, dispatcher
):
    _, verified = await billing.upgrade()
    _, rejected = await billing.upgrade()
    workflow = make_workflow(db_session)
    await workflow.verify_payment(verified.id, admin)
    await workflow.reject_payment(rejected.id, admin, REJECTION_REASON)
    await dispatcher.drain()
    reporting = PaymentReportingService(db_session, directory)

    attempts = await reporting.payment_attempts()
    successes = await reporting.payment_attempts(status="success")
    stats = await reporting.attempt_statistics()

    assert attempts.total == 2
    assert [a.invoice_id for a in successes.items] == [verified.id]
    assert successes.items[0].approved_by == admin.id
    assert stats.total == 2
    assert stats.by_status == {"success": 1, "failed": 1}
    assert stats.by_method == {"manual": 2}
    assert stats.success_rate == 50.0
    assert stats.total_successful_amount == Decimal("2500.00")


@pytest.mark.asyncio
async def test_statistics_without_attempts(db_session):
    stats = await PaymentReportingService(db_session).attempt_statistics()
    assert stats.total == 0
    assert stats.success_rate == 0.0
