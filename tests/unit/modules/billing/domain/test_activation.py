"""
Tests for SubscriptionActivator: pending upgrades, paid new/renewal invoices
and the reconcile sweep.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from shopbilling.models.invoice import InvoiceStatus, InvoiceType
from shopbilling.models.subscription import SubscriptionStatus
from shopbilling.modules.billing.domain.activation import (
    MAX_CONFLICT_RETRIES,
    SubscriptionActivator,
)
from shopbilling.modules.billing.domain.transitions import as_utc
from shopbilling.shared.core.exceptions import ActivationError


class TestPendingUpgrade:
    @pytest.mark.asyncio
    async def test_activates_and_clears_marker(self, db_session, billing):
        subscription, invoice = await billing.upgrade(target_plan="pro")

        activated = await SubscriptionActivator(db_session).activate_pending_upgrade(
            subscription.shop_id, invoice.id
        )

        assert activated is not None
        assert activated.plan_code == "pro"
        assert activated.pending_upgrade is None
        assert activated.version == 2

    @pytest.mark.asyncio
    async def test_second_activation_is_a_noop(self, db_session, billing):
        subscription, invoice = await billing.upgrade()
        activator = SubscriptionActivator(db_session)

        await activator.activate_pending_upgrade(subscription.shop_id, invoice.id)
        again = await activator.activate_pending_upgrade(subscription.shop_id, invoice.id)

        assert again is None
        assert subscription.version == 2

    @pytest.mark.asyncio
    async def test_unknown_shop_returns_none(self, db_session):
        assert await SubscriptionActivator(db_session).activate_pending_upgrade(uuid4()) is None

    @pytest.mark.asyncio
    async def test_invoice_mismatch_still_activates(self, db_session, billing):
        subscription, _ = await billing.upgrade(target_plan="enterprise")

        activated = await SubscriptionActivator(db_session).activate_pending_upgrade(
            subscription.shop_id, uuid4()
        )

        assert activated is not None and activated.plan_code == "enterprise"

    @pytest.mark.asyncio
    async def test_persistent_conflicts_raise_activation_error(self, db_session, billing):
        subscription, invoice = await billing.upgrade()
        activator = SubscriptionActivator(db_session)

        with patch.object(
            activator.subscriptions, "apply", AsyncMock(return_value=False)
        ) as apply:
            with pytest.raises(ActivationError):
                await activator.activate_pending_upgrade(subscription.shop_id, invoice.id)

        assert apply.await_count == MAX_CONFLICT_RETRIES

    @pytest.mark.asyncio
    async def test_cancel_keeps_plan(self, db_session, billing):
        subscription, _ = await billing.upgrade()

        await SubscriptionActivator(db_session).cancel_pending_upgrade(subscription.shop_id)

        assert subscription.plan_code == "basic"
        assert subscription.pending_upgrade is None

    @pytest.mark.asyncio
    async def test_cancel_for_stale_invoice_logs_mismatch(self, db_session, billing):
        subscription, invoice = await billing.upgrade()
        stale_invoice_id = uuid4()

        with patch("shopbilling.modules.billing.domain.activation.logger") as logger:
            await SubscriptionActivator(db_session).cancel_pending_upgrade(
                subscription.shop_id, stale_invoice_id
            )

        assert subscription.pending_upgrade is None
        logger.warning.assert_called_once_with(
            "pending_upgrade_invoice_mismatch",
            shop_id=str(subscription.shop_id),
            invoice_id=str(stale_invoice_id),
            marker_invoice_id=str(invoice.id),
            action="cancel",
        )

    @pytest.mark.asyncio
    async def test_cancel_for_marker_invoice_logs_no_mismatch(self, db_session, billing):
        subscription, invoice = await billing.upgrade()

        with patch("shopbilling.modules.billing.domain.activation.logger") as logger:
            await SubscriptionActivator(db_session).cancel_pending_upgrade(
                subscription.shop_id, invoice.id
            )

        assert subscription.pending_upgrade is None
        logger.warning.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_without_marker_is_a_noop(self, db_session, billing):
        subscription = await billing.subscription()
        await SubscriptionActivator(db_session).cancel_pending_upgrade(subscription.shop_id)
        assert subscription.version == 1


class TestPaidInvoiceActivation:
    @pytest.mark.asyncio
    async def test_new_invoice_activates_trial(self, db_session, billing):
        subscription = await billing.subscription(status=SubscriptionStatus.TRIAL)
        invoice = await billing.invoice(
            subscription, type=InvoiceType.NEW, status=InvoiceStatus.PAID, plan_code="pro"
        )

        activated = await SubscriptionActivator(db_session).activate_from_paid_invoice(
            invoice.id, actor_id="admin-1"
        )

        assert activated.status == SubscriptionStatus.ACTIVE.value
        assert activated.plan_code == "pro"
        assert activated.last_paid_invoice_id == invoice.id
        assert activated.current_period_end is not None
        assert activated.next_billing_date == activated.current_period_end

    @pytest.mark.asyncio
    async def test_renewal_extends_current_period(self, db_session, billing):
        subscription = await billing.subscription()
        period_end = datetime.now(timezone.utc) + timedelta(days=10)
        subscription.current_period_end = period_end
        await db_session.commit()
        invoice = await billing.invoice(
            subscription, type=InvoiceType.RENEWAL, status=InvoiceStatus.PAID
        )

        activated = await SubscriptionActivator(db_session).activate_from_paid_invoice(
            invoice.id
        )

        assert abs(as_utc(activated.current_period_start) - period_end) < timedelta(seconds=1)
        assert as_utc(activated.current_period_end) > period_end + timedelta(days=27)

    @pytest.mark.asyncio
    async def test_same_invoice_applies_once(self, db_session, billing):
        subscription = await billing.subscription()
        invoice = await billing.invoice(
            subscription, type=InvoiceType.RENEWAL, status=InvoiceStatus.PAID
        )
        activator = SubscriptionActivator(db_session)

        first = await activator.activate_from_paid_invoice(invoice.id)
        period_end = first.current_period_end
        second = await activator.activate_from_paid_invoice(invoice.id)

        assert second.version == first.version == 2
        assert second.current_period_end == period_end

    @pytest.mark.asyncio
    async def test_unpaid_invoice_is_refused(self, db_session, billing):
        subscription = await billing.subscription()
        invoice = await billing.invoice(subscription, type=InvoiceType.NEW)

        with pytest.raises(ActivationError, match="not paid"):
            await SubscriptionActivator(db_session).activate_from_paid_invoice(invoice.id)

    @pytest.mark.asyncio
    async def test_upgrade_invoice_is_refused(self, db_session, billing):
        subscription = await billing.subscription()
        invoice = await billing.invoice(
            subscription, type=InvoiceType.UPGRADE, status=InvoiceStatus.PAID
        )

        with pytest.raises(ActivationError):
            await SubscriptionActivator(db_session).activate_from_paid_invoice(invoice.id)

    @pytest.mark.asyncio
    async def test_missing_invoice_is_refused(self, db_session):
        with pytest.raises(ActivationError) as exc_info:
            await SubscriptionActivator(db_session).activate_from_paid_invoice(uuid4())
        assert exc_info.value.code == "activation_failed"


class TestReconcile:
    @pytest.mark.asyncio
    async def test_activates_upgrades_with_paid_invoice(self, db_session, billing):
        stuck, stuck_invoice = await billing.upgrade(target_plan="pro")
        stuck_invoice.status = InvoiceStatus.PAID.value
        await db_session.commit()
        waiting, _ = await billing.upgrade(target_plan="pro")

        activated = await SubscriptionActivator(db_session).reconcile_paid_upgrades()

        assert [s.id for s in activated] == [stuck.id]
        assert stuck.plan_code == "pro"
        assert waiting.pending_upgrade is not None

    @pytest.mark.asyncio
    async def test_failure_on_one_does_not_stop_the_rest(self, db_session, billing):
        first, first_invoice = await billing.upgrade()
        second, second_invoice = await billing.upgrade()
        for invoice in (first_invoice, second_invoice):
            invoice.status = InvoiceStatus.PAID.value
        await db_session.commit()

        activator = SubscriptionActivator(db_session)
        real_activate = activator.activate_pending_upgrade
        calls = []

        async def flaky(shop_id, invoice_id=None, source="verified_payment"):
            calls.append(shop_id)
            if len(calls) == 1:
                raise ActivationError("conflict storm")
            return await real_activate(shop_id, invoice_id, source=source)

        with patch.object(activator, "activate_pending_upgrade", side_effect=flaky):
            activated = await activator.reconcile_paid_upgrades(limit=10)

        assert len(calls) == 2
        assert len(activated) == 1
