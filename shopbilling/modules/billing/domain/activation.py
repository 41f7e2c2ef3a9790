"""
Subscription activation.

Turns a pending upgrade, or a paid new/renewal invoice, into a live
subscription change. Writes are optimistic: a version conflict re-reads the
subscription and re-evaluates, so concurrent activations apply at most once.
The activator never commits except in `reconcile_paid_upgrades`, which is a
top-level batch job.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shopbilling.models.invoice import InvoiceStatus, InvoiceType
from shopbilling.models.subscription import Subscription
from shopbilling.modules.billing.domain.invoice_store import InvoiceStore
from shopbilling.modules.billing.domain.subscription_store import SubscriptionStore
from shopbilling.modules.billing.domain.transitions import (
    paid_invoice_activation,
    upgrade_activation,
    upgrade_cancellation,
)
from shopbilling.shared.core.config import get_settings
from shopbilling.shared.core.exceptions import ActivationError
from shopbilling.shared.core.ops_metrics import (
    SUBSCRIPTION_ACTIVATION_FAILURES,
    UPGRADE_ACTIVATIONS_TOTAL,
)

logger = structlog.get_logger()

MAX_CONFLICT_RETRIES = 3


class SubscriptionActivator:
    def __init__(
        self,
        db: AsyncSession,
        subscriptions: SubscriptionStore | None = None,
        invoices: InvoiceStore | None = None,
    ) -> None:
        self.db = db
        self.subscriptions = subscriptions or SubscriptionStore(db)
        self.invoices = invoices or InvoiceStore(db)

    async def activate_pending_upgrade(
        self,
        shop_id: UUID,
        invoice_id: UUID | None = None,
        source: str = "verified_payment",
    ) -> Optional[Subscription]:
        """
        Apply the shop's pending upgrade and clear the marker.

        Returns None when there is nothing to activate, which makes a second
        call a no-op. `invoice_id` is only used for log correlation.
        """
        for _ in range(MAX_CONFLICT_RETRIES):
            subscription = await self.subscriptions.get_by_shop(shop_id)
            if subscription is None or subscription.pending_upgrade is None:
                logger.info(
                    "pending_upgrade_absent",
                    shop_id=str(shop_id),
                    invoice_id=str(invoice_id) if invoice_id else None,
                )
                return None

            pending = subscription.pending_upgrade
            if invoice_id and pending.invoice_id and pending.invoice_id != invoice_id:
                logger.warning(
                    "pending_upgrade_invoice_mismatch",
                    shop_id=str(shop_id),
                    invoice_id=str(invoice_id),
                    marker_invoice_id=str(pending.invoice_id),
                )

            previous_plan = subscription.plan_code
            transition = upgrade_activation(subscription, datetime.now(timezone.utc))
            if await self.subscriptions.apply(subscription, transition):
                UPGRADE_ACTIVATIONS_TOTAL.labels(source=source).inc()
                logger.info(
                    "pending_upgrade_activated",
                    shop_id=str(shop_id),
                    subscription_id=str(subscription.id),
                    previous_plan=previous_plan,
                    plan_code=subscription.plan_code,
                    invoice_id=str(invoice_id) if invoice_id else None,
                    source=source,
                )
                return subscription

        raise ActivationError(
            "Subscription kept changing while activating the pending upgrade",
            details={"shop_id": str(shop_id)},
        )

    async def cancel_pending_upgrade(
        self, shop_id: UUID, invoice_id: Optional[UUID] = None
    ) -> None:
        """Clear the marker without touching the plan. `invoice_id` is only used for logs."""
        for _ in range(MAX_CONFLICT_RETRIES):
            subscription = await self.subscriptions.get_by_shop(shop_id)
            if subscription is None or subscription.pending_upgrade is None:
                return

            pending = subscription.pending_upgrade
            if invoice_id and pending.invoice_id and pending.invoice_id != invoice_id:
                logger.warning(
                    "pending_upgrade_invoice_mismatch",
                    shop_id=str(shop_id),
                    invoice_id=str(invoice_id),
                    marker_invoice_id=str(pending.invoice_id),
                    action="cancel",
                )

            target_plan = subscription.pending_upgrade_plan
            transition = upgrade_cancellation(subscription, datetime.now(timezone.utc))
            if await self.subscriptions.apply(subscription, transition):
                logger.info(
                    "pending_upgrade_cancelled",
                    shop_id=str(shop_id),
                    subscription_id=str(subscription.id),
                    plan_code=subscription.plan_code,
                    cancelled_plan=target_plan,
                )
                return

        raise ActivationError(
            "Subscription kept changing while cancelling the pending upgrade",
            details={"shop_id": str(shop_id)},
        )

    async def activate_from_paid_invoice(
        self, invoice_id: UUID, actor_id: str | None = None
    ) -> Subscription:
        """
        Activate or extend the subscription a paid new/renewal invoice pays for.

        Raises ActivationError for anything that prevents activation; the
        invoice stays paid and the call can be retried.
        """
        invoice = await self.invoices.get(invoice_id)
        if invoice is None:
            raise self._failure("Invoice not found", invoice_id, "unknown")
        if invoice.type == InvoiceType.UPGRADE.value:
            raise self._failure(
                "Upgrade invoices activate through the pending upgrade",
                invoice_id,
                invoice.type,
            )
        if invoice.status != InvoiceStatus.PAID.value:
            raise self._failure(
                f"Invoice is {invoice.status}, not paid", invoice_id, invoice.type
            )

        for _ in range(MAX_CONFLICT_RETRIES):
            subscription = None
            if invoice.subscription_id is not None:
                subscription = await self.subscriptions.get(invoice.subscription_id)
            if subscription is None:
                subscription = await self.subscriptions.get_by_shop(invoice.shop_id)
            if subscription is None:
                raise self._failure(
                    "No subscription found for invoice", invoice_id, invoice.type
                )

            if subscription.last_paid_invoice_id == invoice.id:
                logger.info(
                    "subscription_already_activated_for_invoice",
                    subscription_id=str(subscription.id),
                    invoice_id=str(invoice_id),
                )
                return subscription

            transition = paid_invoice_activation(
                subscription, invoice, datetime.now(timezone.utc)
            )
            if await self.subscriptions.apply(subscription, transition):
                logger.info(
                    "subscription_activated_from_invoice",
                    subscription_id=str(subscription.id),
                    invoice_id=str(invoice_id),
                    invoice_type=invoice.type,
                    plan_code=subscription.plan_code,
                    period_end=subscription.current_period_end.isoformat()
                    if subscription.current_period_end
                    else None,
                    actor_id=actor_id,
                )
                return subscription

        raise self._failure(
            "Subscription kept changing while applying the invoice",
            invoice_id,
            invoice.type,
        )

    async def reconcile_paid_upgrades(self, limit: int | None = None) -> list[Subscription]:
        """
        Activate upgrades whose invoice is already paid but whose marker is
        still set, e.g. after a crash between the two writes.

        Commits after each subscription so one failure does not hold back the rest.
        """
        batch_size = limit or get_settings().RECONCILE_BATCH_SIZE
        candidates = await self.subscriptions.list_paid_pending_upgrades(limit=batch_size)
        # Snapshot before any commit expires state.
        targets = [
            (sub.shop_id, sub.pending_upgrade_invoice_id) for sub in candidates
        ]

        activated: list[Subscription] = []
        for shop_id, marker_invoice_id in targets:
            try:
                subscription = await self.activate_pending_upgrade(
                    shop_id, marker_invoice_id, source="reconcile"
                )
                await self.db.commit()
            except ActivationError as exc:
                await self.db.rollback()
                logger.warning(
                    "reconcile_upgrade_failed",
                    shop_id=str(shop_id),
                    invoice_id=str(marker_invoice_id),
                    error=exc.message,
                )
                continue
            if subscription is not None:
                activated.append(subscription)

        logger.info(
            "reconcile_paid_upgrades_completed",
            candidates=len(targets),
            activated=len(activated),
        )
        return activated

    @staticmethod
    def _failure(message: str, invoice_id: UUID, invoice_type: str) -> ActivationError:
        SUBSCRIPTION_ACTIVATION_FAILURES.labels(invoice_type=invoice_type).inc()
        logger.warning(
            "subscription_activation_failed",
            invoice_id=str(invoice_id),
            invoice_type=invoice_type,
            reason=message,
        )
        return ActivationError(
            message, details={"invoice_id": str(invoice_id), "invoice_type": invoice_type}
        )
