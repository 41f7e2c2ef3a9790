from __future__ import annotations

from typing import Any, Optional, Sequence, cast
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from shopbilling.models.invoice import InvoiceStatus, SubscriptionInvoice
from shopbilling.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from shopbilling.modules.billing.domain.transitions import SubscriptionTransition
from shopbilling.shared.core.exceptions import ResourceNotFoundError

logger = structlog.get_logger()


class SubscriptionStore:
    """
    Subscription persistence with optimistic concurrency.

    Every write goes through `apply()`, which only succeeds while the stored
    `version` matches the one the transition was computed from.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, subscription_id: UUID) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_raise(self, subscription_id: UUID) -> Subscription:
        subscription = await self.get(subscription_id)
        if subscription is None:
            raise ResourceNotFoundError(
                f"Subscription {subscription_id} not found",
                details={"subscription_id": str(subscription_id)},
            )
        return subscription

    async def get_by_shop(self, shop_id: UUID) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.shop_id == shop_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        shop_id: UUID,
        plan_code: str,
        status: SubscriptionStatus = SubscriptionStatus.TRIAL,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
    ) -> Subscription:
        subscription = Subscription(
            shop_id=shop_id,
            plan_code=plan_code,
            status=status.value,
            billing_cycle=billing_cycle.value,
        )
        self.db.add(subscription)
        await self.db.flush()
        return subscription

    async def apply(
        self, subscription: Subscription, transition: SubscriptionTransition
    ) -> bool:
        conditions = [
            Subscription.id == subscription.id,
            Subscription.version == transition.expected_version,
        ]
        if transition.require_pending_upgrade:
            conditions.append(Subscription.pending_upgrade_plan.is_not(None))

        result = cast(
            CursorResult[Any],
            await self.db.execute(
                update(Subscription)
                .where(*conditions)
                .values(**transition.values)
                .execution_options(synchronize_session=False)
            ),
        )
        applied = int(result.rowcount or 0) == 1
        await self.db.refresh(subscription)
        if not applied:
            logger.info(
                "subscription_write_conflict",
                subscription_id=str(subscription.id),
                expected_version=transition.expected_version,
                stored_version=subscription.version,
            )
        return applied

    async def list_with_pending_upgrade(
        self, *, limit: int = 50, skip: int = 0
    ) -> Sequence[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.pending_upgrade_plan.is_not(None))
            .order_by(Subscription.pending_upgrade_requested_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return result.scalars().all()

    async def list_paid_pending_upgrades(self, *, limit: int) -> Sequence[Subscription]:
        """Subscriptions still holding a marker whose invoice is already paid."""
        result = await self.db.execute(
            select(Subscription)
            .join(
                SubscriptionInvoice,
                SubscriptionInvoice.id == Subscription.pending_upgrade_invoice_id,
            )
            .where(
                Subscription.pending_upgrade_plan.is_not(None),
                SubscriptionInvoice.status == InvoiceStatus.PAID.value,
            )
            .order_by(Subscription.pending_upgrade_requested_at.asc())
            .limit(limit)
        )
        return result.scalars().all()
