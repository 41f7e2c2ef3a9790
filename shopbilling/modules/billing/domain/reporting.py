"""
Read-only payment reporting for the admin dashboard.

Aggregations over invoices, attempts and subscriptions, enriched with shop
contact details. Nothing here writes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Generic, Optional, Sequence, TypeVar
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from shopbilling.models.invoice import InvoiceStatus, SubscriptionInvoice
from shopbilling.models.payment_attempt import PaymentAttempt, PaymentAttemptStatus
from shopbilling.models.subscription import Subscription
from shopbilling.modules.billing.domain.directory import (
    NullShopDirectory,
    ShopContact,
    ShopDirectory,
)
from shopbilling.shared.core.async_utils import maybe_call

logger = structlog.get_logger()

UNKNOWN_SHOP = "Unknown Shop"

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: list[T]
    total: int


class PaymentStats(BaseModel):
    pending_verifications: int
    pending_upgrades: int
    today_payments: int
    today_amount: Decimal
    week_payments: int
    week_amount: Decimal


class PendingUpgradeView(BaseModel):
    target_plan: str
    invoice_id: Optional[UUID] = None
    requested_at: datetime


class InvoiceView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_number: str
    shop_id: UUID
    subscription_id: Optional[UUID] = None
    type: str
    status: str
    total_amount: Decimal
    currency: str
    plan_code: Optional[str] = None
    payment_method: Optional[str] = None
    receipt_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    manual_payment: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    shop_name: str = UNKNOWN_SHOP
    shop_email: Optional[str] = None


class PendingVerificationView(InvoiceView):
    current_plan: Optional[str] = None
    pending_upgrade: Optional[PendingUpgradeView] = None


class UpgradeInvoiceSummary(BaseModel):
    id: UUID
    invoice_number: str
    status: str
    amount: Decimal
    receipt_reference: Optional[str] = None
    manual_payment: Optional[dict[str, Any]] = None


class PendingUpgradeListing(BaseModel):
    subscription_id: UUID
    shop_id: UUID
    shop_name: str = UNKNOWN_SHOP
    shop_email: Optional[str] = None
    current_plan: str
    pending_upgrade: PendingUpgradeView
    invoice: Optional[UpgradeInvoiceSummary] = None


class PaymentAttemptView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    shop_id: UUID
    status: str
    method: str
    amount: Decimal
    receipt_reference: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime
    shop_name: str = UNKNOWN_SHOP


class AttemptStatistics(BaseModel):
    total: int
    by_status: dict[str, int] = Field(default_factory=dict)
    by_method: dict[str, int] = Field(default_factory=dict)
    success_rate: float = 0.0
    total_successful_amount: Decimal = Decimal("0")


def _pending_upgrade_view(subscription: Subscription | None) -> Optional[PendingUpgradeView]:
    if subscription is None or subscription.pending_upgrade is None:
        return None
    pending = subscription.pending_upgrade
    return PendingUpgradeView(
        target_plan=pending.target_plan,
        invoice_id=pending.invoice_id,
        requested_at=pending.requested_at,
    )


class PaymentReportingService:
    def __init__(
        self, db: AsyncSession, shop_directory: ShopDirectory | None = None
    ) -> None:
        self.db = db
        self.shop_directory = shop_directory or NullShopDirectory()
        self._shop_cache: dict[UUID, Optional[ShopContact]] = {}

    async def _shop(self, shop_id: UUID) -> Optional[ShopContact]:
        if shop_id not in self._shop_cache:
            self._shop_cache[shop_id] = await maybe_call(
                self.shop_directory.get_shop, shop_id
            )
        return self._shop_cache[shop_id]

    async def _count(self, model: Any, *conditions: ColumnElement[bool]) -> int:
        stmt = select(func.count()).select_from(model)
        if conditions:
            stmt = stmt.where(*conditions)
        return int((await self.db.execute(stmt)).scalar_one() or 0)

    async def _paid_since(self, since: datetime) -> tuple[int, Decimal]:
        row = (
            await self.db.execute(
                select(
                    func.count(SubscriptionInvoice.id),
                    func.coalesce(func.sum(SubscriptionInvoice.total_amount), 0),
                ).where(
                    SubscriptionInvoice.status == InvoiceStatus.PAID.value,
                    SubscriptionInvoice.paid_at >= since,
                )
            )
        ).one()
        return int(row[0] or 0), Decimal(str(row[1] or 0))

    async def payment_stats(self, now: datetime | None = None) -> PaymentStats:
        now = now or datetime.now(timezone.utc)
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = now - timedelta(days=7)

        pending_verifications = await self._count(
            SubscriptionInvoice,
            SubscriptionInvoice.status == InvoiceStatus.PENDING_VERIFICATION.value,
        )
        pending_upgrades = await self._count(
            Subscription, Subscription.pending_upgrade_plan.is_not(None)
        )
        today_count, today_amount = await self._paid_since(today_start)
        week_count, week_amount = await self._paid_since(week_start)

        return PaymentStats(
            pending_verifications=pending_verifications,
            pending_upgrades=pending_upgrades,
            today_payments=today_count,
            today_amount=today_amount,
            week_payments=week_count,
            week_amount=week_amount,
        )

    async def pending_verifications(
        self, limit: int = 50, skip: int = 0
    ) -> Page[PendingVerificationView]:
        condition = SubscriptionInvoice.status == InvoiceStatus.PENDING_VERIFICATION.value
        invoices = (
            await self.db.execute(
                select(SubscriptionInvoice)
                .where(condition)
                .order_by(SubscriptionInvoice.updated_at.desc())
                .offset(skip)
                .limit(limit)
            )
        ).scalars().all()
        total = await self._count(SubscriptionInvoice, condition)

        subscription_ids = [i.subscription_id for i in invoices if i.subscription_id]
        subscriptions: dict[UUID, Subscription] = {}
        if subscription_ids:
            rows = await self.db.execute(
                select(Subscription).where(Subscription.id.in_(subscription_ids))
            )
            subscriptions = {s.id: s for s in rows.scalars().all()}

        items = []
        for invoice in invoices:
            shop = await self._shop(invoice.shop_id)
            subscription = (
                subscriptions.get(invoice.subscription_id)
                if invoice.subscription_id
                else None
            )
            view = PendingVerificationView.model_validate(invoice)
            view.shop_name = shop.name if shop else UNKNOWN_SHOP
            view.shop_email = shop.email if shop else None
            view.current_plan = subscription.plan_code if subscription else None
            view.pending_upgrade = _pending_upgrade_view(subscription)
            items.append(view)
        return Page[PendingVerificationView](items=items, total=total)

    async def pending_upgrades(
        self, limit: int = 50, skip: int = 0
    ) -> Page[PendingUpgradeListing]:
        condition = Subscription.pending_upgrade_plan.is_not(None)
        subscriptions = (
            await self.db.execute(
                select(Subscription)
                .where(condition)
                .order_by(Subscription.pending_upgrade_requested_at.desc())
                .offset(skip)
                .limit(limit)
            )
        ).scalars().all()
        total = await self._count(Subscription, condition)

        invoice_ids = [
            s.pending_upgrade_invoice_id
            for s in subscriptions
            if s.pending_upgrade_invoice_id is not None
        ]
        invoices: dict[UUID, SubscriptionInvoice] = {}
        if invoice_ids:
            rows = await self.db.execute(
                select(SubscriptionInvoice).where(SubscriptionInvoice.id.in_(invoice_ids))
            )
            invoices = {i.id: i for i in rows.scalars().all()}

        items = []
        for subscription in subscriptions:
            pending = _pending_upgrade_view(subscription)
            if pending is None:
                continue
            shop = await self._shop(subscription.shop_id)
            invoice = (
                invoices.get(subscription.pending_upgrade_invoice_id)
                if subscription.pending_upgrade_invoice_id
                else None
            )
            items.append(
                PendingUpgradeListing(
                    subscription_id=subscription.id,
                    shop_id=subscription.shop_id,
                    shop_name=shop.name if shop else UNKNOWN_SHOP,
                    shop_email=shop.email if shop else None,
                    current_plan=subscription.plan_code,
                    pending_upgrade=pending,
                    invoice=UpgradeInvoiceSummary(
                        id=invoice.id,
                        invoice_number=invoice.invoice_number,
                        status=invoice.status,
                        amount=invoice.total_amount,
                        receipt_reference=invoice.receipt_reference,
                        manual_payment=invoice.manual_payment,
                    )
                    if invoice
                    else None,
                )
            )
        return Page[PendingUpgradeListing](items=items, total=total)

    async def payment_history(
        self,
        *,
        status: str | None = None,
        method: str | None = None,
        shop_id: UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        skip: int = 0,
    ) -> Page[InvoiceView]:
        conditions: list[ColumnElement[bool]] = []
        if status:
            conditions.append(SubscriptionInvoice.status == status)
        if method:
            conditions.append(SubscriptionInvoice.payment_method == method)
        if shop_id:
            conditions.append(SubscriptionInvoice.shop_id == shop_id)
        if start:
            conditions.append(SubscriptionInvoice.created_at >= start)
        if end:
            conditions.append(SubscriptionInvoice.created_at <= end)

        invoices = (
            await self.db.execute(
                select(SubscriptionInvoice)
                .where(*conditions)
                .order_by(SubscriptionInvoice.created_at.desc())
                .offset(skip)
                .limit(limit)
            )
        ).scalars().all()
        total = await self._count(SubscriptionInvoice, *conditions)
        return Page[InvoiceView](items=await self._invoice_views(invoices), total=total)

    async def _invoice_views(
        self, invoices: Sequence[SubscriptionInvoice]
    ) -> list[InvoiceView]:
        views = []
        for invoice in invoices:
            shop = await self._shop(invoice.shop_id)
            view = InvoiceView.model_validate(invoice)
            view.shop_name = shop.name if shop else UNKNOWN_SHOP
            view.shop_email = shop.email if shop else None
            views.append(view)
        return views

    async def payment_attempts(
        self,
        *,
        status: str | None = None,
        method: str | None = None,
        limit: int = 100,
        skip: int = 0,
    ) -> Page[PaymentAttemptView]:
        conditions: list[ColumnElement[bool]] = []
        if status:
            conditions.append(PaymentAttempt.status == status)
        if method:
            conditions.append(PaymentAttempt.method == method)

        attempts = (
            await self.db.execute(
                select(PaymentAttempt)
                .where(*conditions)
                .order_by(PaymentAttempt.created_at.desc())
                .offset(skip)
                .limit(limit)
            )
        ).scalars().all()
        total = await self._count(PaymentAttempt, *conditions)

        items = []
        for attempt in attempts:
            shop = await self._shop(attempt.shop_id)
            view = PaymentAttemptView.model_validate(attempt)
            view.shop_name = shop.name if shop else UNKNOWN_SHOP
            items.append(view)
        return Page[PaymentAttemptView](items=items, total=total)

    async def attempt_statistics(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> AttemptStatistics:
        conditions: list[ColumnElement[bool]] = []
        if start:
            conditions.append(PaymentAttempt.created_at >= start)
        if end:
            conditions.append(PaymentAttempt.created_at <= end)

        by_status_rows = await self.db.execute(
            select(PaymentAttempt.status, func.count(PaymentAttempt.id))
            .where(*conditions)
            .group_by(PaymentAttempt.status)
        )
        by_status = {str(row[0]): int(row[1]) for row in by_status_rows.all()}

        by_method_rows = await self.db.execute(
            select(PaymentAttempt.method, func.count(PaymentAttempt.id))
            .where(*conditions)
            .group_by(PaymentAttempt.method)
        )
        by_method = {str(row[0]): int(row[1]) for row in by_method_rows.all()}

        successful_amount = (
            await self.db.execute(
                select(func.coalesce(func.sum(PaymentAttempt.amount), 0)).where(
                    PaymentAttempt.status == PaymentAttemptStatus.SUCCESS.value,
                    *conditions,
                )
            )
        ).scalar_one()

        total = sum(by_status.values())
        successes = by_status.get(PaymentAttemptStatus.SUCCESS.value, 0)
        return AttemptStatistics(
            total=total,
            by_status=by_status,
            by_method=by_method,
            success_rate=round(successes / total * 100, 2) if total else 0.0,
            total_successful_amount=Decimal(str(successful_amount or 0)),
        )
