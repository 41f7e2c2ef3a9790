"""
Invoice persistence.

Status changes go through `apply()`, a single conditional UPDATE guarded by the
expected current status. Its rowcount decides which of several concurrent
writers wins. The store never commits; the calling workflow owns the
transaction.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence, cast
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from shopbilling.models.invoice import InvoiceStatus, InvoiceType, SubscriptionInvoice
from shopbilling.modules.billing.domain.transitions import (
    InvoiceTransition,
    submit_transition,
)
from shopbilling.shared.core.exceptions import ResourceNotFoundError, ValidationError

logger = structlog.get_logger()


def generate_invoice_number(now: datetime | None = None) -> str:
    year = (now or datetime.now(timezone.utc)).year
    return f"INV-{year}-{secrets.token_hex(4).upper()}"


class InvoiceStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, invoice_id: UUID) -> Optional[SubscriptionInvoice]:
        result = await self.db.execute(
            select(SubscriptionInvoice)
            .where(SubscriptionInvoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_raise(self, invoice_id: UUID) -> SubscriptionInvoice:
        invoice = await self.get(invoice_id)
        if invoice is None:
            raise ResourceNotFoundError(
                f"Invoice {invoice_id} not found",
                details={"invoice_id": str(invoice_id)},
            )
        return invoice

    async def create(
        self,
        *,
        shop_id: UUID,
        type: InvoiceType,
        total_amount: Decimal,
        subscription_id: UUID | None = None,
        plan_code: str | None = None,
        billing_cycle: str = "monthly",
        description: str | None = None,
        currency: str = "KES",
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> SubscriptionInvoice:
        if total_amount <= 0:
            raise ValidationError(
                "Invoice amount must be positive",
                details={"total_amount": str(total_amount)},
            )
        invoice = SubscriptionInvoice(
            invoice_number=generate_invoice_number(),
            shop_id=shop_id,
            subscription_id=subscription_id,
            type=type.value,
            status=InvoiceStatus.DRAFT.value,
            total_amount=total_amount,
            currency=currency,
            plan_code=plan_code,
            billing_cycle=billing_cycle,
            description=description,
            period_start=period_start,
            period_end=period_end,
        )
        self.db.add(invoice)
        await self.db.flush()
        logger.info(
            "invoice_created",
            invoice_id=str(invoice.id),
            invoice_number=invoice.invoice_number,
            shop_id=str(shop_id),
            type=type.value,
        )
        return invoice

    async def apply(
        self, invoice: SubscriptionInvoice, transition: InvoiceTransition
    ) -> bool:
        """
        Write `transition` if the stored status still matches its precondition.

        Returns False when another writer changed the status first. `invoice` is
        refreshed either way, so callers always see the stored state.
        """
        result = cast(
            CursorResult[Any],
            await self.db.execute(
                update(SubscriptionInvoice)
                .where(
                    SubscriptionInvoice.id == invoice.id,
                    SubscriptionInvoice.status == transition.expected_status.value,
                )
                .values(**transition.values)
                .execution_options(synchronize_session=False)
            ),
        )
        applied = int(result.rowcount or 0) == 1
        await self.db.refresh(invoice)

        logger.info(
            "invoice_transition_applied" if applied else "invoice_transition_skipped",
            invoice_id=str(invoice.id),
            expected_status=transition.expected_status.value,
            target_status=transition.target_status.value,
            stored_status=invoice.status,
        )
        return applied

    async def submit_manual_payment(
        self,
        invoice_id: UUID,
        *,
        receipt_number: str,
        sender_phone_number: str | None = None,
        paid_amount: Decimal | None = None,
    ) -> SubscriptionInvoice:
        """Tenant submits payment proof: draft -> pending_verification."""
        receipt_number = (receipt_number or "").strip()
        if not receipt_number:
            raise ValidationError("A receipt number is required")

        invoice = await self.get_or_raise(invoice_id)
        transition = submit_transition(
            invoice,
            receipt_number=receipt_number,
            sender_phone_number=sender_phone_number,
            paid_amount=paid_amount,
            now=datetime.now(timezone.utc),
        )
        if not await self.apply(invoice, transition):
            # Lost to a concurrent submission.
            raise ValidationError(
                "Payment proof was already submitted for this invoice",
                details={"current_status": invoice.status},
            )
        return invoice

    async def list_by_status(
        self,
        status: InvoiceStatus,
        *,
        limit: int = 50,
        skip: int = 0,
    ) -> Sequence[SubscriptionInvoice]:
        result = await self.db.execute(
            select(SubscriptionInvoice)
            .where(SubscriptionInvoice.status == status.value)
            .order_by(SubscriptionInvoice.updated_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return result.scalars().all()

    async def get_many(self, invoice_ids: Sequence[UUID]) -> dict[UUID, SubscriptionInvoice]:
        if not invoice_ids:
            return {}
        result = await self.db.execute(
            select(SubscriptionInvoice).where(SubscriptionInvoice.id.in_(invoice_ids))
        )
        return {invoice.id: invoice for invoice in result.scalars().all()}
