from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence, cast
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from shopbilling.models.invoice import SubscriptionInvoice
from shopbilling.models.payment_attempt import PaymentAttempt, PaymentAttemptStatus

logger = structlog.get_logger()


class PaymentAttemptStore:
    """Channel-level payment attempts, correlated to invoices by invoice id."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def record(
        self,
        invoice: SubscriptionInvoice,
        *,
        amount: Decimal | None = None,
        method: str = "manual",
        receipt_reference: str | None = None,
    ) -> PaymentAttempt:
        attempt = PaymentAttempt(
            invoice_id=invoice.id,
            shop_id=invoice.shop_id,
            status=PaymentAttemptStatus.PENDING.value,
            method=method,
            amount=amount if amount is not None else invoice.total_amount,
            receipt_reference=receipt_reference or invoice.receipt_reference,
        )
        self.db.add(attempt)
        await self.db.flush()
        return attempt

    async def latest_pending(self, invoice_id: UUID) -> Optional[PaymentAttempt]:
        result = await self.db.execute(
            select(PaymentAttempt)
            .where(
                PaymentAttempt.invoice_id == invoice_id,
                PaymentAttempt.status == PaymentAttemptStatus.PENDING.value,
            )
            .order_by(PaymentAttempt.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_success(
        self, invoice_id: UUID, *, approved_by: str, now: datetime
    ) -> Optional[PaymentAttempt]:
        return await self._complete(
            invoice_id,
            PaymentAttemptStatus.SUCCESS,
            {"approved_by": approved_by, "approved_at": now, "completed_at": now},
        )

    async def mark_failed(
        self, invoice_id: UUID, *, approved_by: str, reason: str, now: datetime
    ) -> Optional[PaymentAttempt]:
        return await self._complete(
            invoice_id,
            PaymentAttemptStatus.FAILED,
            {
                "approved_by": approved_by,
                "approved_at": now,
                "completed_at": now,
                "error_message": reason,
            },
        )

    async def _complete(
        self,
        invoice_id: UUID,
        status: PaymentAttemptStatus,
        values: dict[str, Any],
    ) -> Optional[PaymentAttempt]:
        attempt = await self.latest_pending(invoice_id)
        if attempt is None:
            # Gateway-less manual payments may have no attempt row.
            logger.info("payment_attempt_not_found", invoice_id=str(invoice_id))
            return None

        result = cast(
            CursorResult[Any],
            await self.db.execute(
                update(PaymentAttempt)
                .where(
                    PaymentAttempt.id == attempt.id,
                    PaymentAttempt.status == PaymentAttemptStatus.PENDING.value,
                )
                .values(status=status.value, **values)
                .execution_options(synchronize_session=False)
            ),
        )
        await self.db.refresh(attempt)
        if int(result.rowcount or 0) != 1:
            logger.warning(
                "payment_attempt_already_completed",
                attempt_id=str(attempt.id),
                stored_status=attempt.status,
            )
            return None

        logger.info(
            "payment_attempt_completed",
            attempt_id=str(attempt.id),
            invoice_id=str(invoice_id),
            status=status.value,
        )
        return attempt

    async def list_for_invoice(self, invoice_id: UUID) -> Sequence[PaymentAttempt]:
        result = await self.db.execute(
            select(PaymentAttempt)
            .where(PaymentAttempt.invoice_id == invoice_id)
            .order_by(PaymentAttempt.created_at.asc())
        )
        return result.scalars().all()
