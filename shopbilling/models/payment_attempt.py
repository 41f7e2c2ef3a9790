from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, Text, Uuid as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from shopbilling.shared.db.base import Base


class PaymentAttemptStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class PaymentAttempt(Base):
    """
    One submission through a payment channel, correlated to an invoice.

    Its status is independent of the invoice's own status; several attempts may
    exist per invoice.
    """

    __tablename__ = "payment_attempts"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    invoice_id: Mapped[UUID] = mapped_column(
        PG_UUID(), ForeignKey("subscription_invoices.id"), nullable=False, index=True
    )
    shop_id: Mapped[UUID] = mapped_column(PG_UUID(), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentAttemptStatus.PENDING.value
    )
    method: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    receipt_reference: Mapped[Optional[str]] = mapped_column(String(64))

    approved_by: Mapped[Optional[str]] = mapped_column(String(64))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_payment_attempt_invoice_status", "invoice_id", "status"),
        Index("ix_payment_attempt_status_created", "status", "created_at"),
    )
