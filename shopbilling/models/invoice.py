from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid as PG_UUID,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from shopbilling.shared.db.base import Base


class InvoiceStatus(str, Enum):
    """Invoice lifecycle. PAID and FAILED are terminal."""

    DRAFT = "draft"
    PENDING_VERIFICATION = "pending_verification"
    PAID = "paid"
    FAILED = "failed"


TERMINAL_INVOICE_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.FAILED})


class InvoiceType(str, Enum):
    NEW = "new"
    RENEWAL = "renewal"
    UPGRADE = "upgrade"


class ManualPayment(BaseModel):
    """
    Proof submitted by the tenant plus the admin verification outcome.
    Stored as a JSON sub-record on the invoice.
    """

    model_config = ConfigDict(extra="allow")

    receipt_number: Optional[str] = None
    sender_phone_number: Optional[str] = None
    paid_amount: Optional[Decimal] = None
    submitted_at: Optional[datetime] = None
    pending_verification: bool = False
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    verification_notes: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_record(cls, raw: dict[str, Any] | None) -> "ManualPayment":
        return cls.model_validate(raw or {})

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class SubscriptionInvoice(Base):
    """
    Billable record for one subscription charge (new, renewal or upgrade).

    Financial record: never deleted. Only the verification workflow writes
    `status`, `paid_at` and `manual_payment` once the tenant has submitted proof.
    """

    __tablename__ = "subscription_invoices"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    invoice_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    shop_id: Mapped[UUID] = mapped_column(PG_UUID(), nullable=False, index=True)
    subscription_id: Mapped[Optional[UUID]] = mapped_column(
        PG_UUID(), ForeignKey("subscriptions.id"), nullable=True, index=True
    )

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=InvoiceStatus.DRAFT.value
    )

    description: Mapped[Optional[str]] = mapped_column(String(255))
    plan_code: Mapped[Optional[str]] = mapped_column(String(50))
    billing_cycle: Mapped[str] = mapped_column(String(20), default="monthly")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")

    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    payment_method: Mapped[Optional[str]] = mapped_column(String(20))
    # External proof of payment, e.g. the mobile-money receipt number.
    receipt_reference: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    manual_payment: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("total_amount > 0", name="positive_total_amount"),
        Index("ix_invoice_status_updated", "status", "updated_at"),
        Index("ix_invoice_status_paid_at", "status", "paid_at"),
        Index("ix_invoice_type_status", "type", "status"),
    )

    @property
    def manual_payment_record(self) -> ManualPayment:
        return ManualPayment.from_record(self.manual_payment)

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_INVOICE_STATUSES}
