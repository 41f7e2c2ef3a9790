from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from shopbilling.shared.db.base import Base


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


@dataclass(frozen=True, slots=True)
class PendingUpgrade:
    """A plan change awaiting payment confirmation."""

    target_plan: str
    requested_at: datetime
    invoice_id: Optional[UUID] = None

    def snapshot(self) -> dict[str, str | None]:
        return {
            "target_plan": self.target_plan,
            "invoice_id": str(self.invoice_id) if self.invoice_id else None,
            "requested_at": self.requested_at.isoformat(),
        }


class Subscription(Base):
    """
    Per-shop subscription. Exactly one row per shop.

    `plan_code`, `status` and the pending-upgrade columns are written only by
    the activator; every write bumps `version`.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    shop_id: Mapped[UUID] = mapped_column(PG_UUID(), nullable=False, unique=True)

    plan_code: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.TRIAL.value
    )
    billing_cycle: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BillingCycle.MONTHLY.value
    )

    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )

    # Pending upgrade marker, all three set or none.
    pending_upgrade_plan: Mapped[Optional[str]] = mapped_column(String(50))
    pending_upgrade_invoice_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID())
    pending_upgrade_requested_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )

    last_payment_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    last_payment_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    last_payment_method: Mapped[Optional[str]] = mapped_column(String(20))
    last_payment_reference: Mapped[Optional[str]] = mapped_column(String(64))
    last_paid_invoice_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID())
    failed_payment_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

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
        CheckConstraint(
            "(pending_upgrade_plan IS NULL AND pending_upgrade_invoice_id IS NULL "
            "AND pending_upgrade_requested_at IS NULL) OR "
            "(pending_upgrade_plan IS NOT NULL "
            "AND pending_upgrade_requested_at IS NOT NULL)",
            name="pending_upgrade_complete",
        ),
        Index("ix_subscription_pending_upgrade", "pending_upgrade_plan"),
    )

    @property
    def pending_upgrade(self) -> Optional[PendingUpgrade]:
        if self.pending_upgrade_plan is None:
            return None
        return PendingUpgrade(
            target_plan=self.pending_upgrade_plan,
            invoice_id=self.pending_upgrade_invoice_id,
            requested_at=self.pending_upgrade_requested_at
            or datetime.now(timezone.utc),
        )

    def request_upgrade(
        self, target_plan: str, invoice_id: Optional[UUID] = None
    ) -> None:
        """Set the marker. Used by the tenant-facing upgrade flow."""
        self.pending_upgrade_plan = target_plan
        self.pending_upgrade_invoice_id = invoice_id
        self.pending_upgrade_requested_at = datetime.now(timezone.utc)
