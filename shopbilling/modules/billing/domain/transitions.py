"""
Pure state transitions for invoices and subscriptions.

Each function takes the current record and returns the column values of the
next state together with the precondition the store must enforce when it
writes them. Nothing here touches the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from dateutil.relativedelta import relativedelta  # type: ignore

from shopbilling.models.invoice import (
    InvoiceStatus,
    InvoiceType,
    ManualPayment,
    SubscriptionInvoice,
)
from shopbilling.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from shopbilling.shared.core.exceptions import InvalidStateError


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Precheck(str, Enum):
    PROCEED = "proceed"
    ALREADY_DONE = "already_done"


@dataclass(frozen=True, slots=True)
class InvoiceTransition:
    """Next invoice state, valid only while the stored status is `expected_status`."""

    expected_status: InvoiceStatus
    target_status: InvoiceStatus
    values: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SubscriptionTransition:
    """Next subscription state, valid only while the stored version is `expected_version`."""

    expected_version: int
    values: dict[str, Any] = field(default_factory=dict)
    require_pending_upgrade: bool = False


def check_verifiable(invoice: SubscriptionInvoice) -> Precheck:
    if invoice.status == InvoiceStatus.PAID.value:
        return Precheck.ALREADY_DONE
    if invoice.status != InvoiceStatus.PENDING_VERIFICATION.value:
        raise InvalidStateError(
            f"Invoice {invoice.invoice_number} cannot be verified while {invoice.status}",
            current_status=invoice.status,
        )
    return Precheck.PROCEED


def check_rejectable(invoice: SubscriptionInvoice) -> Precheck:
    if invoice.status == InvoiceStatus.FAILED.value:
        return Precheck.ALREADY_DONE
    if invoice.status == InvoiceStatus.PAID.value:
        raise InvalidStateError(
            f"Invoice {invoice.invoice_number} is already paid and cannot be rejected",
            current_status=invoice.status,
        )
    if invoice.status != InvoiceStatus.PENDING_VERIFICATION.value:
        raise InvalidStateError(
            f"Invoice {invoice.invoice_number} cannot be rejected while {invoice.status}",
            current_status=invoice.status,
        )
    return Precheck.PROCEED


def submit_transition(
    invoice: SubscriptionInvoice,
    *,
    receipt_number: str,
    sender_phone_number: Optional[str],
    paid_amount: Optional[Decimal],
    now: datetime,
) -> InvoiceTransition:
    if invoice.status != InvoiceStatus.DRAFT.value:
        raise InvalidStateError(
            f"Payment proof can only be submitted for a draft invoice, not {invoice.status}",
            current_status=invoice.status,
        )
    manual = invoice.manual_payment_record.model_copy(
        update={
            "receipt_number": receipt_number,
            "sender_phone_number": sender_phone_number,
            "paid_amount": paid_amount,
            "submitted_at": now,
            "pending_verification": True,
        }
    )
    return InvoiceTransition(
        expected_status=InvoiceStatus.DRAFT,
        target_status=InvoiceStatus.PENDING_VERIFICATION,
        values={
            "status": InvoiceStatus.PENDING_VERIFICATION.value,
            "payment_method": "manual",
            "receipt_reference": receipt_number,
            "manual_payment": manual.to_record(),
            "updated_at": now,
        },
    )


def verify_transition(
    invoice: SubscriptionInvoice,
    *,
    actor_id: str,
    notes: Optional[str],
    now: datetime,
) -> InvoiceTransition:
    manual: ManualPayment = invoice.manual_payment_record.model_copy(
        update={
            "pending_verification": False,
            "verified_at": now,
            "verified_by": actor_id,
            "verification_notes": notes,
        }
    )
    return InvoiceTransition(
        expected_status=InvoiceStatus.PENDING_VERIFICATION,
        target_status=InvoiceStatus.PAID,
        values={
            "status": InvoiceStatus.PAID.value,
            "paid_at": now,
            "manual_payment": manual.to_record(),
            "updated_at": now,
        },
    )


def reject_transition(
    invoice: SubscriptionInvoice,
    *,
    actor_id: str,
    reason: str,
    now: datetime,
) -> InvoiceTransition:
    manual = invoice.manual_payment_record.model_copy(
        update={
            "pending_verification": False,
            "verified_at": now,
            "verified_by": actor_id,
            "rejected_at": now,
            "rejection_reason": reason,
        }
    )
    return InvoiceTransition(
        expected_status=InvoiceStatus.PENDING_VERIFICATION,
        target_status=InvoiceStatus.FAILED,
        values={
            "status": InvoiceStatus.FAILED.value,
            "manual_payment": manual.to_record(),
            "updated_at": now,
        },
    )


def upgrade_activation(subscription: Subscription, now: datetime) -> SubscriptionTransition:
    pending = subscription.pending_upgrade
    if pending is None:
        raise InvalidStateError(
            "Subscription has no pending upgrade", current_status=subscription.status
        )
    return SubscriptionTransition(
        expected_version=subscription.version,
        require_pending_upgrade=True,
        values={
            "plan_code": pending.target_plan,
            "pending_upgrade_plan": None,
            "pending_upgrade_invoice_id": None,
            "pending_upgrade_requested_at": None,
            "version": subscription.version + 1,
            "updated_at": now,
        },
    )


def upgrade_cancellation(subscription: Subscription, now: datetime) -> SubscriptionTransition:
    return SubscriptionTransition(
        expected_version=subscription.version,
        require_pending_upgrade=True,
        values={
            "pending_upgrade_plan": None,
            "pending_upgrade_invoice_id": None,
            "pending_upgrade_requested_at": None,
            "version": subscription.version + 1,
            "updated_at": now,
        },
    )


def period_length(billing_cycle: str) -> relativedelta:
    if billing_cycle == BillingCycle.ANNUAL.value:
        return relativedelta(years=1)
    return relativedelta(months=1)


def activation_period(
    subscription: Subscription, invoice: SubscriptionInvoice, now: datetime
) -> tuple[datetime, datetime]:
    """
    Period a paid invoice buys.

    Explicit invoice periods win. A renewal on a still-running period extends
    from the current end so paid time is never lost; anything else starts now.
    """
    if invoice.period_start is not None and invoice.period_end is not None:
        return as_utc(invoice.period_start), as_utc(invoice.period_end)

    cycle = invoice.billing_cycle or subscription.billing_cycle
    start = now
    current_end = subscription.current_period_end
    if (
        invoice.type == InvoiceType.RENEWAL.value
        and current_end is not None
        and as_utc(current_end) > now
    ):
        start = as_utc(current_end)
    return start, start + period_length(cycle)


def paid_invoice_activation(
    subscription: Subscription, invoice: SubscriptionInvoice, now: datetime
) -> SubscriptionTransition:
    start, end = activation_period(subscription, invoice, now)
    values: dict[str, Any] = {
        "status": SubscriptionStatus.ACTIVE.value,
        "current_period_start": start,
        "current_period_end": end,
        "next_billing_date": end,
        "last_payment_date": invoice.paid_at or now,
        "last_payment_amount": invoice.total_amount,
        "last_payment_method": invoice.payment_method,
        "last_payment_reference": invoice.receipt_reference,
        "last_paid_invoice_id": invoice.id,
        "failed_payment_attempts": 0,
        "version": subscription.version + 1,
        "updated_at": now,
    }
    if invoice.plan_code:
        values["plan_code"] = invoice.plan_code
    if invoice.billing_cycle:
        values["billing_cycle"] = invoice.billing_cycle
    return SubscriptionTransition(expected_version=subscription.version, values=values)
