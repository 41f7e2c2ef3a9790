"""
Payment verification workflow.

Administrative verify / reject / force-activate operations over manual
payments. Each call:

1. loads and prechecks the record,
2. performs one conditional state transition and commits it,
3. delegates to the SubscriptionActivator,
4. appends exactly one audit entry (refused attempts included),
5. schedules best-effort side effects (email, real-time events).

A concurrent caller that loses the transition race gets the same idempotent
"already done" result as a late duplicate request. Side-effect failures never
reach the caller, and an audit write failure never undoes committed payment
state; it is logged at critical level and reported via `audit_recorded`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shopbilling.models.invoice import InvoiceType, SubscriptionInvoice
from shopbilling.modules.audit.domain.audit_log import (
    ActionRefusedDetails,
    AuditCategory,
    AuditEventType,
    AuditLogger,
    AuditOutcome,
    PaymentRejectedDetails,
    PaymentVerifiedDetails,
    UpgradeForceActivatedDetails,
)
from shopbilling.modules.billing.domain.activation import SubscriptionActivator
from shopbilling.modules.billing.domain.directory import (
    NullShopDirectory,
    NullUserDirectory,
    ShopDirectory,
    UserDirectory,
)
from shopbilling.modules.billing.domain.invoice_store import InvoiceStore
from shopbilling.modules.billing.domain.payment_attempt_store import PaymentAttemptStore
from shopbilling.modules.billing.domain.subscription_store import SubscriptionStore
from shopbilling.modules.billing.domain.transitions import (
    Precheck,
    check_rejectable,
    check_verifiable,
    reject_transition,
    verify_transition,
)
from shopbilling.modules.notifications.domain.dispatch import (
    SideEffectDispatcher,
    get_side_effect_dispatcher,
)
from shopbilling.modules.notifications.domain.email_service import EmailService
from shopbilling.modules.notifications.domain.events import (
    PAYMENT_REJECTED,
    PAYMENT_VERIFIED,
    SUBSCRIPTION_UPDATED,
    EventPublisher,
)
from shopbilling.shared.core.async_utils import maybe_call
from shopbilling.shared.core.config import get_settings
from shopbilling.shared.core.exceptions import (
    ActivationError,
    ExternalAPIError,
    InvalidStateError,
    ResourceNotFoundError,
    ShopBillingException,
    ValidationError,
)
from shopbilling.shared.core.ops_metrics import (
    AUDIT_WRITE_FAILURES,
    PAYMENT_REJECTIONS_TOTAL,
    PAYMENT_VERIFICATIONS_TOTAL,
)

logger = structlog.get_logger()

INVOICE_RESOURCE = "subscription_invoice"
SUBSCRIPTION_RESOURCE = "subscription"

ALREADY_PAID_MESSAGE = "Invoice already paid"
ALREADY_REJECTED_MESSAGE = "Invoice already rejected"


@dataclass(frozen=True, slots=True)
class AdminActor:
    id: str
    email: Optional[str] = None
    actor_type: str = "super_admin"


@dataclass(frozen=True, slots=True)
class InvoiceSnapshot:
    """Plain copy of the invoice fields needed after the state commit."""

    id: UUID
    invoice_number: str
    shop_id: UUID
    type: str
    amount: Decimal
    currency: str
    receipt_reference: Optional[str]

    @classmethod
    def of(cls, invoice: SubscriptionInvoice) -> "InvoiceSnapshot":
        return cls(
            id=invoice.id,
            invoice_number=invoice.invoice_number,
            shop_id=invoice.shop_id,
            type=invoice.type,
            amount=invoice.total_amount,
            currency=invoice.currency,
            receipt_reference=invoice.receipt_reference,
        )


@dataclass(slots=True)
class VerificationResult:
    success: bool
    message: str
    activated: bool
    invoice_id: Optional[UUID] = None
    already_paid: bool = False
    upgrade_activated: bool = False
    subscription_activated: bool = False
    activation_error: Optional[str] = None
    audit_recorded: bool = True


@dataclass(slots=True)
class RejectionResult:
    success: bool
    message: str
    invoice_id: Optional[UUID] = None
    already_rejected: bool = False
    upgrade_cancelled: bool = False
    audit_recorded: bool = True


@dataclass(slots=True)
class ForceActivationResult:
    success: bool
    message: str
    activated: bool
    subscription_id: Optional[UUID] = None
    activated_plan: Optional[str] = None
    previous_plan: Optional[str] = None
    audit_recorded: bool = True


class VerificationWorkflow:
    def __init__(
        self,
        db: AsyncSession,
        *,
        invoices: InvoiceStore | None = None,
        attempts: PaymentAttemptStore | None = None,
        subscriptions: SubscriptionStore | None = None,
        activator: SubscriptionActivator | None = None,
        audit: AuditLogger | None = None,
        email_service: EmailService | None = None,
        events: EventPublisher | None = None,
        shop_directory: ShopDirectory | None = None,
        user_directory: UserDirectory | None = None,
        dispatcher: SideEffectDispatcher | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self.db = db
        self.invoices = invoices or InvoiceStore(db)
        self.attempts = attempts or PaymentAttemptStore(db)
        self.subscriptions = subscriptions or SubscriptionStore(db)
        self.activator = activator or SubscriptionActivator(
            db, subscriptions=self.subscriptions, invoices=self.invoices
        )
        self.audit = audit or AuditLogger(db, correlation_id=correlation_id)
        self.email_service = email_service
        self.events = events
        self.shop_directory = shop_directory or NullShopDirectory()
        self.user_directory = user_directory or NullUserDirectory()
        self.dispatcher = dispatcher or get_side_effect_dispatcher()

    # ------------------------------------------------------------------ verify

    async def verify_payment(
        self, invoice_id: UUID, actor: AdminActor, notes: str | None = None
    ) -> VerificationResult:
        notes = notes.strip() if notes and notes.strip() else None

        invoice = await self.invoices.get(invoice_id)
        if invoice is None:
            PAYMENT_VERIFICATIONS_TOTAL.labels(outcome="refused").inc()
            raise await self._refuse(
                AuditEventType.PAYMENT_VERIFIED,
                AuditCategory.PAYMENT,
                actor,
                INVOICE_RESOURCE,
                invoice_id,
                None,
                ResourceNotFoundError(
                    f"Invoice {invoice_id} not found",
                    details={"invoice_id": str(invoice_id)},
                ),
                {"notes": notes},
            )

        precheck = await self._precheck_verify(invoice, actor, notes)
        if precheck is Precheck.ALREADY_DONE:
            return await self._already_paid(InvoiceSnapshot.of(invoice), actor, notes, "already_paid")

        snap = InvoiceSnapshot.of(invoice)
        details = PaymentVerifiedDetails(
            invoice_number=snap.invoice_number,
            invoice_type=snap.type,
            amount=snap.amount,
            currency=snap.currency,
            receipt_reference=snap.receipt_reference,
            notes=notes,
        )
        now = datetime.now(timezone.utc)
        transition = verify_transition(invoice, actor_id=actor.id, notes=notes, now=now)
        try:
            applied = await self.invoices.apply(invoice, transition)
            if applied:
                await self.attempts.mark_success(invoice.id, approved_by=actor.id, now=now)
            await self.db.commit()
        except Exception as exc:
            PAYMENT_VERIFICATIONS_TOTAL.labels(outcome="error").inc()
            await self._record_write_failure(
                AuditEventType.PAYMENT_VERIFIED, actor, snap, details, exc
            )
            raise

        if not applied:
            # Someone else moved the invoice first: re-evaluate what they left.
            await self._precheck_verify(invoice, actor, notes)
            return await self._already_paid(InvoiceSnapshot.of(invoice), actor, notes, "race_lost")

        PAYMENT_VERIFICATIONS_TOTAL.labels(outcome="verified").inc()
        logger.info(
            "payment_verified",
            invoice_id=str(snap.id),
            invoice_number=snap.invoice_number,
            shop_id=str(snap.shop_id),
            amount=str(snap.amount),
            actor_id=actor.id,
        )

        subscription_id: Optional[UUID] = None
        plan_code: Optional[str] = None
        try:
            if snap.type == InvoiceType.UPGRADE.value:
                subscription = await self.activator.activate_pending_upgrade(
                    snap.shop_id, snap.id
                )
                details.upgrade_activated = subscription is not None
            else:
                subscription = await self.activator.activate_from_paid_invoice(
                    snap.id, actor.id
                )
                details.subscription_activated = True
            if subscription is not None:
                subscription_id = subscription.id
                plan_code = subscription.plan_code
            await self.db.commit()
        except ActivationError as exc:
            await self.db.rollback()
            details.activation_error = exc.message
            logger.warning(
                "subscription_activation_deferred",
                invoice_id=str(snap.id),
                invoice_type=snap.type,
                error=exc.message,
            )
        except Exception as exc:
            await self.db.rollback()
            details.activation_error = str(exc)
            await self._record_audit(
                AuditEventType.PAYMENT_VERIFIED,
                AuditCategory.PAYMENT,
                actor,
                INVOICE_RESOURCE,
                snap.id,
                snap.shop_id,
                details,
                outcome=AuditOutcome.FAILURE,
                error_message=str(exc),
            )
            raise

        audit_recorded = await self._record_audit(
            AuditEventType.PAYMENT_VERIFIED,
            AuditCategory.PAYMENT,
            actor,
            INVOICE_RESOURCE,
            snap.id,
            snap.shop_id,
            details,
            outcome=AuditOutcome.WARNING if details.activation_error else AuditOutcome.SUCCESS,
            error_message=details.activation_error,
        )

        activated = details.upgrade_activated or details.subscription_activated
        self._dispatch_verified(snap, activated, subscription_id, plan_code)

        if details.upgrade_activated:
            message = f"Payment verified and upgrade to {plan_code} activated"
        elif details.subscription_activated:
            message = "Payment verified and subscription activated"
        elif details.activation_error:
            message = (
                "Payment verified; subscription activation failed and can be retried: "
                f"{details.activation_error}"
            )
        else:
            message = "Payment verified"

        return VerificationResult(
            success=True,
            message=message,
            activated=activated,
            invoice_id=snap.id,
            upgrade_activated=details.upgrade_activated,
            subscription_activated=details.subscription_activated,
            activation_error=details.activation_error,
            audit_recorded=audit_recorded,
        )

    async def _precheck_verify(
        self, invoice: SubscriptionInvoice, actor: AdminActor, notes: str | None
    ) -> Precheck:
        try:
            return check_verifiable(invoice)
        except InvalidStateError as exc:
            PAYMENT_VERIFICATIONS_TOTAL.labels(outcome="refused").inc()
            raise await self._refuse(
                AuditEventType.PAYMENT_VERIFIED,
                AuditCategory.PAYMENT,
                actor,
                INVOICE_RESOURCE,
                invoice.id,
                invoice.shop_id,
                exc,
                {"notes": notes},
            )

    async def _already_paid(
        self, snap: InvoiceSnapshot, actor: AdminActor, notes: str | None, outcome: str
    ) -> VerificationResult:
        # Callers see one idempotent outcome; the metric keeps race losses visible.
        PAYMENT_VERIFICATIONS_TOTAL.labels(outcome=outcome).inc()
        logger.info(
            "payment_verification_noop",
            invoice_id=str(snap.id),
            reason=outcome,
            actor_id=actor.id,
        )
        audit_recorded = await self._record_audit(
            AuditEventType.PAYMENT_VERIFIED,
            AuditCategory.PAYMENT,
            actor,
            INVOICE_RESOURCE,
            snap.id,
            snap.shop_id,
            PaymentVerifiedDetails(
                invoice_number=snap.invoice_number,
                invoice_type=snap.type,
                amount=snap.amount,
                currency=snap.currency,
                receipt_reference=snap.receipt_reference,
                notes=notes,
                already_paid=True,
            ),
        )
        return VerificationResult(
            success=True,
            message=ALREADY_PAID_MESSAGE,
            activated=False,
            invoice_id=snap.id,
            already_paid=True,
            audit_recorded=audit_recorded,
        )

    # ------------------------------------------------------------------ reject

    async def reject_payment(
        self, invoice_id: UUID, actor: AdminActor, reason: str
    ) -> RejectionResult:
        reason = (reason or "").strip()
        min_length = get_settings().REJECTION_REASON_MIN_LENGTH
        if len(reason) < min_length:
            PAYMENT_REJECTIONS_TOTAL.labels(outcome="refused").inc()
            raise await self._refuse(
                AuditEventType.PAYMENT_REJECTED,
                AuditCategory.PAYMENT,
                actor,
                INVOICE_RESOURCE,
                invoice_id,
                None,
                ValidationError(
                    f"Rejection reason must be at least {min_length} characters",
                    details={"min_length": min_length, "length": len(reason)},
                ),
                {"reason": reason},
            )

        invoice = await self.invoices.get(invoice_id)
        if invoice is None:
            PAYMENT_REJECTIONS_TOTAL.labels(outcome="refused").inc()
            raise await self._refuse(
                AuditEventType.PAYMENT_REJECTED,
                AuditCategory.PAYMENT,
                actor,
                INVOICE_RESOURCE,
                invoice_id,
                None,
                ResourceNotFoundError(
                    f"Invoice {invoice_id} not found",
                    details={"invoice_id": str(invoice_id)},
                ),
                {"reason": reason},
            )

        precheck = await self._precheck_reject(invoice, actor, reason)
        if precheck is Precheck.ALREADY_DONE:
            return await self._already_rejected(InvoiceSnapshot.of(invoice), actor, reason)

        snap = InvoiceSnapshot.of(invoice)
        details = PaymentRejectedDetails(
            invoice_number=snap.invoice_number,
            invoice_type=snap.type,
            amount=snap.amount,
            receipt_reference=snap.receipt_reference,
            reason=reason,
        )
        now = datetime.now(timezone.utc)
        transition = reject_transition(invoice, actor_id=actor.id, reason=reason, now=now)
        try:
            applied = await self.invoices.apply(invoice, transition)
            if applied:
                await self.attempts.mark_failed(
                    invoice.id, approved_by=actor.id, reason=reason, now=now
                )
            await self.db.commit()
        except Exception as exc:
            PAYMENT_REJECTIONS_TOTAL.labels(outcome="error").inc()
            await self._record_write_failure(
                AuditEventType.PAYMENT_REJECTED, actor, snap, details, exc
            )
            raise

        if not applied:
            await self._precheck_reject(invoice, actor, reason)
            return await self._already_rejected(InvoiceSnapshot.of(invoice), actor, reason)

        PAYMENT_REJECTIONS_TOTAL.labels(outcome="rejected").inc()
        logger.info(
            "payment_rejected",
            invoice_id=str(snap.id),
            invoice_number=snap.invoice_number,
            shop_id=str(snap.shop_id),
            actor_id=actor.id,
        )

        if snap.type == InvoiceType.UPGRADE.value:
            try:
                await self.activator.cancel_pending_upgrade(snap.shop_id, snap.id)
                await self.db.commit()
            except Exception as exc:
                await self.db.rollback()
                await self._record_audit(
                    AuditEventType.PAYMENT_REJECTED,
                    AuditCategory.PAYMENT,
                    actor,
                    INVOICE_RESOURCE,
                    snap.id,
                    snap.shop_id,
                    details,
                    outcome=AuditOutcome.FAILURE,
                    error_message=str(exc),
                )
                raise
            details.upgrade_cancelled = True

        audit_recorded = await self._record_audit(
            AuditEventType.PAYMENT_REJECTED,
            AuditCategory.PAYMENT,
            actor,
            INVOICE_RESOURCE,
            snap.id,
            snap.shop_id,
            details,
        )
        self._dispatch_rejected(snap, reason)

        return RejectionResult(
            success=True,
            message="Payment rejected. The shop will be notified.",
            invoice_id=snap.id,
            upgrade_cancelled=details.upgrade_cancelled,
            audit_recorded=audit_recorded,
        )

    async def _precheck_reject(
        self, invoice: SubscriptionInvoice, actor: AdminActor, reason: str
    ) -> Precheck:
        try:
            return check_rejectable(invoice)
        except InvalidStateError as exc:
            PAYMENT_REJECTIONS_TOTAL.labels(outcome="refused").inc()
            raise await self._refuse(
                AuditEventType.PAYMENT_REJECTED,
                AuditCategory.PAYMENT,
                actor,
                INVOICE_RESOURCE,
                invoice.id,
                invoice.shop_id,
                exc,
                {"reason": reason},
            )

    async def _already_rejected(
        self, snap: InvoiceSnapshot, actor: AdminActor, reason: str
    ) -> RejectionResult:
        PAYMENT_REJECTIONS_TOTAL.labels(outcome="already_failed").inc()
        logger.info("payment_rejection_noop", invoice_id=str(snap.id), actor_id=actor.id)
        audit_recorded = await self._record_audit(
            AuditEventType.PAYMENT_REJECTED,
            AuditCategory.PAYMENT,
            actor,
            INVOICE_RESOURCE,
            snap.id,
            snap.shop_id,
            PaymentRejectedDetails(
                invoice_number=snap.invoice_number,
                invoice_type=snap.type,
                amount=snap.amount,
                receipt_reference=snap.receipt_reference,
                reason=reason,
                already_failed=True,
            ),
        )
        return RejectionResult(
            success=True,
            message=ALREADY_REJECTED_MESSAGE,
            invoice_id=snap.id,
            already_rejected=True,
            audit_recorded=audit_recorded,
        )

    # ------------------------------------------------------- force activation

    async def force_activate_upgrade(
        self, subscription_id: UUID, actor: AdminActor, reason: str
    ) -> ForceActivationResult:
        """Emergency bypass: apply a pending upgrade without a verified invoice."""
        reason = (reason or "").strip()
        min_length = get_settings().FORCE_ACTIVATION_REASON_MIN_LENGTH
        if len(reason) < min_length:
            raise await self._refuse(
                AuditEventType.UPGRADE_FORCE_ACTIVATED,
                AuditCategory.SUBSCRIPTION,
                actor,
                SUBSCRIPTION_RESOURCE,
                subscription_id,
                None,
                ValidationError(
                    f"Force activation reason must be at least {min_length} characters",
                    details={"min_length": min_length, "length": len(reason)},
                ),
                {"reason": reason},
            )

        subscription = await self.subscriptions.get(subscription_id)
        if subscription is None:
            raise await self._refuse(
                AuditEventType.UPGRADE_FORCE_ACTIVATED,
                AuditCategory.SUBSCRIPTION,
                actor,
                SUBSCRIPTION_RESOURCE,
                subscription_id,
                None,
                ResourceNotFoundError(
                    f"Subscription {subscription_id} not found",
                    details={"subscription_id": str(subscription_id)},
                ),
                {"reason": reason},
            )

        pending = subscription.pending_upgrade
        shop_id = subscription.shop_id
        if pending is None:
            raise await self._refuse(
                AuditEventType.UPGRADE_FORCE_ACTIVATED,
                AuditCategory.SUBSCRIPTION,
                actor,
                SUBSCRIPTION_RESOURCE,
                subscription_id,
                shop_id,
                InvalidStateError(
                    "Subscription has no pending upgrade to activate",
                    current_status=subscription.status,
                ),
                {"reason": reason},
            )

        details = UpgradeForceActivatedDetails(
            reason=reason,
            previous_plan=subscription.plan_code,
            pending_upgrade=pending.snapshot(),
        )
        logger.warning(
            "upgrade_force_activation_requested",
            subscription_id=str(subscription_id),
            shop_id=str(shop_id),
            target_plan=pending.target_plan,
            actor_id=actor.id,
        )

        try:
            activated = await self.activator.activate_pending_upgrade(
                shop_id, pending.invoice_id, source="force_activation"
            )
            activated_plan = activated.plan_code if activated is not None else None
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            await self._record_audit(
                AuditEventType.UPGRADE_FORCE_ACTIVATED,
                AuditCategory.SUBSCRIPTION,
                actor,
                SUBSCRIPTION_RESOURCE,
                subscription_id,
                shop_id,
                details,
                outcome=AuditOutcome.FAILURE,
                error_message=str(exc),
            )
            raise

        details.activated = activated is not None
        details.activated_plan = activated_plan
        audit_recorded = await self._record_audit(
            AuditEventType.UPGRADE_FORCE_ACTIVATED,
            AuditCategory.SUBSCRIPTION,
            actor,
            SUBSCRIPTION_RESOURCE,
            subscription_id,
            shop_id,
            details,
        )

        if activated is None:
            # Activated concurrently between our read and the write.
            return ForceActivationResult(
                success=True,
                message="Pending upgrade was already activated",
                activated=False,
                subscription_id=subscription_id,
                previous_plan=details.previous_plan,
                audit_recorded=audit_recorded,
            )

        self._emit(
            SUBSCRIPTION_UPDATED,
            {
                "shop_id": str(shop_id),
                "subscription_id": str(subscription_id),
                "plan_code": activated_plan,
                "source": "force_activation",
            },
        )
        return ForceActivationResult(
            success=True,
            message=f"Upgrade to {activated_plan} force-activated",
            activated=True,
            subscription_id=subscription_id,
            activated_plan=activated_plan,
            previous_plan=details.previous_plan,
            audit_recorded=audit_recorded,
        )

    # ------------------------------------------------------------------ audit

    async def _record_write_failure(
        self,
        event_type: AuditEventType,
        actor: AdminActor,
        snap: InvoiceSnapshot,
        details: BaseModel,
        exc: Exception,
    ) -> None:
        """Roll back a failed status write and audit the attempt before it propagates."""
        await self.db.rollback()
        logger.error(
            "payment_status_write_failed",
            event_type=event_type.value,
            invoice_id=str(snap.id),
            actor_id=actor.id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        await self._record_audit(
            event_type,
            AuditCategory.PAYMENT,
            actor,
            INVOICE_RESOURCE,
            snap.id,
            snap.shop_id,
            details,
            outcome=AuditOutcome.FAILURE,
            error_message=str(exc),
        )

    async def _record_audit(
        self,
        event_type: AuditEventType,
        category: AuditCategory,
        actor: AdminActor,
        resource_type: str,
        resource_id: UUID,
        shop_id: UUID | None,
        details: BaseModel,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        error_message: str | None = None,
    ) -> bool:
        """Append and commit one audit entry. Returns False if it could not be stored."""
        try:
            await self.audit.log(
                event_type=event_type,
                category=category,
                resource_type=resource_type,
                resource_id=str(resource_id),
                details=details,
                actor_id=actor.id,
                actor_email=actor.email,
                actor_type=actor.actor_type,
                shop_id=shop_id,
                outcome=outcome,
                error_message=error_message,
            )
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            AUDIT_WRITE_FAILURES.labels(event_type=event_type.value).inc()
            logger.critical(
                "audit_write_failed",
                event_type=event_type.value,
                resource_type=resource_type,
                resource_id=str(resource_id),
                actor_id=actor.id,
                error=str(exc),
                exc_info=True,
            )
            return False
        return True

    async def _refuse(
        self,
        event_type: AuditEventType,
        category: AuditCategory,
        actor: AdminActor,
        resource_type: str,
        resource_id: UUID,
        shop_id: UUID | None,
        exc: ShopBillingException,
        attempted: dict[str, Any],
    ) -> ShopBillingException:
        """Audit a refused attempt and hand back the error for the caller to raise."""
        logger.info(
            "admin_action_refused",
            event_type=event_type.value,
            resource_id=str(resource_id),
            code=exc.code,
            actor_id=actor.id,
        )
        await self._record_audit(
            event_type,
            category,
            actor,
            resource_type,
            resource_id,
            shop_id,
            ActionRefusedDetails(
                error_code=exc.code,
                current_status=exc.details.get("current_status"),
                input=attempted,
            ),
            outcome=AuditOutcome.FAILURE,
            error_message=exc.message,
        )
        return exc

    # ----------------------------------------------------------- side effects

    def _dispatch_verified(
        self,
        snap: InvoiceSnapshot,
        activated: bool,
        subscription_id: UUID | None,
        plan_code: str | None,
    ) -> None:
        if activated and plan_code:
            activation_summary = f"Your {plan_code} plan is now active."
        else:
            activation_summary = "Your subscription will be updated shortly."
        self.dispatcher.dispatch(
            "payment_confirmation_email",
            self._send_shop_email,
            snap.shop_id,
            "payment_verified",
            {
                "invoice_number": snap.invoice_number,
                "amount": f"{snap.amount:,.2f}",
                "currency": snap.currency,
                "activation_summary": activation_summary,
            },
        )
        self._emit(
            PAYMENT_VERIFIED,
            {
                "shop_id": str(snap.shop_id),
                "invoice_id": str(snap.id),
                "invoice_number": snap.invoice_number,
                "status": "paid",
                "amount": str(snap.amount),
            },
        )
        if activated and subscription_id is not None:
            self._emit(
                SUBSCRIPTION_UPDATED,
                {
                    "shop_id": str(snap.shop_id),
                    "subscription_id": str(subscription_id),
                    "plan_code": plan_code,
                    "source": "verified_payment",
                },
            )

    def _dispatch_rejected(self, snap: InvoiceSnapshot, reason: str) -> None:
        self.dispatcher.dispatch(
            "payment_rejection_email",
            self._send_shop_email,
            snap.shop_id,
            "payment_rejected",
            {"invoice_number": snap.invoice_number, "reason": reason},
        )
        self._emit(
            PAYMENT_REJECTED,
            {
                "shop_id": str(snap.shop_id),
                "invoice_id": str(snap.id),
                "invoice_number": snap.invoice_number,
                "status": "failed",
                "reason": reason,
            },
        )

    def _emit(self, event_name: str, payload: dict[str, Any]) -> None:
        if self.events is None:
            return
        self.dispatcher.dispatch(
            event_name.replace(".", "_") + "_event", self.events.emit, event_name, payload
        )

    async def _send_shop_email(
        self, shop_id: UUID, template: str, variables: dict[str, Any]
    ) -> None:
        if self.email_service is None:
            logger.info("email_skipped_not_configured", template=template)
            return

        shop = await maybe_call(self.shop_directory.get_shop, shop_id)
        admin = await maybe_call(self.user_directory.find_shop_admin, shop_id)
        recipient = (admin.email if admin else None) or (shop.email if shop else None)
        if not recipient:
            logger.warning(
                "email_skipped_no_recipient", template=template, shop_id=str(shop_id)
            )
            return

        shop_name = (shop.name if shop else None) or (admin.name if admin else "there")
        sent = await self.email_service.send_template_email(
            recipient, template, {"shop_name": shop_name, **variables}
        )
        if not sent:
            raise ExternalAPIError(
                f"Email '{template}' was not accepted for delivery",
                details={"shop_id": str(shop_id)},
            )
