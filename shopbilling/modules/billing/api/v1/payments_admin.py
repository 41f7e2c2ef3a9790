"""
Super-admin payment endpoints.

Provides:
- GET /admin/payments/stats - Dashboard counters
- GET /admin/payments/pending - Invoices awaiting manual verification
- GET /admin/payments/pending-upgrades - Subscriptions with a pending upgrade
- GET /admin/payments/history - Invoice history with filters
- GET /admin/payments/attempts - Payment attempts for monitoring
- POST /admin/payments/verify/{invoice_id}
- POST /admin/payments/reject/{invoice_id}
- POST /admin/payments/force-activate-upgrade/{subscription_id}

Authentication lives in the embedding application: it sets
`request.state.actor` or overrides `get_current_admin`.
"""

from dataclasses import asdict
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shopbilling.modules.billing.api.v1.payments_models import (
    ForceActivateUpgradeRequest,
    ForceActivateUpgradeResponse,
    RejectPaymentRequest,
    RejectPaymentResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from shopbilling.modules.billing.domain.directory import (
    NullShopDirectory,
    NullUserDirectory,
    ShopDirectory,
    UserDirectory,
)
from shopbilling.modules.billing.domain.reporting import (
    AttemptStatistics,
    InvoiceView,
    Page,
    PaymentAttemptView,
    PaymentReportingService,
    PaymentStats,
    PendingUpgradeListing,
    PendingVerificationView,
)
from shopbilling.modules.billing.domain.verification import (
    AdminActor,
    VerificationWorkflow,
)
from shopbilling.modules.notifications.domain.email_service import EmailService
from shopbilling.modules.notifications.domain.events import (
    EventPublisher,
    InProcessEventPublisher,
)
from shopbilling.shared.core.timeout import TimeoutManager
from shopbilling.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Admin Payments"])


def get_current_admin(request: Request) -> AdminActor:
    actor = getattr(request.state, "actor", None)
    if not isinstance(actor, AdminActor):
        raise HTTPException(status_code=401, detail="Super admin authentication required")
    if actor.actor_type != "super_admin":
        raise HTTPException(status_code=403, detail="Super admin role required")
    return actor


@lru_cache
def get_event_publisher() -> EventPublisher:
    return InProcessEventPublisher()


def get_shop_directory() -> ShopDirectory:
    return NullShopDirectory()


def get_user_directory() -> UserDirectory:
    return NullUserDirectory()


def get_email_service() -> Optional[EmailService]:
    return EmailService.from_settings()


def get_verification_workflow(
    request: Request,
    db: AsyncSession = Depends(get_db),
    events: EventPublisher = Depends(get_event_publisher),
    shop_directory: ShopDirectory = Depends(get_shop_directory),
    user_directory: UserDirectory = Depends(get_user_directory),
    email_service: Optional[EmailService] = Depends(get_email_service),
) -> VerificationWorkflow:
    return VerificationWorkflow(
        db,
        email_service=email_service,
        events=events,
        shop_directory=shop_directory,
        user_directory=user_directory,
        correlation_id=request.headers.get("x-request-id"),
    )


def get_reporting_service(
    db: AsyncSession = Depends(get_db),
    shop_directory: ShopDirectory = Depends(get_shop_directory),
) -> PaymentReportingService:
    return PaymentReportingService(db, shop_directory=shop_directory)


AdminDep = Annotated[AdminActor, Depends(get_current_admin)]
WorkflowDep = Annotated[VerificationWorkflow, Depends(get_verification_workflow)]
ReportingDep = Annotated[PaymentReportingService, Depends(get_reporting_service)]


@router.get("/stats", response_model=PaymentStats)
async def get_payment_stats(admin: AdminDep, reporting: ReportingDep) -> PaymentStats:
    return await reporting.payment_stats()


@router.get("/pending", response_model=Page[PendingVerificationView])
async def get_pending_verifications(
    admin: AdminDep,
    reporting: ReportingDep,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
) -> Page[PendingVerificationView]:
    return await reporting.pending_verifications(limit=limit, skip=skip)


@router.get("/pending-upgrades", response_model=Page[PendingUpgradeListing])
async def get_pending_upgrades(
    admin: AdminDep,
    reporting: ReportingDep,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
) -> Page[PendingUpgradeListing]:
    return await reporting.pending_upgrades(limit=limit, skip=skip)


@router.get("/history", response_model=Page[InvoiceView])
async def get_payment_history(
    admin: AdminDep,
    reporting: ReportingDep,
    status: Optional[str] = None,
    method: Optional[str] = None,
    shop_id: Optional[UUID] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
) -> Page[InvoiceView]:
    return await reporting.payment_history(
        status=status,
        method=method,
        shop_id=shop_id,
        start=start_date,
        end=end_date,
        limit=limit,
        skip=skip,
    )


@router.get("/attempts", response_model=Page[PaymentAttemptView])
async def get_payment_attempts(
    admin: AdminDep,
    reporting: ReportingDep,
    status: Optional[str] = None,
    method: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    skip: int = Query(0, ge=0),
) -> Page[PaymentAttemptView]:
    return await reporting.payment_attempts(
        status=status, method=method, limit=limit, skip=skip
    )


@router.get("/attempts/statistics", response_model=AttemptStatistics)
async def get_attempt_statistics(
    admin: AdminDep,
    reporting: ReportingDep,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> AttemptStatistics:
    return await reporting.attempt_statistics(start=start_date, end=end_date)


@router.post("/verify/{invoice_id}", response_model=VerifyPaymentResponse)
async def verify_payment(
    invoice_id: UUID,
    admin: AdminDep,
    workflow: WorkflowDep,
    body: Optional[VerifyPaymentRequest] = None,
) -> VerifyPaymentResponse:
    result = await TimeoutManager("payment_operation").execute_with_timeout(
        workflow.verify_payment, invoice_id, admin, body.notes if body else None
    )
    return VerifyPaymentResponse(**asdict(result))


@router.post("/reject/{invoice_id}", response_model=RejectPaymentResponse)
async def reject_payment(
    invoice_id: UUID,
    body: RejectPaymentRequest,
    admin: AdminDep,
    workflow: WorkflowDep,
) -> RejectPaymentResponse:
    result = await TimeoutManager("payment_operation").execute_with_timeout(
        workflow.reject_payment, invoice_id, admin, body.reason
    )
    return RejectPaymentResponse(**asdict(result))


@router.post(
    "/force-activate-upgrade/{subscription_id}",
    response_model=ForceActivateUpgradeResponse,
)
async def force_activate_upgrade(
    subscription_id: UUID,
    body: ForceActivateUpgradeRequest,
    admin: AdminDep,
    workflow: WorkflowDep,
) -> ForceActivateUpgradeResponse:
    logger.warning(
        "force_activate_upgrade_called",
        subscription_id=str(subscription_id),
        actor_id=admin.id,
    )
    result = await TimeoutManager("payment_operation").execute_with_timeout(
        workflow.force_activate_upgrade, subscription_id, admin, body.reason
    )
    return ForceActivateUpgradeResponse(**asdict(result))
