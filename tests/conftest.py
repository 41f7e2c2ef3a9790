"""
Global pytest fixtures for the shop billing test suite.

Provides:
- File-backed async SQLite database (two sessions can race on it)
- Builders for subscriptions, invoices and payment attempts
- Recording collaborators (email, events, directory)
- A workflow factory wired to the recording collaborators
"""
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any shopbilling imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = "32-byte-long-test-encryption-key-for-billing"
os.environ["ENVIRONMENT"] = "development"

from shopbilling.shared.core.config import get_settings  # noqa: E402

get_settings.cache_clear()

from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shopbilling.models.invoice import (  # noqa: E402
    InvoiceStatus,
    InvoiceType,
    SubscriptionInvoice,
)
from shopbilling.models.subscription import (  # noqa: E402
    BillingCycle,
    Subscription,
    SubscriptionStatus,
)
from shopbilling.modules.audit.domain.audit_log import AuditLog  # noqa: E402
from shopbilling.modules.billing.domain.directory import (  # noqa: E402
    ShopContact,
    StaticShopDirectory,
)
from shopbilling.modules.billing.domain.invoice_store import InvoiceStore  # noqa: E402
from shopbilling.modules.billing.domain.payment_attempt_store import (  # noqa: E402
    PaymentAttemptStore,
)
from shopbilling.modules.billing.domain.subscription_store import (  # noqa: E402
    SubscriptionStore,
)
from shopbilling.modules.billing.domain.verification import (  # noqa: E402
    AdminActor,
    VerificationWorkflow,
)
from shopbilling.modules.notifications.domain.dispatch import (  # noqa: E402
    SideEffectDispatcher,
)
from shopbilling.modules.notifications.domain.email_service import (  # noqa: E402
    EmailService,
)
from shopbilling.shared.db.base import Base  # noqa: E402


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Async SQLite engine on a temporary file, so sessions use separate connections."""
    db_file = tmp_path / "billing.sqlite"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_file}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session."""
    return db_session


# ============================================================================
# Collaborators
# ============================================================================


class RecordingPublisher:
    """Event publisher that keeps everything it was asked to emit."""

    def __init__(self) -> None:
        self.emitted: list[tuple[str, dict[str, Any]]] = []

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        self.emitted.append((event_name, payload))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.emitted]


@pytest.fixture
def events() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def email_service() -> MagicMock:
    service = MagicMock(spec=EmailService)
    service.send_template_email = AsyncMock(return_value=True)
    return service


@pytest.fixture
def directory() -> StaticShopDirectory:
    return StaticShopDirectory()


@pytest.fixture
def dispatcher() -> SideEffectDispatcher:
    return SideEffectDispatcher(timeout_seconds=1.0)


@pytest.fixture
def admin() -> AdminActor:
    return AdminActor(id=str(uuid4()), email="ops@shopbilling.test")


@pytest.fixture
def make_workflow(dispatcher, events, email_service, directory):
    """Build a VerificationWorkflow bound to a session, with recording collaborators."""

    def _make(db: AsyncSession, **overrides: Any) -> VerificationWorkflow:
        kwargs: dict[str, Any] = {
            "email_service": email_service,
            "events": events,
            "shop_directory": directory,
            "user_directory": directory,
            "dispatcher": dispatcher,
            "correlation_id": "test-correlation-id",
        }
        kwargs.update(overrides)
        return VerificationWorkflow(db, **kwargs)

    return _make


# ============================================================================
# Data Builders
# ============================================================================


class BillingFactory:
    """Creates committed billing records the way the tenant-facing flows would."""

    def __init__(self, db: AsyncSession, directory: StaticShopDirectory) -> None:
        self.db = db
        self.directory = directory

    async def subscription(
        self,
        *,
        plan_code: str = "basic",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        shop_id: UUID | None = None,
        shop_name: str = "Duka la Mama",
    ) -> Subscription:
        shop_id = shop_id or uuid4()
        self.directory.shops[shop_id] = ShopContact(
            name=shop_name, email=f"owner-{shop_id.hex[:8]}@shops.test"
        )
        subscription = await SubscriptionStore(self.db).create(
            shop_id=shop_id,
            plan_code=plan_code,
            status=status,
            billing_cycle=billing_cycle,
        )
        await self.db.commit()
        return subscription

    async def invoice(
        self,
        subscription: Subscription,
        *,
        type: InvoiceType = InvoiceType.UPGRADE,
        status: InvoiceStatus = InvoiceStatus.PENDING_VERIFICATION,
        amount: Decimal = Decimal("2500.00"),
        plan_code: str | None = None,
        receipt_number: str = "QHX81KD0PL",
        with_attempt: bool = True,
    ) -> SubscriptionInvoice:
        invoices = InvoiceStore(self.db)
        invoice = await invoices.create(
            shop_id=subscription.shop_id,
            subscription_id=subscription.id,
            type=type,
            total_amount=amount,
            plan_code=plan_code,
            billing_cycle=subscription.billing_cycle,
        )
        if status != InvoiceStatus.DRAFT:
            invoice = await invoices.submit_manual_payment(
                invoice.id,
                receipt_number=receipt_number,
                sender_phone_number="+254712345678",
                paid_amount=amount,
            )
            if with_attempt:
                await PaymentAttemptStore(self.db).record(invoice)
        if status not in (InvoiceStatus.DRAFT, InvoiceStatus.PENDING_VERIFICATION):
            invoice.status = status.value
            if status == InvoiceStatus.PAID:
                invoice.paid_at = datetime.now(timezone.utc)
            await self.db.flush()
        await self.db.commit()
        return invoice

    async def upgrade(
        self, *, current_plan: str = "basic", target_plan: str = "pro"
    ) -> tuple[Subscription, SubscriptionInvoice]:
        """Subscription with a pending upgrade backed by a pending_verification invoice."""
        subscription = await self.subscription(plan_code=current_plan)
        invoice = await self.invoice(
            subscription, type=InvoiceType.UPGRADE, plan_code=target_plan
        )
        subscription.request_upgrade(target_plan, invoice_id=invoice.id)
        await self.db.commit()
        return subscription, invoice

    async def audit_entries(self, resource_id: Any | None = None) -> list[AuditLog]:
        stmt = select(AuditLog).order_by(AuditLog.event_timestamp.asc())
        if resource_id is not None:
            stmt = stmt.where(AuditLog.resource_id == str(resource_id))
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())


@pytest.fixture
def billing(db_session, directory) -> BillingFactory:
    return BillingFactory(db_session, directory)
