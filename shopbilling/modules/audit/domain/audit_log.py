"""
Append-only audit trail for administrative billing actions.

Every verify, reject and force-activate attempt produces exactly one entry,
including refused attempts. Entries are never updated or deleted.

Key Features:
1. Structured details as a tagged union discriminated by `kind`
2. Actor email encrypted at rest
3. Sensitive data masking inside details
4. Correlation IDs linking an entry to the request that produced it
"""

import inspect
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union, cast

import structlog
from pydantic import BaseModel, Field, TypeAdapter
from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy_utils import StringEncryptedType
from sqlalchemy_utils.types.encrypted.encrypted_type import AesEngine

from shopbilling.shared.core.config import get_settings
from shopbilling.shared.db.base import Base

logger = structlog.get_logger()


def _encryption_key() -> str:
    return get_settings().ENCRYPTION_KEY or ""


class AuditCategory(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"


class AuditEventType(str, Enum):
    """Categorized audit event types for filtering and reporting."""

    PAYMENT_VERIFIED = "payment.verified"
    PAYMENT_REJECTED = "payment.rejected"
    UPGRADE_FORCE_ACTIVATED = "subscription.upgrade_force_activated"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class PaymentVerifiedDetails(BaseModel):
    kind: Literal["payment_verified"] = "payment_verified"
    invoice_number: str
    invoice_type: str
    amount: Decimal
    currency: str
    receipt_reference: Optional[str] = None
    notes: Optional[str] = None
    already_paid: bool = False
    upgrade_activated: bool = False
    subscription_activated: bool = False
    activation_error: Optional[str] = None


class PaymentRejectedDetails(BaseModel):
    kind: Literal["payment_rejected"] = "payment_rejected"
    invoice_number: str
    invoice_type: str
    amount: Decimal
    receipt_reference: Optional[str] = None
    reason: str
    already_failed: bool = False
    upgrade_cancelled: bool = False


class UpgradeForceActivatedDetails(BaseModel):
    kind: Literal["upgrade_force_activated"] = "upgrade_force_activated"
    reason: str
    previous_plan: str
    pending_upgrade: dict[str, Optional[str]]
    activated_plan: Optional[str] = None
    activated: bool = False


class ActionRefusedDetails(BaseModel):
    """An administrative action that was refused before any state change."""

    kind: Literal["action_refused"] = "action_refused"
    error_code: str
    current_status: Optional[str] = None
    input: dict[str, Any] = Field(default_factory=dict)


AuditDetails = Annotated[
    Union[
        PaymentVerifiedDetails,
        PaymentRejectedDetails,
        UpgradeForceActivatedDetails,
        ActionRefusedDetails,
    ],
    Field(discriminator="kind"),
]

_details_adapter: TypeAdapter[Any] = TypeAdapter(AuditDetails)


def parse_audit_details(raw: dict[str, Any]) -> Any:
    """Load stored details back into their tagged model."""
    return _details_adapter.validate_python(raw)


class AuditLog(Base):
    """
    Immutable audit log entry.

    Design Principles:
    - No UPDATE or DELETE operations allowed (append-only)
    - Sensitive data masked before storage
    - Correlation ID links related events
    """

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(), primary_key=True, default=uuid.uuid4)

    category: Mapped[str] = mapped_column(String(30), nullable=False)
    event_type: Mapped[str] = mapped_column(String(60), nullable=False, index=True)
    event_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    # Actor information
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    actor_email: Mapped[Optional[str]] = mapped_column(
        StringEncryptedType(String(255), _encryption_key, AesEngine, "pkcs5"),
        nullable=True,
    )
    actor_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default="super_admin"
    )

    correlation_id: Mapped[Optional[str]] = mapped_column(
        String(36), nullable=True, index=True
    )

    # Resource affected
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    shop_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(), nullable=True)

    details: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=True
    )

    # Outcome
    outcome: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AuditOutcome.SUCCESS.value
    )
    success: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_shop_time", "shop_id", "event_timestamp"),
        Index("ix_audit_resource", "resource_type", "resource_id"),
        Index("ix_audit_type_time", "event_type", "event_timestamp"),
    )


class AuditLogger:
    """
    High-level audit logging service.

    Usage:
        audit = AuditLogger(db)
        await audit.log(
            event_type=AuditEventType.PAYMENT_VERIFIED,
            category=AuditCategory.PAYMENT,
            actor_id=admin.id,
            resource_type="subscription_invoice",
            resource_id=str(invoice.id),
            shop_id=invoice.shop_id,
            details=PaymentVerifiedDetails(...),
        )

    `log()` flushes but does not commit; the caller owns the transaction.
    """

    # Fields to mask in details
    SENSITIVE_FIELDS = {
        "password",
        "token",
        "secret",
        "api_key",
        "card_number",
    }

    def __init__(self, db: AsyncSession, correlation_id: str | None = None) -> None:
        self.db = db
        self.correlation_id = correlation_id or str(uuid.uuid4())

    async def log(
        self,
        event_type: AuditEventType,
        category: AuditCategory,
        resource_type: str,
        resource_id: str,
        details: BaseModel | dict[str, Any] | None = None,
        actor_id: str | None = None,
        actor_email: str | None = None,
        actor_type: str = "super_admin",
        shop_id: uuid.UUID | None = None,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        error_message: str | None = None,
    ) -> AuditLog:
        """Create an immutable audit log entry."""
        if isinstance(details, BaseModel):
            raw_details: dict[str, Any] | None = details.model_dump(mode="json")
        else:
            raw_details = details

        entry = AuditLog(
            category=category.value,
            event_type=event_type.value,
            actor_id=actor_id,
            actor_email=actor_email,
            actor_type=actor_type,
            correlation_id=self.correlation_id,
            resource_type=resource_type,
            resource_id=resource_id,
            shop_id=shop_id,
            details=self._mask_sensitive(raw_details) if raw_details else None,
            outcome=outcome.value,
            success=outcome != AuditOutcome.FAILURE,
            error_message=error_message,
        )

        add_result = cast(Any, self.db).add(entry)
        # AsyncSession.add is sync, but AsyncMock-based tests may return awaitables.
        if inspect.isawaitable(add_result):
            await add_result
        await self.db.flush()

        logger.info(
            "audit_event",
            event_type=event_type.value,
            correlation_id=self.correlation_id,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome.value,
        )

        return entry

    def _mask_sensitive(self, data: Any) -> Any:
        """Recursively mask sensitive fields in dicts and lists."""
        if isinstance(data, list):
            return [self._mask_sensitive(item) for item in data]

        if not isinstance(data, dict):
            return data

        masked = {}
        for key, value in data.items():
            if any(
                sensitive in str(key).lower() for sensitive in self.SENSITIVE_FIELDS
            ):
                masked[key] = "***REDACTED***"
            elif isinstance(value, (dict, list)):
                masked[key] = self._mask_sensitive(value)
            else:
                masked[key] = value

        return masked
