from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class VerifyPaymentRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=1000)


class RejectPaymentRequest(BaseModel):
    # Minimum length is enforced by the workflow so refusals are audited.
    reason: str = Field(default="", max_length=1000)


class ForceActivateUpgradeRequest(BaseModel):
    reason: str = Field(default="", max_length=1000)


class VerifyPaymentResponse(BaseModel):
    success: bool
    message: str
    activated: bool
    invoice_id: Optional[UUID] = None
    already_paid: bool = False
    upgrade_activated: bool = False
    subscription_activated: bool = False
    activation_error: Optional[str] = None
    audit_recorded: bool = True


class RejectPaymentResponse(BaseModel):
    success: bool
    message: str
    invoice_id: Optional[UUID] = None
    already_rejected: bool = False
    upgrade_cancelled: bool = False
    audit_recorded: bool = True


class ForceActivateUpgradeResponse(BaseModel):
    success: bool
    message: str
    activated: bool
    subscription_id: Optional[UUID] = None
    activated_plan: Optional[str] = None
    previous_plan: Optional[str] = None
    audit_recorded: bool = True
