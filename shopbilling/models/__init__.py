from shopbilling.models.invoice import (
    InvoiceStatus,
    InvoiceType,
    ManualPayment,
    SubscriptionInvoice,
)
from shopbilling.models.payment_attempt import PaymentAttempt, PaymentAttemptStatus
from shopbilling.models.subscription import (
    BillingCycle,
    PendingUpgrade,
    Subscription,
    SubscriptionStatus,
)
from shopbilling.modules.audit.domain.audit_log import AuditLog

__all__ = [
    "AuditLog",
    "BillingCycle",
    "InvoiceStatus",
    "InvoiceType",
    "ManualPayment",
    "PaymentAttempt",
    "PaymentAttemptStatus",
    "PendingUpgrade",
    "Subscription",
    "SubscriptionInvoice",
    "SubscriptionStatus",
]
