"""
Operational metrics for payment verification.

Prometheus counters let operators watch verification throughput, race losses
and side-effect health without reading logs.
"""

from prometheus_client import Counter, Histogram

PAYMENT_VERIFICATIONS_TOTAL = Counter(
    "shopbilling_payment_verifications_total",
    "Payment verification attempts by outcome",
    ["outcome"],  # verified, already_paid, race_lost, refused, error
)

PAYMENT_REJECTIONS_TOTAL = Counter(
    "shopbilling_payment_rejections_total",
    "Payment rejection attempts by outcome",
    ["outcome"],  # rejected, already_failed, refused, error
)

UPGRADE_ACTIVATIONS_TOTAL = Counter(
    "shopbilling_upgrade_activations_total",
    "Pending upgrade activations by source",
    ["source"],  # verified_payment, force_activation, reconcile
)

SUBSCRIPTION_ACTIVATION_FAILURES = Counter(
    "shopbilling_subscription_activation_failures_total",
    "Paid invoices that could not be applied to a subscription",
    ["invoice_type"],
)

AUDIT_WRITE_FAILURES = Counter(
    "shopbilling_audit_write_failures_total",
    "Audit entries that could not be persisted",
    ["event_type"],
)

SIDE_EFFECT_FAILURES = Counter(
    "shopbilling_side_effect_failures_total",
    "Best-effort side effects that failed or timed out",
    ["name", "reason"],
)

PAYMENT_OPERATION_DURATION = Histogram(
    "shopbilling_payment_operation_duration_seconds",
    "Duration of bounded payment operations",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

API_ERRORS_TOTAL = Counter(
    "shopbilling_api_errors_total",
    "API errors by path, method and status code",
    ["path", "method", "status_code"],
)
