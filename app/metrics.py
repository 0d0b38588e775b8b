from prometheus_client import Counter, Histogram

STORE_PIN_CALLS = Counter(
    "content_store_pin_calls_total",
    "Physical pin/unpin calls issued to the content store",
    ["operation", "outcome"],
)
ACCESS_DECISIONS = Counter(
    "billing_access_decisions_total",
    "Billing access-check evaluations",
    ["state", "allowed"],
)
PAYMENT_TRANSITIONS = Counter(
    "payment_order_transitions_total",
    "Payment order status transitions applied",
    ["status", "source"],
)
TRASH_SWEEP_DELETED = Counter(
    "trash_sweep_deleted_total",
    "Items permanently deleted by the trash expiry sweep",
    ["kind"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def observe_store_call(operation: str, outcome: str) -> None:
    STORE_PIN_CALLS.labels(operation=operation, outcome=outcome).inc()
