"""Prometheus metrics for loan transitions, gateway health and default sweeps"""

from prometheus_client import Counter, Histogram

# Lifecycle metrics
transition_counter = Counter(
    "loan_transition_total",
    "Loan state transitions",
    ["from_status", "to_status"],
)

application_counter = Counter(
    "loan_application_total",
    "Loan applications by outcome",
    ["outcome"],  # accepted | rejected | error
)

disbursement_failure_counter = Counter(
    "disbursement_failure_total",
    "Disbursements that failed after a confirmed collateral lock",
)

# Gateway metrics
gateway_latency_histogram = Histogram(
    "gateway_latency_seconds",
    "Ledger gateway call latency",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_failure_counter = Counter(
    "gateway_failure_total",
    "Failed ledger gateway calls",
    ["operation"],
)

score_fetch_failures_counter = Counter(
    "score_fetch_failures_total",
    "Failed score oracle calls",
)

# Default sweeper
sweep_duration_histogram = Histogram(
    "default_sweep_duration_seconds",
    "Duration of one default sweep",
)

sweep_loans_counter = Counter(
    "default_sweep_loans_total",
    "Loans evaluated by the default sweeper",
    ["outcome"],  # defaulted | skipped | failed
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_transition(from_status: str, to_status: str) -> None:
    transition_counter.labels(from_status=from_status, to_status=to_status).inc()


def record_application(outcome: str) -> None:
    application_counter.labels(outcome=outcome).inc()
