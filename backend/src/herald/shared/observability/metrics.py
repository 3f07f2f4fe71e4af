"""Prometheus metrics for the notification engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


# ── HTTP metrics ─────────────────────────────────────────────
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Notification metrics ─────────────────────────────────────
NOTIFICATIONS_TOTAL = Counter(
    "notifications_total",
    "Notifications by channel and lifecycle status reached",
    ["channel", "status"],
)

DELIVERY_FAILURES = Counter(
    "notification_terminal_failures_total",
    "Notifications that failed after exhausting retries",
    ["channel"],
)

DELIVERY_LATENCY = Histogram(
    "notification_delivery_latency_seconds",
    "Time from creation to provider acceptance",
    ["channel"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0, 60.0, 300.0, 1800.0),
)

QUEUE_DEPTH = Gauge(
    "delivery_queue_depth",
    "Notifications waiting in the delivery queue",
)

# ── Provider metrics ─────────────────────────────────────────
PROVIDER_ATTEMPTS = Counter(
    "provider_attempts_total",
    "Provider attempts by outcome",
    ["channel", "provider", "outcome"],
)

CIRCUIT_TRANSITIONS = Counter(
    "circuit_breaker_transitions_total",
    "Circuit breaker state transitions",
    ["channel", "provider", "state"],
)

# ── Admission metrics ────────────────────────────────────────
RATE_LIMIT_REJECTIONS = Counter(
    "rate_limit_rejections_total",
    "Admissions rejected by the rate limiter",
    ["scope"],
)

BUDGET_REJECTIONS = Counter(
    "budget_rejections_total",
    "Admissions rejected by the budget enforcer",
)

WEBHOOK_CALLBACKS = Counter(
    "webhook_callbacks_total",
    "Gateway delivery callbacks by family and result",
    ["family", "result"],
)
