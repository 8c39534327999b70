"""Prometheus metric definitions for ticket relay self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

REQUEST_DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0)
TRACKER_DURATION_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 15.0)
COMMAND_DURATION_BUCKETS = (0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 20.0, 30.0)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

REQUEST_DURATION = Histogram(
    "ticket_relay_request_duration_seconds",
    "HTTP request duration in seconds",
    labelnames=["endpoint"],
    buckets=REQUEST_DURATION_BUCKETS,
)

REQUESTS_TOTAL = Counter(
    "ticket_relay_requests_total",
    "Total number of HTTP requests",
    labelnames=["endpoint", "status"],
)

# ---------------------------------------------------------------------------
# Command pipeline metrics
# ---------------------------------------------------------------------------

COMMANDS_TOTAL = Counter(
    "ticket_relay_commands_total",
    "Chat commands handled, by action and outcome",
    labelnames=["action", "outcome"],
)

COMMAND_DURATION = Histogram(
    "ticket_relay_command_duration_seconds",
    "Time from mention to final reply in seconds",
    buckets=COMMAND_DURATION_BUCKETS,
)

TRACKER_CALL_DURATION = Histogram(
    "ticket_relay_tracker_call_duration_seconds",
    "Duration of Linear GraphQL calls in seconds",
    labelnames=["operation"],
    buckets=TRACKER_DURATION_BUCKETS,
)

TRACKER_CALLS_TOTAL = Counter(
    "ticket_relay_tracker_calls_total",
    "Total number of Linear GraphQL calls",
    labelnames=["operation", "status"],
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "ticket_relay_webhook_events_total",
    "Webhook events by kind and outcome (notified, duplicate, unknown_issue, dropped)",
    labelnames=["kind", "outcome"],
)

# ---------------------------------------------------------------------------
# LLM metrics (populated by callback handler)
# ---------------------------------------------------------------------------

LLM_CALLS_TOTAL = Counter(
    "ticket_relay_llm_calls_total",
    "Total number of LLM calls",
    labelnames=["status"],
)

LLM_TOKEN_USAGE = Counter(
    "ticket_relay_llm_token_usage",
    "Total LLM token usage",
    labelnames=["type"],
)

LLM_ESTIMATED_COST = Counter(
    "ticket_relay_llm_estimated_cost_dollars",
    "Estimated cumulative LLM cost in USD",
)

# ---------------------------------------------------------------------------
# Health / info metrics
# ---------------------------------------------------------------------------

COMPONENT_HEALTHY = Gauge(
    "ticket_relay_component_healthy",
    "Whether a dependency component is healthy (1=healthy, 0=unhealthy)",
    labelnames=["component"],
)

APP_INFO = Info(
    "ticket_relay",
    "Ticket relay build information",
)

# ---------------------------------------------------------------------------
# Cost pricing (USD per token) — GPT-4o-mini as default
# ---------------------------------------------------------------------------

COST_PER_TOKEN: dict[str, dict[str, float]] = {
    "gpt-4o-mini": {"prompt": 0.15 / 1_000_000, "completion": 0.60 / 1_000_000},
    "gpt-4o": {"prompt": 2.50 / 1_000_000, "completion": 10.00 / 1_000_000},
    "claude-sonnet": {"prompt": 3.00 / 1_000_000, "completion": 15.00 / 1_000_000},
    "claude-haiku": {"prompt": 1.00 / 1_000_000, "completion": 5.00 / 1_000_000},
}
DEFAULT_COST_PER_TOKEN: dict[str, float] = {"prompt": 2.50 / 1_000_000, "completion": 10.00 / 1_000_000}
