"""
Prometheus metrics: orders placed, status transitions, delivery claims, notifications.
"""
from prometheus_client import Counter, Gauge, generate_latest

# Checkout
orders_placed_total = Counter(
    "orders_placed_total",
    "Total orders created",
    ["delivery_mode"],
)

# State machine outcomes
order_transitions_total = Counter(
    "order_transitions_total",
    "Total applied status changes",
    ["field", "to_state"],
)
transitions_rejected_total = Counter(
    "transitions_rejected_total",
    "Total transition requests rejected by the state machine",
    ["reason"],
)

# Assignment race: success | already_assigned | driver_unavailable | conflict
delivery_claims_total = Counter(
    "delivery_claims_total",
    "Total delivery accept attempts by outcome",
    ["outcome"],
)

# Best-effort notifications
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Total notifications handed to the notifier",
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Total notifications the notifier failed to deliver (logged, not retried)",
)
notifications_pending = Gauge(
    "notifications_pending",
    "Notification tasks scheduled but not finished",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
