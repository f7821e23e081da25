"""Prometheus metrics for sessions, order transitions and device dispatch."""

from prometheus_client import Counter, Histogram

DEVICE_DISPATCHES = Counter(
    "mesflow_device_dispatches_total",
    "Device Gateway dispatches by action type and outcome",
    ["action_type", "outcome"],
)

DEVICE_DISPATCH_SECONDS = Histogram(
    "mesflow_device_dispatch_seconds",
    "Wall time spent waiting on the Device Gateway",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

ACTION_EXECUTIONS = Counter(
    "mesflow_action_executions_total",
    "Logged action attempts by action type and status",
    ["action_type", "status"],
)

SESSION_EVENTS = Counter(
    "mesflow_session_events_total",
    "Workstation session lifecycle events",
    ["event"],
)

ORDER_TRANSITIONS = Counter(
    "mesflow_order_transitions_total",
    "Order status transitions by target status",
    ["to_status"],
)
