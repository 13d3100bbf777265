"""Prometheus counters for lifecycle outcomes and gating rejections."""

from __future__ import annotations

from prometheus_client import Counter

ACCOUNT_OPERATIONS = Counter(
    "account_operations_total",
    "Lifecycle engine operations by outcome.",
    ["operation", "outcome"],
)

RATE_LIMIT_REJECTIONS = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the abuse mitigation layer.",
    ["scope"],
)

SANITIZED_PAYLOADS = Counter(
    "sanitized_payloads_total",
    "Request bodies that had operator-shaped keys rewritten.",
)
