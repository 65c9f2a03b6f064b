"""
Prometheus metrics for the meal fund escrow service.
"""

from prometheus_client import Counter, Histogram


# ── Deliveries ───────────────────────────────────────────────
delivery_transitions_total = Counter(
    "delivery_transitions_total",
    "Delivery status transitions",
    ["from_status", "to_status"],
)

delivery_transition_conflicts_total = Counter(
    "delivery_transition_conflicts_total",
    "Rejected delivery transitions (guard or lost compare-and-set)",
    ["target_status"],
)

# ── Escrow ───────────────────────────────────────────────────
escrow_transitions_total = Counter(
    "escrow_transitions_total",
    "Escrow custody state changes",
    ["from_status", "to_status"],
)

escrow_release_blocked_total = Counter(
    "escrow_release_blocked_total",
    "Release attempts held by an open dispute",
)

# ── Settlement Rail ──────────────────────────────────────────
settlement_calls_total = Counter(
    "settlement_calls_total",
    "Settlement rail calls",
    ["operation", "outcome"],
)

settlement_latency_seconds = Histogram(
    "settlement_latency_seconds",
    "Latency of settlement rail calls",
    ["operation"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)

reconciliation_items_total = Counter(
    "reconciliation_items_total",
    "Ambiguous settlement outcomes flagged for reconciliation",
    ["operation"],
)

# ── Verifications & Issues ───────────────────────────────────
verifications_total = Counter(
    "verifications_total",
    "Verification submissions by resulting payment state",
    ["payment_state"],
)

issues_reported_total = Counter(
    "issues_reported_total",
    "Issues reported",
    ["severity"],
)

# ── Urgency Scoring ──────────────────────────────────────────
urgency_scores_total = Counter(
    "urgency_scores_total",
    "School urgency scores produced",
    ["source"],
)

advisor_latency_seconds = Histogram(
    "advisor_latency_seconds",
    "Latency of AI advisor calls",
    buckets=[0.1, 0.5, 1, 2, 5, 10],
)

batch_scoring_duration_seconds = Histogram(
    "batch_scoring_duration_seconds",
    "Time to score a batch of schools",
    buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1800],
)
