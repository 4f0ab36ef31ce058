"""Application metrics using the Prometheus client library.

This module defines all metrics in one place — a single inventory of
everything the service measures.  Other modules import specific metrics
and increment/observe them at the point of action.

WHAT WE WATCH
---------------
  Case transitions by outcome — a spike in "conflict" means officers are
  racing each other on the same cases; a spike in "invalid" means a
  client is driving the workflow out of order.

  Verification outcomes — TAMPERED is expected to be rare.  A sudden
  rise at one checkpoint is the signal for forged documents in
  circulation (or a key rotation that went wrong).

  Registry conflicts by reason — separates transactional races from
  uniqueness violations (active credential, credential number).
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Workflow engine
# ---------------------------------------------------------------------------

CASE_TRANSITIONS = Counter(
    "case_transitions_total",
    "Workflow operations by case type, operation, and outcome",
    ["case_type", "operation", "outcome"],  # outcome: ok|invalid|conflict|error
)

OPERATION_DURATION = Histogram(
    "workflow_operation_duration_seconds",
    "Workflow operation duration in seconds (including registry round-trips)",
    ["operation"],
    # Signing is microseconds; everything above ~10ms is the registry.
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)

REGISTRY_CONFLICTS = Counter(
    "registry_conflicts_total",
    "Conditional updates or inserts rejected by the registry",
    ["reason"],  # stale_status|active_credential|credential_number|assigned_number
)

# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

CREDENTIALS_ISSUED = Counter(
    "credentials_issued_total",
    "Credentials issued by type",
    ["credential_type"],
)

CREDENTIAL_STATUS_CHANGES = Counter(
    "credential_status_changes_total",
    "Credential lifecycle changes after issuance",
    ["credential_type", "status"],  # SUSPENDED|REVOKED|EXPIRED|ACTIVE (renew/reinstate)
)

VERIFICATIONS = Counter(
    "credential_verifications_total",
    "Verification requests by outcome",
    ["outcome"],  # VALID|TAMPERED|EXPIRED|REVOKED|SUSPENDED
)

# ---------------------------------------------------------------------------
# Background work
# ---------------------------------------------------------------------------

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],  # "notifications", "maintenance"
)

NOTIFICATION_FAILURES = Counter(
    "notification_enqueue_failures_total",
    "Notification events that could not be enqueued (dropped)",
)
