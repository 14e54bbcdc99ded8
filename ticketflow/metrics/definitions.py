"""Metrics emitted by the ticket workflow service."""
from __future__ import annotations

from typing import Tuple

TICKET_TRANSITIONS = "ticket_transitions_total"
TICKET_CONFLICTS = "ticket_conflicts_total"
ENGINE_CALLS = "engine_calls_total"
ENGINE_CALL_DURATION = "engine_call_duration_seconds"
ENGINE_CALLBACKS = "engine_callbacks_total"

# (name, kind, description, label names)
DEFAULT_METRIC_DEFINITIONS: Tuple[Tuple[str, str, str, Tuple[str, ...]], ...] = (
    (TICKET_TRANSITIONS, "counter", "Ticket status transitions persisted, by event.", ("event",)),
    (TICKET_CONFLICTS, "counter", "Writes rejected by the optimistic concurrency check.", ("operation",)),
    (ENGINE_CALLS, "counter", "Process engine calls by operation and outcome.", ("operation", "outcome")),
    (
        ENGINE_CALL_DURATION,
        "distribution",
        "Duration of individual process engine calls in seconds.",
        ("operation",),
    ),
    (ENGINE_CALLBACKS, "counter", "Engine notifications handled, by outcome.", ("outcome",)),
)
