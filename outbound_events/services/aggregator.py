"""Counter aggregation rules.

The increments themselves run inside the ``ingest_campaign_event`` database
function as ``total_x = total_x + n`` in the same transaction as the event
insert. This module owns which counters and enrollment statuses an event
type touches, and computes derived rates on read.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from outbound_events.domain.campaign_metrics import compute_rates, delivery_exceeds_sent, read_counters


COUNTER_INCREMENTS: dict[str, dict[str, int]] = {
    "sent": {"total_sent": 1},
    "message_sent": {"total_sent": 1},
    "delivered": {"total_delivered": 1},
    "opened": {"total_opened": 1},
    "clicked": {"total_clicked": 1},
    "replied": {"total_replied": 1},
    "message_replied": {"total_replied": 1},
}

STATUS_TRANSITIONS: dict[str, str] = {
    "bounced": "bounced",
    "unsubscribed": "unsubscribed",
    "spam_reported": "unsubscribed",
    "replied": "completed",
    "message_replied": "completed",
}

TERMINAL_ENROLLMENT_STATUSES: frozenset[str] = frozenset({"bounced", "unsubscribed"})

# Statuses a transition to the key status must not overwrite.
_PROTECTED_FROM: dict[str, tuple[str, ...]] = {
    "bounced": ("bounced", "unsubscribed"),
    "unsubscribed": ("bounced", "unsubscribed"),
    "completed": ("bounced", "unsubscribed", "completed"),
}


@dataclass(frozen=True)
class AggregationPlan:
    counter_deltas: dict[str, int] = field(default_factory=dict)
    enrollment_status: str | None = None
    protected_statuses: tuple[str, ...] = ()

    @property
    def is_noop(self) -> bool:
        return not self.counter_deltas and self.enrollment_status is None


def counter_deltas(event_type: str) -> dict[str, int]:
    return dict(COUNTER_INCREMENTS.get(event_type, {}))


def status_transition(event_type: str) -> str | None:
    return STATUS_TRANSITIONS.get(event_type)


def can_transition(current_status: str | None, target_status: str) -> bool:
    return current_status not in _PROTECTED_FROM.get(target_status, ())


def plan_for(event_type: str) -> AggregationPlan:
    target = status_transition(event_type)
    return AggregationPlan(
        counter_deltas=counter_deltas(event_type),
        enrollment_status=target,
        protected_statuses=_PROTECTED_FROM.get(target, ()) if target else (),
    )


def instance_metrics(instance: dict[str, Any]) -> dict[str, Any]:
    counters = read_counters(instance)
    return {
        "instance_id": instance["id"],
        "status": instance.get("status"),
        "counters": counters,
        "rates": compute_rates(counters),
        "delivery_exceeds_sent": delivery_exceeds_sent(counters),
    }
