from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from outbound_events.domain.ingestion_errors import EventStoreError
from outbound_events.observability import incr_metric, log_event
from outbound_events.services.aggregator import plan_for
from outbound_events.services.correlation_index import is_unique_violation
from outbound_events.services.normalizer import NormalizedEvent


EVENTS_TABLE = "campaign_events"
INGEST_FUNCTION = "ingest_campaign_event"

StoreOutcome = Literal["created", "duplicate", "enrollment_not_found"]


@dataclass
class StoreResult:
    outcome: StoreOutcome
    event: dict[str, Any] | None = None
    instance_id: str | None = None

    @property
    def created(self) -> bool:
        return self.outcome == "created"


class EventStore:
    """Idempotent insert of canonical events keyed on (provider, provider_event_id).

    Insert, counter increments, enrollment status transition and orphan
    removal happen in one database transaction inside ``ingest_campaign_event``.
    Uniqueness is enforced by the table constraint, so concurrent deliveries
    of the same event resolve to exactly one row.
    """

    def __init__(self, client: Any):
        self.client = client

    def get_event(self, provider: str, provider_event_id: str) -> dict[str, Any] | None:
        result = (
            self.client.table(EVENTS_TABLE)
            .select("*")
            .eq("provider", provider)
            .eq("provider_event_id", provider_event_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return result.data[0]

    def list_events_for_enrollment(self, enrollment_id: str) -> list[dict[str, Any]]:
        result = (
            self.client.table(EVENTS_TABLE)
            .select("*")
            .eq("enrollment_id", enrollment_id)
            .order("timestamp", desc=True)
            .execute()
        )
        return result.data or []

    def _duplicate(self, row: dict[str, Any]) -> StoreResult:
        existing = self.get_event(row["provider"], row["provider_event_id"])
        return StoreResult(outcome="duplicate", event=existing)

    def store_if_new(
        self,
        event: NormalizedEvent,
        *,
        orphan_id: str | None = None,
        request_id: str | None = None,
    ) -> StoreResult:
        row = event.to_row()
        plan = plan_for(row["event_type"])
        params = {
            "p_event": row,
            "p_counter_deltas": plan.counter_deltas,
            "p_enrollment_status": plan.enrollment_status,
            "p_protected_statuses": list(plan.protected_statuses),
            "p_orphan_id": orphan_id,
        }
        try:
            response = self.client.rpc(INGEST_FUNCTION, params).execute()
        except Exception as exc:
            if is_unique_violation(exc):
                incr_metric("events.store.duplicate", provider_slug=row["provider"])
                return self._duplicate(row)
            incr_metric("events.store.failed", provider_slug=row["provider"])
            log_event(
                "event_store_failed",
                level=logging.ERROR,
                request_id=request_id,
                provider_slug=row["provider"],
                provider_event_id=row["provider_event_id"],
                error=str(exc),
            )
            raise EventStoreError(
                f"Failed to store event: {exc}",
                provider=row["provider"],
                reason="storage_failure",
            ) from exc

        data = response.data
        if isinstance(data, list):
            data = data[0] if data else {}
        data = data or {}
        outcome = data.get("outcome")

        if outcome == "created":
            incr_metric("events.store.created", provider_slug=row["provider"], event_type=row["event_type"])
            log_event(
                "event_stored",
                request_id=request_id,
                provider_slug=row["provider"],
                provider_event_id=row["provider_event_id"],
                event_type=row["event_type"],
                enrollment_id=row["enrollment_id"],
                instance_id=data.get("instance_id"),
                counter_deltas=plan.counter_deltas,
                enrollment_status=plan.enrollment_status,
            )
            stored = dict(row)
            stored["id"] = data.get("event_id")
            return StoreResult(outcome="created", event=stored, instance_id=data.get("instance_id"))
        if outcome == "duplicate":
            incr_metric("events.store.duplicate", provider_slug=row["provider"])
            return self._duplicate(row)
        if outcome == "enrollment_not_found":
            incr_metric("events.store.enrollment_missing", provider_slug=row["provider"])
            return StoreResult(outcome="enrollment_not_found")

        raise EventStoreError(
            f"Unexpected response from {INGEST_FUNCTION}: {data!r}",
            provider=row["provider"],
            reason="unexpected_response",
        )
