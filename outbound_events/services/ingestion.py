from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Literal, Mapping

from outbound_events.domain.ingestion_errors import MalformedPayloadError, SignatureConfigurationError
from outbound_events.observability import incr_metric, log_event
from outbound_events.providers.registry import get_provider, provider_secret
from outbound_events.services.correlation_index import CorrelationIndex
from outbound_events.services.event_store import EventStore
from outbound_events.services.normalizer import EventNormalizer, NeedsCorrelation
from outbound_events.services.orphan_queue import OrphanQueue, build_orphan_queue


IngestionStatus = Literal["processed", "duplicate", "orphaned"]


@dataclass
class IngestionResult:
    status: IngestionStatus
    provider: str
    provider_event_id: str
    event_type: str
    event_id: str | None = None
    reason: str | None = None


def parse_payload(provider: str, raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("Invalid JSON payload", provider=provider, reason="invalid_json") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Payload must be a JSON object", provider=provider, reason="not_an_object")
    return payload


class IngestionPipeline:
    """Verify, normalize, correlate and store (or park) one provider delivery."""

    def __init__(
        self,
        client: Any,
        *,
        signature_tolerance_seconds: int = 300,
        orphan_queue: OrphanQueue | None = None,
    ):
        self.correlation_index = CorrelationIndex(client)
        self.event_store = EventStore(client)
        self.normalizer = EventNormalizer(self.correlation_index)
        self.orphan_queue = orphan_queue or build_orphan_queue(
            client,
            event_store=self.event_store,
            correlation_index=self.correlation_index,
        )
        self.signature_tolerance_seconds = signature_tolerance_seconds

    def verify(self, provider_name: str, raw_body: bytes, headers: Mapping[str, str]) -> None:
        provider = get_provider(provider_name)
        secret = provider_secret(provider.name)
        if not secret:
            raise SignatureConfigurationError(
                f"Webhook secret for {provider.name} is not configured",
                provider=provider.name,
                reason="secret_not_configured",
            )
        provider.verify(raw_body, headers, secret, tolerance_seconds=self.signature_tolerance_seconds)

    def process(self, provider_name: str, raw_body: bytes, *, request_id: str | None = None) -> IngestionResult:
        """Runs everything after signature verification."""
        provider = get_provider(provider_name)
        payload = parse_payload(provider.name, raw_body)
        outcome = self.normalizer.normalize(provider.name, payload, raw_body=raw_body, request_id=request_id)

        if isinstance(outcome, NeedsCorrelation):
            fields = outcome.fields
            parked = self.orphan_queue.park(fields, reason=outcome.reason, request_id=request_id)
            return IngestionResult(
                status="orphaned",
                provider=fields.provider,
                provider_event_id=fields.provider_event_id,
                event_type=fields.event_type,
                reason=outcome.reason if parked == "parked" else "already_parked",
            )

        fields = outcome.fields
        stored = self.event_store.store_if_new(outcome, request_id=request_id)
        if stored.outcome == "enrollment_not_found":
            # The enrollment may not be committed yet; the sweep retries it.
            parked = self.orphan_queue.park(
                fields,
                reason="enrollment_not_found",
                enrollment_id=outcome.enrollment_id,
                request_id=request_id,
            )
            return IngestionResult(
                status="orphaned",
                provider=fields.provider,
                provider_event_id=fields.provider_event_id,
                event_type=fields.event_type,
                reason="enrollment_not_found" if parked == "parked" else "already_parked",
            )

        event_id = (stored.event or {}).get("id")
        if stored.outcome == "duplicate":
            incr_metric("webhook.events.duplicate", provider_slug=fields.provider)
            log_event(
                "webhook_duplicate_ignored",
                request_id=request_id,
                provider_slug=fields.provider,
                provider_event_id=fields.provider_event_id,
                event_type=fields.event_type,
            )
            return IngestionResult(
                status="duplicate",
                provider=fields.provider,
                provider_event_id=fields.provider_event_id,
                event_type=fields.event_type,
                event_id=event_id,
            )

        return IngestionResult(
            status="processed",
            provider=fields.provider,
            provider_event_id=fields.provider_event_id,
            event_type=fields.event_type,
            event_id=event_id,
        )

    def ingest(
        self,
        provider_name: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        *,
        request_id: str | None = None,
    ) -> IngestionResult:
        self.verify(provider_name, raw_body, headers)
        result = self.process(provider_name, raw_body, request_id=request_id)
        if result.status == "orphaned":
            log_event(
                "webhook_orphaned",
                level=logging.WARNING,
                request_id=request_id,
                provider_slug=result.provider,
                provider_event_id=result.provider_event_id,
                reason=result.reason,
            )
        return result
