from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from outbound_events.domain.normalization import normalize_timestamp
from outbound_events.observability import incr_metric, log_event
from outbound_events.providers.base import CanonicalFields, check_column_bounds
from outbound_events.providers.registry import get_provider
from outbound_events.services.correlation_index import CorrelationIndex


@dataclass
class NormalizedEvent:
    fields: CanonicalFields
    enrollment_id: str

    def to_row(self) -> dict[str, Any]:
        metadata = dict(self.fields.metadata)
        if self.fields.raw_event_type and self.fields.raw_event_type != self.fields.event_type:
            metadata["raw_event_type"] = self.fields.raw_event_type
        if not self.fields.timestamp_provided:
            metadata["timestamp_missing"] = True
        return {
            "enrollment_id": self.enrollment_id,
            "event_type": self.fields.event_type,
            "channel": self.fields.channel,
            "step_number": self.fields.step_number,
            "timestamp": self.fields.timestamp.isoformat(),
            "provider": self.fields.provider,
            "provider_event_id": self.fields.provider_event_id,
            "provider_key": self.fields.provider_key,
            "metadata": metadata,
        }


@dataclass
class NeedsCorrelation:
    fields: CanonicalFields
    reason: str = "no_matching_enrollment"


def canonical_to_payload(fields: CanonicalFields) -> dict[str, Any]:
    payload = asdict(fields)
    payload["timestamp"] = fields.timestamp.isoformat()
    return payload


def canonical_from_payload(payload: dict[str, Any]) -> CanonicalFields:
    data = dict(payload)
    timestamp = data.get("timestamp")
    if not isinstance(timestamp, datetime):
        data["timestamp"], _ = normalize_timestamp(timestamp)
    data["metadata"] = dict(data.get("metadata") or {})
    return CanonicalFields(**data)


class EventNormalizer:
    def __init__(self, correlation_index: CorrelationIndex):
        self.correlation_index = correlation_index

    def correlate(self, fields: CanonicalFields) -> NormalizedEvent | NeedsCorrelation:
        if fields.enrollment_id:
            return NormalizedEvent(fields=fields, enrollment_id=fields.enrollment_id)
        enrollment_id = self.correlation_index.lookup(fields.provider, fields.provider_key)
        if enrollment_id:
            return NormalizedEvent(fields=fields, enrollment_id=enrollment_id)
        return NeedsCorrelation(fields=fields)

    def normalize(
        self,
        provider_name: str,
        raw_payload: dict[str, Any],
        *,
        raw_body: bytes = b"",
        request_id: str | None = None,
    ) -> NormalizedEvent | NeedsCorrelation:
        provider = get_provider(provider_name)
        fields = check_column_bounds(provider.normalize(raw_payload, raw_body=raw_body))
        if fields.event_type == "unknown":
            incr_metric("webhook.events.unknown_type", provider_slug=provider.name)
            log_event(
                "webhook_unknown_event_type",
                level=logging.WARNING,
                request_id=request_id,
                provider_slug=provider.name,
                raw_event_type=fields.raw_event_type,
                provider_event_id=fields.provider_event_id,
            )
        result = self.correlate(fields)
        if isinstance(result, NeedsCorrelation):
            log_event(
                "webhook_correlation_missed",
                level=logging.WARNING,
                request_id=request_id,
                provider_slug=provider.name,
                provider_event_id=fields.provider_event_id,
                provider_key=fields.provider_key,
                event_type=fields.event_type,
            )
        return result
