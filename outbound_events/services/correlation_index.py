from __future__ import annotations

import logging
from typing import Any

from outbound_events.domain.ingestion_errors import CorrelationKeyConflict
from outbound_events.observability import incr_metric, log_event


TABLE = "enrollment_correlation_keys"


def is_unique_violation(exc: Exception) -> bool:
    # PostgREST surfaces 23505 unique violations as API errors with this text.
    text = str(exc).lower()
    return "duplicate" in text or "unique" in text or "23505" in text


class CorrelationIndex:
    """Maps provider-assigned message/action ids back to the enrollment that sent them."""

    def __init__(self, client: Any):
        self.client = client

    def record_outbound_key(
        self,
        enrollment_id: str,
        provider: str,
        provider_key: str,
        *,
        request_id: str | None = None,
    ) -> bool:
        """Register a key captured at send time. Returns False if it was already recorded."""
        provider = provider.strip().lower()
        try:
            self.client.table(TABLE).insert(
                {
                    "enrollment_id": enrollment_id,
                    "provider": provider,
                    "provider_key": provider_key,
                }
            ).execute()
        except Exception as exc:
            if not is_unique_violation(exc):
                raise
            existing = self.lookup(provider, provider_key)
            if existing is not None and existing != enrollment_id:
                incr_metric("correlation.key.conflict", provider=provider)
                log_event(
                    "correlation_key_conflict",
                    level=logging.WARNING,
                    request_id=request_id,
                    provider=provider,
                    provider_key=provider_key,
                    enrollment_id=enrollment_id,
                    existing_enrollment_id=existing,
                )
                raise CorrelationKeyConflict(
                    "Correlation key is already mapped to a different enrollment",
                    provider=provider,
                    provider_key=provider_key,
                    existing_enrollment_id=existing,
                ) from exc
            incr_metric("correlation.key.already_recorded", provider=provider)
            return False

        incr_metric("correlation.key.recorded", provider=provider)
        log_event(
            "correlation_key_recorded",
            request_id=request_id,
            provider=provider,
            provider_key=provider_key,
            enrollment_id=enrollment_id,
        )
        return True

    def lookup(self, provider: str, provider_key: str | None) -> str | None:
        if not provider_key:
            return None
        result = (
            self.client.table(TABLE)
            .select("enrollment_id")
            .eq("provider", provider.strip().lower())
            .eq("provider_key", provider_key)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return result.data[0]["enrollment_id"]
