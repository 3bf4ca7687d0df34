from __future__ import annotations

from typing import Any


class IngestionError(Exception):
    """Base class for failures raised while ingesting a provider event."""

    category = "ingestion_error"
    retryable = False

    def __init__(self, message: str, *, provider: str | None = None, reason: str | None = None):
        super().__init__(message)
        self.provider = provider
        self.reason = reason or self.category


class UnknownProviderError(IngestionError):
    category = "unknown_provider"


class SignatureVerificationError(IngestionError):
    category = "webhook_signature_invalid"


class SignatureConfigurationError(IngestionError):
    category = "webhook_signature_configuration_error"
    retryable = True


class MalformedPayloadError(IngestionError):
    category = "malformed_payload"


class CorrelationKeyConflict(IngestionError):
    category = "correlation_key_conflict"

    def __init__(self, message: str, *, provider: str, provider_key: str, existing_enrollment_id: str):
        super().__init__(message, provider=provider, reason="key_mapped_to_other_enrollment")
        self.provider_key = provider_key
        self.existing_enrollment_id = existing_enrollment_id


class EventStoreError(IngestionError):
    category = "event_store_failure"
    retryable = True


def ingestion_error_http_status(exc: IngestionError) -> int:
    if isinstance(exc, UnknownProviderError):
        return 404
    if isinstance(exc, SignatureVerificationError):
        return 401
    if isinstance(exc, MalformedPayloadError):
        return 400
    if isinstance(exc, CorrelationKeyConflict):
        return 409
    if isinstance(exc, SignatureConfigurationError):
        return 503
    return 500


def ingestion_error_detail(exc: IngestionError) -> dict[str, Any]:
    detail: dict[str, Any] = {
        "type": exc.category,
        "provider": exc.provider,
        "reason": exc.reason,
        "retryable": exc.retryable,
        "message": str(exc),
    }
    # Storage failures may carry query text; keep it server-side.
    if isinstance(exc, EventStoreError):
        detail["message"] = "Event could not be stored; retry later"
    return detail
