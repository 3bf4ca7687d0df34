from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Protocol

from outbound_events.domain.ingestion_errors import MalformedPayloadError, SignatureVerificationError
from outbound_events.domain.signatures import timestamp_within_tolerance


@dataclass
class CanonicalFields:
    """Provider payload mapped onto the canonical event shape, before correlation."""
    provider: str
    provider_event_id: str
    event_type: str
    raw_event_type: str | None
    channel: str
    timestamp: datetime
    timestamp_provided: bool = True
    provider_key: str | None = None
    enrollment_id: str | None = None
    step_number: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class WebhookProvider(Protocol):
    name: str
    default_channel: str

    def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        secret: str,
        *,
        tolerance_seconds: int = 0,
    ) -> None: ...

    def normalize(self, payload: dict[str, Any], *, raw_body: bytes = b"") -> CanonicalFields: ...


def header_value(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def require_signature_header(provider: str, headers: Mapping[str, str], name: str) -> str:
    value = header_value(headers, name)
    if not value:
        raise SignatureVerificationError(
            f"Missing {name} header",
            provider=provider,
            reason="missing_signature",
        )
    return value


def check_timestamp_header(
    provider: str,
    headers: Mapping[str, str],
    name: str,
    tolerance_seconds: int,
) -> None:
    raw_timestamp = header_value(headers, name)
    if raw_timestamp is None or tolerance_seconds <= 0:
        return
    if not timestamp_within_tolerance(raw_timestamp, tolerance_seconds):
        raise SignatureVerificationError(
            f"{name} is outside the accepted tolerance window",
            provider=provider,
            reason="stale_timestamp",
        )


def first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def nested_dict(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def parse_step_number(*candidates: Any) -> int | None:
    for raw in candidates:
        if raw is None:
            continue
        try:
            value = int(raw)
        except (TypeError, ValueError):
            continue
        if value >= 0:
            return value
    return None


def require_event_id(provider: str, value: Any) -> str:
    text = optional_str(value)
    if not text:
        raise MalformedPayloadError(
            "Payload has no provider event identifier",
            provider=provider,
            reason="missing_event_id",
        )
    return text


# Column widths from scripts/create_tables.py.
MAX_EVENT_ID_LENGTH = 512
MAX_PROVIDER_KEY_LENGTH = 512
MAX_ENROLLMENT_ID_LENGTH = 255
MAX_CHANNEL_LENGTH = 20
MAX_STEP_NUMBER = 2_147_483_647


def check_column_bounds(fields: CanonicalFields) -> CanonicalFields:
    """Reject values the storage columns cannot hold, so they fail as 400 rather than a retried 500."""
    limits = (
        ("provider_event_id", fields.provider_event_id, MAX_EVENT_ID_LENGTH),
        ("provider_key", fields.provider_key, MAX_PROVIDER_KEY_LENGTH),
        ("enrollment_id", fields.enrollment_id, MAX_ENROLLMENT_ID_LENGTH),
        ("channel", fields.channel, MAX_CHANNEL_LENGTH),
    )
    for name, value, limit in limits:
        if value is not None and len(value) > limit:
            raise MalformedPayloadError(
                f"{name} exceeds {limit} characters",
                provider=fields.provider,
                reason=f"{name}_too_long",
            )
    if fields.step_number is not None and fields.step_number > MAX_STEP_NUMBER:
        raise MalformedPayloadError(
            f"step_number exceeds {MAX_STEP_NUMBER}",
            provider=fields.provider,
            reason="step_number_out_of_range",
        )
    return fields
