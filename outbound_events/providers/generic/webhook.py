from __future__ import annotations

from typing import Any, Mapping

from outbound_events.domain.ingestion_errors import MalformedPayloadError, SignatureVerificationError
from outbound_events.domain.normalization import (
    compact_metadata,
    normalize_channel,
    normalize_event_type,
    normalize_timestamp,
)
from outbound_events.domain.signatures import verify_signature
from outbound_events.providers.base import (
    CanonicalFields,
    check_timestamp_header,
    first_present,
    nested_dict,
    optional_str,
    parse_step_number,
    require_event_id,
    require_signature_header,
)


SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


class GenericWebhookProvider:
    """Senders that post the canonical shape directly, signed with a hex HMAC-SHA256.

    Expected body::

        {"event_id": "...", "event_type": "delivered", "channel": "email",
         "timestamp": "...", "message_id": "...", "enrollment_id": null,
         "step_number": 1, "data": {...}}

    A ``sha256=`` prefix on the signature is accepted. When the sender includes
    ``X-Webhook-Timestamp`` it must fall inside the configured tolerance.
    """

    name = "generic"
    default_channel = "email"

    def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        secret: str,
        *,
        tolerance_seconds: int = 0,
    ) -> None:
        signature = require_signature_header(self.name, headers, SIGNATURE_HEADER)
        check_timestamp_header(self.name, headers, TIMESTAMP_HEADER, tolerance_seconds)
        prefix = "sha256=" if signature.lower().startswith("sha256=") else None
        if not verify_signature(raw_body, signature, secret, prefix=prefix):
            raise SignatureVerificationError(
                "Webhook signature verification failed",
                provider=self.name,
                reason="invalid_signature",
            )

    def normalize(self, payload: dict[str, Any], *, raw_body: bytes = b"") -> CanonicalFields:
        raw_type = optional_str(first_present(payload, "event_type", "event", "type"))
        if not raw_type:
            raise MalformedPayloadError(
                "Payload is missing event_type",
                provider=self.name,
                reason="missing_event_type",
            )
        timestamp, provided = normalize_timestamp(first_present(payload, "timestamp", "occurred_at"))
        data = nested_dict(payload, "data")
        return CanonicalFields(
            provider=self.name,
            provider_event_id=require_event_id(self.name, first_present(payload, "event_id", "id")),
            event_type=normalize_event_type(raw_type),
            raw_event_type=raw_type,
            channel=normalize_channel(payload.get("channel") or self.default_channel),
            timestamp=timestamp,
            timestamp_provided=provided,
            provider_key=optional_str(first_present(payload, "message_id", "action_id", "provider_key")),
            enrollment_id=optional_str(payload.get("enrollment_id")),
            step_number=parse_step_number(payload.get("step_number")),
            metadata=compact_metadata(data),
        )
