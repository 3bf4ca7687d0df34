from __future__ import annotations

import hashlib
from typing import Any, Mapping

from outbound_events.domain.ingestion_errors import MalformedPayloadError, SignatureVerificationError
from outbound_events.domain.normalization import compact_metadata, normalize_event_type, normalize_timestamp
from outbound_events.domain.signatures import verify_signature
from outbound_events.providers.base import (
    CanonicalFields,
    first_present,
    nested_dict,
    optional_str,
    parse_step_number,
    require_signature_header,
)


SIGNATURE_HEADER = "X-Postmark-Signature"

_TIMESTAMP_FIELDS = ("DeliveredAt", "BouncedAt", "ReceivedAt", "ChangedAt", "RecordedAt")


class PostmarkWebhookProvider:
    """Postmark delivery/engagement webhooks. Signed as a base64 HMAC-SHA256 of the raw body."""

    name = "postmark"
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
        if not verify_signature(raw_body, signature, secret, encoding="base64"):
            raise SignatureVerificationError(
                "Postmark webhook signature verification failed",
                provider=self.name,
                reason="invalid_signature",
            )

    def _event_type(self, payload: dict[str, Any]) -> tuple[str, str | None]:
        record_type = optional_str(payload.get("RecordType"))
        if record_type == "SubscriptionChange":
            if payload.get("SuppressSending") is False:
                return "unknown", "SubscriptionChange:resubscribed"
            return "unsubscribed", record_type
        return normalize_event_type(record_type), record_type

    def _event_id(self, payload: dict[str, Any], record_type: str | None, raw_body: bytes) -> str:
        # Postmark has no per-occurrence id outside bounces; derive a stable one
        # so redeliveries of the same webhook collapse onto one key.
        message_id = optional_str(payload.get("MessageID"))
        if record_type == "Bounce" and payload.get("ID") is not None:
            return f"bounce:{payload['ID']}"
        occurred_at = optional_str(first_present(payload, *_TIMESTAMP_FIELDS))
        if message_id and record_type and occurred_at:
            return f"{message_id}:{record_type}:{occurred_at}"
        if raw_body:
            return f"sha256:{hashlib.sha256(raw_body).hexdigest()}"
        raise MalformedPayloadError(
            "Postmark payload has no derivable event identifier",
            provider=self.name,
            reason="missing_event_id",
        )

    def normalize(self, payload: dict[str, Any], *, raw_body: bytes = b"") -> CanonicalFields:
        event_type, raw_type = self._event_type(payload)
        if not raw_type:
            raise MalformedPayloadError(
                "Postmark payload is missing RecordType",
                provider=self.name,
                reason="missing_event_type",
            )
        timestamp, provided = normalize_timestamp(first_present(payload, *_TIMESTAMP_FIELDS))
        metadata = nested_dict(payload, "Metadata")
        return CanonicalFields(
            provider=self.name,
            provider_event_id=self._event_id(payload, optional_str(payload.get("RecordType")), raw_body),
            event_type=event_type,
            raw_event_type=raw_type,
            channel=self.default_channel,
            timestamp=timestamp,
            timestamp_provided=provided,
            provider_key=optional_str(payload.get("MessageID")),
            enrollment_id=optional_str(first_present(metadata, "enrollment_id", "enrollmentId")),
            step_number=parse_step_number(metadata.get("step_number"), metadata.get("stepNumber")),
            metadata=compact_metadata(
                {
                    "recipient": payload.get("Recipient") or payload.get("Email"),
                    "tag": payload.get("Tag"),
                    "message_stream": payload.get("MessageStream"),
                    "bounce_type": payload.get("Type"),
                    "description": payload.get("Description"),
                    "details": payload.get("Details"),
                    "clicked_link": payload.get("OriginalLink"),
                    "user_agent": payload.get("UserAgent"),
                }
            ),
        )
