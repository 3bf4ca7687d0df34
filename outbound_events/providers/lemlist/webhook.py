from __future__ import annotations

from typing import Any, Mapping

from outbound_events.domain.ingestion_errors import SignatureVerificationError
from outbound_events.domain.normalization import compact_metadata, normalize_event_type, normalize_timestamp
from outbound_events.domain.signatures import verify_signature
from outbound_events.providers.base import (
    CanonicalFields,
    first_present,
    nested_dict,
    optional_str,
    parse_step_number,
    require_event_id,
    require_signature_header,
)


SIGNATURE_HEADER = "X-Lemlist-Signature"


class LemlistWebhookProvider:
    """Lemlist activity webhooks. Signed as ``sha256=<hex hmac>`` over the raw body."""

    name = "lemlist"
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
        if not signature.lower().startswith("sha256="):
            raise SignatureVerificationError(
                "Unsupported Lemlist signature algorithm",
                provider=self.name,
                reason="unsupported_algorithm",
            )
        if not verify_signature(raw_body, signature, secret, prefix="sha256="):
            raise SignatureVerificationError(
                "Lemlist webhook signature verification failed",
                provider=self.name,
                reason="invalid_signature",
            )

    def normalize(self, payload: dict[str, Any], *, raw_body: bytes = b"") -> CanonicalFields:
        raw_type = optional_str(first_present(payload, "type", "event"))
        channel = "linkedin" if raw_type and raw_type.lower().startswith("linkedin") else self.default_channel
        timestamp, provided = normalize_timestamp(first_present(payload, "createdAt", "date", "timestamp"))
        custom = nested_dict(payload, "metaData") or nested_dict(payload, "metadata")
        return CanonicalFields(
            provider=self.name,
            provider_event_id=require_event_id(self.name, first_present(payload, "_id", "id", "activityId")),
            event_type=normalize_event_type(raw_type),
            raw_event_type=raw_type,
            channel=channel,
            timestamp=timestamp,
            timestamp_provided=provided,
            provider_key=optional_str(first_present(payload, "emailId", "messageId", "leadId")),
            enrollment_id=optional_str(
                first_present(custom, "enrollment_id", "enrollmentId") or payload.get("enrollmentId")
            ),
            step_number=parse_step_number(payload.get("sequenceStep"), payload.get("stepNumber")),
            metadata=compact_metadata(
                {
                    "campaign_id": payload.get("campaignId"),
                    "lead_id": payload.get("leadId"),
                    "sequence_id": payload.get("sequenceId"),
                    "email": payload.get("leadEmail") or payload.get("email"),
                    "link": payload.get("url") or payload.get("link"),
                    "bounce_reason": payload.get("errorMessage"),
                }
            ),
        )
