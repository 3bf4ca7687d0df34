from __future__ import annotations

from typing import Any, Mapping

from outbound_events.domain.ingestion_errors import SignatureVerificationError
from outbound_events.domain.normalization import compact_metadata, normalize_event_type, normalize_timestamp
from outbound_events.domain.signatures import verify_shared_token
from outbound_events.providers.base import (
    CanonicalFields,
    first_present,
    nested_dict,
    optional_str,
    parse_step_number,
    require_event_id,
    require_signature_header,
)


TOKEN_HEADER = "X-Phantombuster-Token"


class PhantombusterWebhookProvider:
    """LinkedIn automation callbacks. Authenticated with a static shared token header."""

    name = "phantombuster"
    default_channel = "linkedin"

    def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        secret: str,
        *,
        tolerance_seconds: int = 0,
    ) -> None:
        token = require_signature_header(self.name, headers, TOKEN_HEADER)
        if not verify_shared_token(token, secret):
            raise SignatureVerificationError(
                "Phantombuster webhook token verification failed",
                provider=self.name,
                reason="invalid_token",
            )

    def _raw_event_type(self, payload: dict[str, Any]) -> str | None:
        action = optional_str(first_present(payload, "event", "action", "eventType"))
        if action:
            return action
        status = optional_str(payload.get("status"))
        if status is None:
            return None
        return "action.failed" if status.lower() == "error" else "action.completed"

    def normalize(self, payload: dict[str, Any], *, raw_body: bytes = b"") -> CanonicalFields:
        raw_type = self._raw_event_type(payload)
        event_type = normalize_event_type(raw_type)
        if event_type == "unknown" and raw_type and not raw_type.lower().startswith("linkedin."):
            event_type = normalize_event_type(f"linkedin.{raw_type}")
        container_id = optional_str(first_present(payload, "containerId", "container_id"))
        explicit_id = first_present(payload, "eventId", "event_id")
        if explicit_id is None and container_id and raw_type:
            explicit_id = f"{container_id}:{raw_type}"
        timestamp, provided = normalize_timestamp(first_present(payload, "timestamp", "endedAt", "createdAt"))
        argument = nested_dict(payload, "argument") or nested_dict(payload, "metadata")
        return CanonicalFields(
            provider=self.name,
            provider_event_id=require_event_id(self.name, explicit_id),
            event_type=event_type,
            raw_event_type=raw_type,
            channel=self.default_channel,
            timestamp=timestamp,
            timestamp_provided=provided,
            provider_key=optional_str(first_present(payload, "actionId", "action_id")) or container_id,
            enrollment_id=optional_str(first_present(argument, "enrollment_id", "enrollmentId")),
            step_number=parse_step_number(argument.get("step_number"), payload.get("stepNumber")),
            metadata=compact_metadata(
                {
                    "agent_id": payload.get("agentId"),
                    "container_id": container_id,
                    "status": payload.get("status"),
                    "exit_message": payload.get("exitMessage"),
                    "profile_url": payload.get("profileUrl"),
                }
            ),
        )
