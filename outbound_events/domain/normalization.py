from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal


CanonicalEventType = Literal[
    "sent",
    "delivered",
    "opened",
    "clicked",
    "replied",
    "bounced",
    "unsubscribed",
    "spam_reported",
    "profile_visited",
    "connection_sent",
    "connection_accepted",
    "connection_rejected",
    "message_sent",
    "message_read",
    "message_replied",
    "voice_message_sent",
    "video_generated",
    "video_generation_failed",
    "video_viewed",
    "video_completed",
    "video_shared",
    "unknown",
]
CanonicalChannel = Literal["email", "linkedin", "video", "sms", "phone"]
EnrollmentStatus = Literal["enrolled", "active", "paused", "completed", "unsubscribed", "bounced"]
InstanceStatus = Literal["draft", "active", "paused", "completed", "failed"]

CANONICAL_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "sent",
        "delivered",
        "opened",
        "clicked",
        "replied",
        "bounced",
        "unsubscribed",
        "spam_reported",
        "profile_visited",
        "connection_sent",
        "connection_accepted",
        "connection_rejected",
        "message_sent",
        "message_read",
        "message_replied",
        "voice_message_sent",
        "video_generated",
        "video_generation_failed",
        "video_viewed",
        "video_completed",
        "video_shared",
    }
)
CANONICAL_CHANNELS: frozenset[str] = frozenset({"email", "linkedin", "video", "sms", "phone"})

_EVENT_TYPE_ALIASES = {
    "email.sent": "sent",
    "email.delivered": "delivered",
    "email.opened": "opened",
    "email.clicked": "clicked",
    "email.replied": "replied",
    "email.bounced": "bounced",
    "email.unsubscribed": "unsubscribed",
    "emailssent": "sent",
    "emailsopened": "opened",
    "emailsclicked": "clicked",
    "emailsreplied": "replied",
    "emailsbounced": "bounced",
    "emailsunsubscribed": "unsubscribed",
    "delivery": "delivered",
    "bounce": "bounced",
    "open": "opened",
    "click": "clicked",
    "reply": "replied",
    "spam": "spam_reported",
    "spamcomplaint": "spam_reported",
    "spam_complaint": "spam_reported",
    "subscriptionchange": "unsubscribed",
    "unsubscribe": "unsubscribed",
    "linkedin.profile_visited": "profile_visited",
    "linkedin.connection_sent": "connection_sent",
    "linkedin.connection_accepted": "connection_accepted",
    "linkedin.connection_rejected": "connection_rejected",
    "linkedin.message_sent": "message_sent",
    "linkedin.message_read": "message_read",
    "linkedin.message_replied": "message_replied",
    "linkedininvitedone": "connection_sent",
    "linkedininviteaccepted": "connection_accepted",
    "linkedinsent": "message_sent",
    "linkedinreplied": "message_replied",
    "linkedinvisitdone": "profile_visited",
    "linkedin.voice_message_sent": "voice_message_sent",
    "linkedinvoicenotedone": "voice_message_sent",
    "video.generated": "video_generated",
    "video.generation_failed": "video_generation_failed",
    "video.failed": "video_generation_failed",
    "video.viewed": "video_viewed",
    "video.watched": "video_viewed",
    "video.completed": "video_completed",
    "video.shared": "video_shared",
}


def normalize_event_type(value: str | None) -> CanonicalEventType:
    if not value:
        return "unknown"
    key = str(value).strip()
    lowered = key.lower()
    if lowered in CANONICAL_EVENT_TYPES:
        return lowered  # type: ignore[return-value]
    return _EVENT_TYPE_ALIASES.get(lowered, "unknown")  # type: ignore[return-value]


def normalize_channel(value: str | None) -> str:
    if not value:
        return "email"
    return str(value).strip().lower()


def normalize_timestamp(value: Any, *, received_at: datetime | None = None) -> tuple[datetime, bool]:
    """Return (timestamp, was_provided). Falls back to receipt time."""
    fallback = received_at or datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return (value if value.tzinfo else value.replace(tzinfo=timezone.utc)), True
    if isinstance(value, bool):
        return fallback, False
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc), True
        except (ValueError, OSError, OverflowError):
            return fallback, False
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return normalize_timestamp(int(text), received_at=fallback)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return fallback, False
        return (parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)), True
    return fallback, False


def compact_metadata(data: dict[str, Any] | None) -> dict[str, Any]:
    if not data:
        return {}
    return {str(key): value for key, value in data.items() if value is not None}
