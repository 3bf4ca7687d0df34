from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


WebhookProviderSlug = Literal["lemlist", "postmark", "phantombuster", "generic"]


class WebhookIngestResponse(BaseModel):
    status: Literal["processed", "duplicate", "orphaned"]
    provider: WebhookProviderSlug
    provider_event_id: str
    event_type: str
    event_id: str | None = None
    reason: str | None = None


class DeadLetterListItem(BaseModel):
    id: str
    provider: WebhookProviderSlug
    provider_event_id: str
    provider_key: str | None = None
    enrollment_id: str | None = None
    event_type: str | None = None
    channel: str | None = None
    status: Literal["pending", "dead_letter"]
    reason: str
    retry_count: int = 0
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    dead_lettered_at: datetime | None = None
    created_at: datetime | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class DeadLetterReplayRequest(BaseModel):
    ids: list[str] = Field(default_factory=list, max_length=500)


class DeadLetterReplayItem(BaseModel):
    id: str
    status: Literal["replayed", "duplicate", "not_found", "unresolved", "failed"]
    provider_event_id: str | None = None
    error: str | None = None


class DeadLetterReplayResponse(BaseModel):
    requested: int
    succeeded: int
    failed: int
    results: list[DeadLetterReplayItem]


class DeadLetterDiscardRequest(BaseModel):
    ids: list[str] = Field(default_factory=list, max_length=500)


class DeadLetterDiscardResponse(BaseModel):
    requested: int
    discarded: int
    not_found: int


class WebhookStatsResponse(BaseModel):
    window_hours: int
    since: datetime
    events: dict[str, dict[str, int]]
    orphans: dict[str, dict[str, int]]
    ingress: dict[str, int] = Field(default_factory=dict)
