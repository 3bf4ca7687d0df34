from __future__ import annotations

from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status

from outbound_events.auth import SuperAdminContext, get_current_super_admin
from outbound_events.config import settings
from outbound_events.db import supabase
from outbound_events.models.webhooks import (
    DeadLetterDiscardRequest,
    DeadLetterDiscardResponse,
    DeadLetterListItem,
    DeadLetterReplayRequest,
    DeadLetterReplayResponse,
    WebhookStatsResponse,
)
from outbound_events.observability import (
    configured_export,
    incr_metric,
    log_event,
    persist_metrics_snapshot,
    sum_metrics,
)
from outbound_events.providers.registry import PROVIDERS
from outbound_events.services.orphan_queue import OrphanQueue, build_orphan_queue


router = APIRouter(prefix="/api/webhooks", tags=["dead-letters"])
_MAX_WINDOW_DAYS = 93
_INGRESS_COUNTERS = ("received", "processed", "duplicate", "orphaned", "failed", "timeout")


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _queue() -> OrphanQueue:
    return build_orphan_queue(supabase)


def _validate_ids(ids: list[str]) -> list[str]:
    cleaned = [value.strip() for value in ids if value and value.strip()]
    if not cleaned:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="ids cannot be empty")
    max_events = settings.dead_letter_replay_max_events
    if len(cleaned) > max_events:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Requested count exceeds max events per run ({max_events})",
        )
    return cleaned


def _persist_snapshot(*, source: str, request_id: str | None) -> None:
    persist_metrics_snapshot(
        supabase_client=supabase,
        source=source,
        request_id=request_id,
        reset_after_persist=False,
        export=configured_export(),
    )


@router.get("/dead-letters", response_model=list[DeadLetterListItem])
async def list_dead_letters(
    provider: str | None = None,
    reason: str | None = None,
    from_ts: datetime | None = None,
    to_ts: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    if provider and provider not in PROVIDERS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported provider")
    if from_ts and to_ts and from_ts > to_ts:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"type": "invalid_filter", "message": "from_ts must be before or equal to to_ts"},
        )
    if from_ts and to_ts and (to_ts - from_ts).days > _MAX_WINDOW_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"type": "invalid_filter", "message": f"date range exceeds {_MAX_WINDOW_DAYS} days"},
        )
    rows = _queue().list_dead_lettered(
        provider=provider,
        reason=reason,
        from_ts=from_ts,
        to_ts=to_ts,
        limit=limit,
        offset=offset,
    )
    log_event(
        "dead_letters_listed",
        provider_slug=provider,
        reason=reason,
        returned=len(rows),
    )
    return rows


@router.post("/dead-letters/replay", response_model=DeadLetterReplayResponse)
async def replay_dead_letters(
    data: DeadLetterReplayRequest,
    request: Request,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    ids = _validate_ids(data.ids)
    req_id = _request_id(request)
    incr_metric("dead_letters.replay.requested", value=len(ids))
    log_event(
        "dead_letter_replay_started",
        request_id=req_id,
        requested=len(ids),
        super_admin_id=ctx.super_admin_id,
    )
    result = _queue().replay(ids, request_id=req_id)
    _persist_snapshot(source="dead_letter_replay", request_id=req_id)
    return DeadLetterReplayResponse(
        requested=result.requested,
        succeeded=result.succeeded,
        failed=result.failed,
        results=[asdict(item) for item in result.results],
    )


@router.post("/dead-letters/discard", response_model=DeadLetterDiscardResponse)
async def discard_dead_letters(
    data: DeadLetterDiscardRequest,
    request: Request,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    ids = _validate_ids(data.ids)
    req_id = _request_id(request)
    log_event(
        "dead_letter_discard_started",
        request_id=req_id,
        requested=len(ids),
        super_admin_id=ctx.super_admin_id,
    )
    return _queue().discard(ids, request_id=req_id)


@router.get("/stats", response_model=WebhookStatsResponse)
async def webhook_stats(
    window_hours: int = 24,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    if window_hours < 1 or window_hours > 24 * _MAX_WINDOW_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"type": "invalid_filter", "message": "window_hours is out of range"},
        )
    stats = _queue().stats(window_hours=window_hours)
    # Process-local counters since the last snapshot reset.
    stats["ingress"] = {name: sum_metrics(f"webhook.events.{name}") for name in _INGRESS_COUNTERS}
    stats["ingress"]["rate_limited"] = sum_metrics("webhook.rate_limited")
    return stats
