from __future__ import annotations

import hmac

from fastapi import APIRouter, Header, HTTPException, Request, status

from outbound_events.config import settings
from outbound_events.db import supabase
from outbound_events.domain.ingestion_errors import (
    CorrelationKeyConflict,
    ingestion_error_detail,
)
from outbound_events.models.internal_events import (
    CorrelationKeyRequest,
    CorrelationKeyResponse,
    OrphanSweepResponse,
)
from outbound_events.observability import configured_export, incr_metric, log_event, persist_metrics_snapshot
from outbound_events.services.correlation_index import CorrelationIndex
from outbound_events.services.orphan_queue import build_orphan_queue


router = APIRouter(prefix="/api/internal", tags=["internal-events"])


def _require_scheduler_secret(provided: str | None, *, request_id: str | None, scope: str) -> None:
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not provided or not hmac.compare_digest(provided, configured_secret):
        incr_metric(f"{scope}.auth_failed")
        log_event(f"{scope}_auth_failed", request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )


@router.post(
    "/correlation-keys",
    response_model=CorrelationKeyResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_correlation_key(
    data: CorrelationKeyRequest,
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
):
    request_id = getattr(request.state, "request_id", None)
    _require_scheduler_secret(x_internal_scheduler_secret, request_id=request_id, scope="correlation_keys")
    try:
        recorded = CorrelationIndex(supabase).record_outbound_key(
            data.enrollment_id,
            data.provider,
            data.provider_key,
            request_id=request_id,
        )
    except CorrelationKeyConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=ingestion_error_detail(exc)) from exc
    return CorrelationKeyResponse(
        status="recorded" if recorded else "already_recorded",
        enrollment_id=data.enrollment_id,
        provider=data.provider,
        provider_key=data.provider_key,
    )


@router.post("/orphans/sweep", response_model=OrphanSweepResponse)
def sweep_orphans(
    request: Request,
    x_internal_scheduler_secret: str | None = Header(default=None),
):
    request_id = getattr(request.state, "request_id", None)
    _require_scheduler_secret(x_internal_scheduler_secret, request_id=request_id, scope="orphan_sweep")
    result = build_orphan_queue(supabase).sweep(request_id=request_id)
    persist_metrics_snapshot(
        supabase_client=supabase,
        source="orphan_sweep",
        request_id=request_id,
        reset_after_persist=False,
        export=configured_export(),
    )
    return result.as_dict()
