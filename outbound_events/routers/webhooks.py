from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from outbound_events.config import settings
from outbound_events.db import supabase
from outbound_events.domain.ingestion_errors import (
    EventStoreError,
    IngestionError,
    ingestion_error_detail,
    ingestion_error_http_status,
)
from outbound_events.models.webhooks import WebhookIngestResponse
from outbound_events.observability import incr_metric, log_event
from outbound_events.rate_limit import enforce_webhook_rate_limit
from outbound_events.services.ingestion import IngestionPipeline


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _pipeline() -> IngestionPipeline:
    return IngestionPipeline(
        supabase,
        signature_tolerance_seconds=settings.webhook_signature_tolerance_seconds,
    )


def _ingestion_http_error(exc: IngestionError, *, request_id: str | None) -> HTTPException:
    detail = ingestion_error_detail(exc)
    if isinstance(exc, EventStoreError):
        detail["request_id"] = request_id
    return HTTPException(status_code=ingestion_error_http_status(exc), detail=detail)


@router.post(
    "/{provider}",
    response_model=WebhookIngestResponse,
    dependencies=[Depends(enforce_webhook_rate_limit)],
)
async def ingest_webhook(provider: str, request: Request, response: Response):
    req_id = _request_id(request)
    slug = provider.strip().lower()
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug=slug)
    pipeline = _pipeline()

    try:
        pipeline.verify(slug, raw_body, request.headers)
    except IngestionError as exc:
        incr_metric("webhook.verification.failed", provider_slug=slug, reason=exc.reason)
        log_event(
            "webhook_verification_failed",
            level=logging.WARNING,
            request_id=req_id,
            provider_slug=slug,
            reason=exc.reason,
            error_type=exc.category,
        )
        raise _ingestion_http_error(exc, request_id=req_id) from exc

    timeout_seconds = settings.webhook_processing_timeout_seconds
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(pipeline.process, slug, raw_body, request_id=req_id),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        incr_metric("webhook.events.timeout", provider_slug=slug)
        log_event(
            "webhook_processing_timeout",
            level=logging.ERROR,
            request_id=req_id,
            provider_slug=slug,
            timeout_seconds=timeout_seconds,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "type": "processing_timeout",
                "provider": slug,
                "message": "Webhook processing timed out; retry later",
                "request_id": req_id,
            },
        ) from exc
    except IngestionError as exc:
        incr_metric("webhook.events.failed", provider_slug=slug, reason=exc.reason)
        log_event(
            "webhook_failed",
            level=logging.ERROR if exc.retryable else logging.WARNING,
            request_id=req_id,
            provider_slug=slug,
            reason=exc.reason,
            error_type=exc.category,
            error=str(exc),
        )
        raise _ingestion_http_error(exc, request_id=req_id) from exc
    except Exception as exc:
        incr_metric("webhook.events.failed", provider_slug=slug, reason="unexpected")
        log_event(
            "webhook_failed",
            level=logging.ERROR,
            request_id=req_id,
            provider_slug=slug,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "type": "internal_error",
                "provider": slug,
                "message": "Webhook could not be processed",
                "request_id": req_id,
            },
        ) from exc

    if result.status == "orphaned":
        response.status_code = status.HTTP_202_ACCEPTED
        incr_metric("webhook.events.orphaned", provider_slug=slug)
    elif result.status == "processed":
        incr_metric("webhook.events.processed", provider_slug=slug)
        log_event(
            "webhook_processed",
            request_id=req_id,
            provider_slug=slug,
            provider_event_id=result.provider_event_id,
            event_type=result.event_type,
            event_id=result.event_id,
        )

    return WebhookIngestResponse(
        status=result.status,
        provider=result.provider,
        provider_event_id=result.provider_event_id,
        event_type=result.event_type,
        event_id=result.event_id,
        reason=result.reason,
    )
