from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from outbound_events.auth import SuperAdminContext, get_current_super_admin
from outbound_events.db import supabase
from outbound_events.domain.campaign_metrics import COUNTER_COLUMNS
from outbound_events.models.campaign_metrics import CampaignInstanceMetricsResponse
from outbound_events.observability import log_event
from outbound_events.services.aggregator import instance_metrics


router = APIRouter(prefix="/api/campaign-instances", tags=["campaign-metrics"])


@router.get("/{instance_id}/metrics", response_model=CampaignInstanceMetricsResponse)
async def get_campaign_instance_metrics(
    instance_id: str,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    columns = ", ".join(("id", "status", *COUNTER_COLUMNS))
    result = supabase.table("campaign_instances").select(columns).eq("id", instance_id).execute()
    if not result.data:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign instance not found")
    metrics = instance_metrics(result.data[0])
    if metrics["delivery_exceeds_sent"]:
        # Delivery webhooks can arrive before the matching send event.
        log_event("campaign_metrics_delivery_exceeds_sent", instance_id=instance_id, **metrics["counters"])
    return metrics
