from __future__ import annotations

from pydantic import BaseModel


class CampaignCounters(BaseModel):
    total_enrolled: int = 0
    total_sent: int = 0
    total_delivered: int = 0
    total_opened: int = 0
    total_clicked: int = 0
    total_replied: int = 0


class CampaignRates(BaseModel):
    delivery_rate: float = 0.0
    open_rate: float = 0.0
    click_through_rate: float = 0.0
    reply_rate: float = 0.0


class CampaignInstanceMetricsResponse(BaseModel):
    instance_id: str
    status: str | None = None
    counters: CampaignCounters
    rates: CampaignRates
    delivery_exceeds_sent: bool = False
