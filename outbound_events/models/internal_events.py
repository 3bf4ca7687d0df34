from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class CorrelationKeyRequest(BaseModel):
    enrollment_id: str = Field(min_length=1)
    provider: Literal["lemlist", "postmark", "phantombuster", "generic"]
    provider_key: str = Field(min_length=1, max_length=512)


class CorrelationKeyResponse(BaseModel):
    status: Literal["recorded", "already_recorded"]
    enrollment_id: str
    provider: str
    provider_key: str


class OrphanSweepResponse(BaseModel):
    candidates: int
    resolved: int
    duplicates: int
    retried: int
    dead_lettered: int
    failed: int
    timed_out: int
    skipped: int
