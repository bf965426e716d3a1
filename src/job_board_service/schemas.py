"""Pydantic models for the operations endpoints."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class PaymentBacklog(BaseModel):
    """Jobs parked on a processor call that has not reached a final outcome."""

    model_config = ConfigDict(extra="forbid")
    authorizations: int
    payouts: int
    refunds: int
    escalated: int


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    service: str
    version: str
    uptime_seconds: float
    started_at: str
    total_jobs: int
    jobs_by_status: dict[str, int]
    payment_backlog: PaymentBacklog
