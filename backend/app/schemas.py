from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ServiceStatus(BaseModel):
    name: str
    is_running: bool
    scheduled: bool = False
    last_run: datetime | None = None
    last_duration_ms: float | None = None
    total_runs: int = 0
    total_processed: int = 0
    error_count: int = 0
    skipped_runs: int = 0
    last_error: str | None = None


class StatusResponse(BaseModel):
    status: str = Field(description="ok when no service has recorded errors, degraded otherwise")
    services: list[ServiceStatus]


class MarketTransition(BaseModel):
    from_state: str
    to_state: str
    tx_signature: str
    source: str
    recorded_at: datetime

    model_config = {"from_attributes": True}


class MarketMirror(BaseModel):
    market_id: str
    state: str
    proposed_outcome: bool | None = None
    resolution_proposed_at: datetime | None = None
    dispute_initiated_at: datetime | None = None
    final_outcome: bool | None = None
    last_transition_at: datetime
    last_transition_tx: str | None = None
    transitions: list[MarketTransition] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class MirrorViolation(BaseModel):
    market_id: str
    reason: str
    details: dict[str, Any] = Field(default_factory=dict)


class InvariantReport(BaseModel):
    ok: bool
    violations: list[MirrorViolation]
