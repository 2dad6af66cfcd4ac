from __future__ import annotations

from pydantic import BaseModel, Field


class PassResultModel(BaseModel):
    trigger: str
    started_at: str
    finished_at: str | None = None
    ok: bool
    cancelled: bool = False
    error: str | None = None
    desired: int = 0
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict, description="service or container -> error")


class StatusResponse(BaseModel):
    state: str = Field(..., description="idle|building-desired|fetching-actual|diffing|applying|draining|cleanup|stopped")
    passes: int
    last_pass: PassResultModel | None = None
    funnels: dict[int, str] = Field(default_factory=dict, description="public port -> protocol")


class EventModel(BaseModel):
    id: int
    ts: str
    level: str
    service_name: str | None = None
    message: str


class ReconcileResponse(BaseModel):
    queued: bool = Field(..., description="False when a pass was already pending")
