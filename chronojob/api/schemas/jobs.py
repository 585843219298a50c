from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CreateJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str = Field(min_length=1, max_length=64)
    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=4096)
    payload: dict[str, Any] = Field(default_factory=dict)
    next_run_at: datetime | None = None
    recurrence_rule: str | None = Field(default=None, max_length=128)
    max_retries: int | None = Field(default=None, ge=0, le=100)
    organisation_id: str | None = Field(default=None, max_length=36)


class JobResponse(BaseModel):
    id: str
    type: str
    name: str
    description: str | None
    organisation_id: str | None
    created_by: str | None
    payload: dict[str, Any]
    status: str
    next_run_at: datetime | None
    recurrence_rule: str | None
    last_run_at: datetime | None
    last_result_ok: bool | None
    last_result_message: str | None
    last_result: Any | None
    last_error_code: str | None
    retry_count: int
    max_retries: int
    claimed_at: datetime | None
    claimed_by: str | None
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    items: list[JobResponse]
    next_cursor: str | None


class JobRunResponse(BaseModel):
    id: int
    job_id: str
    origin: str
    claimed_by: str | None
    started_at: datetime
    finished_at: datetime
    ok: bool
    error_code: str | None
    message: str | None
    retry_count: int
    status_after: str


class JobRunListResponse(BaseModel):
    items: list[JobRunResponse]


class ExecutionResponse(BaseModel):
    job_id: str
    job_type: str
    status: str
    ok: bool
    retry_count: int
    next_run_at: datetime | None
    applied: bool
    error_code: str | None
    message: str | None
    result: Any | None
