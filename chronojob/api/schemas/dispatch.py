from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class DispatchErrorResponse(BaseModel):
    job_id: str
    job_type: str
    status: str
    error_code: str | None
    message: str | None
    retry_count: int


class DispatchSummaryResponse(BaseModel):
    started_at: datetime
    finished_at: datetime | None
    attempted: int
    succeeded: int
    failed: int
    skipped: int
    recovered: int
    errors: list[DispatchErrorResponse]
