from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from chronojob.db.models import JobStatus, RunOrigin


@dataclass(slots=True)
class JobSnapshot:
    id: str
    type: str
    name: str
    description: str | None
    organisation_id: str | None
    created_by: str | None
    payload: dict[str, Any]
    status: JobStatus
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
    claim_token: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence_rule)


@dataclass(slots=True)
class JobRunSnapshot:
    id: int
    job_id: str
    claim_token: str
    origin: RunOrigin
    claimed_by: str | None
    started_at: datetime
    finished_at: datetime
    ok: bool
    error_code: str | None
    message: str | None
    retry_count: int
    status_after: JobStatus


@dataclass(frozen=True)
class JobCompletion:
    """Everything the store writes when a claim is released.

    Built by the executor, which is the only place that decides status,
    retry bookkeeping and the next due time.
    """

    claim_token: str
    status: JobStatus
    next_run_at: datetime | None
    retry_count: int
    ok: bool
    started_at: datetime
    finished_at: datetime
    origin: RunOrigin = RunOrigin.DISPATCH
    claimed_by: str | None = None
    error_code: str | None = None
    message: str | None = None
    result: Any | None = None


@dataclass(frozen=True)
class CompletionResult:
    snapshot: JobSnapshot
    applied: bool


@dataclass(frozen=True)
class ExecutionResult:
    job_id: str
    job_type: str
    status: JobStatus
    ok: bool
    retry_count: int
    next_run_at: datetime | None
    applied: bool
    error_code: str | None = None
    message: str | None = None
    result: Any | None = None


@dataclass(slots=True)
class DispatchError:
    job_id: str
    job_type: str
    status: JobStatus
    error_code: str | None
    message: str | None
    retry_count: int


@dataclass(slots=True)
class DispatchSummary:
    started_at: datetime
    finished_at: datetime | None = None
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0
    errors: list[DispatchError] = field(default_factory=list)


@dataclass(frozen=True)
class JobListResult:
    items: list[JobSnapshot]
    next_cursor: str | None
