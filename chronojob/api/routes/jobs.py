from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from chronojob.api.deps import (
    authorize,
    get_authorization_gate,
    get_current_actor,
    get_job_executor,
    get_job_store,
)
from chronojob.api.schemas.jobs import (
    CreateJobRequest,
    ExecutionResponse,
    JobListResponse,
    JobResponse,
    JobRunListResponse,
    JobRunResponse,
)
from chronojob.auth.gate import (
    ActorSnapshot,
    AuthorizationGate,
    Capability,
    ForbiddenError,
    QuotaExceededError,
    ResourceKind,
)
from chronojob.core.config import get_settings
from chronojob.db.models import JobStatus
from chronojob.jobs.executor import JobExecutor
from chronojob.jobs.recurrence import InvalidRecurrenceRuleError
from chronojob.jobs.store import (
    InvalidJobStateError,
    JobAlreadyClaimedError,
    JobNotFoundError,
    JobStore,
    run_to_dict,
    snapshot_to_dict,
)
from chronojob.jobs.trigger import ManualTriggerService
from chronojob.jobs.types import JobSnapshot

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _get_job_or_404(store: JobStore, job_id: str) -> JobSnapshot:
    try:
        return store.get(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def create_job(
    request: CreateJobRequest,
    actor: ActorSnapshot | None = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    store: JobStore = Depends(get_job_store),
) -> JobResponse:
    authorize(gate, actor, request.organisation_id, Capability.JOBS_MANAGE)
    if request.organisation_id is not None:
        try:
            gate.check_quota(request.organisation_id, ResourceKind.SCHEDULED_JOBS)
        except QuotaExceededError as exc:
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)) from exc
    try:
        job = store.create_job(
            request.type,
            name=request.name,
            description=request.description,
            payload=request.payload,
            next_run_at=request.next_run_at,
            recurrence_rule=request.recurrence_rule,
            max_retries=request.max_retries,
            organisation_id=request.organisation_id,
            created_by=actor.id if actor is not None else None,
        )
    except (InvalidRecurrenceRuleError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("", response_model=JobListResponse)
def list_jobs(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = None,
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    job_type: str | None = Query(default=None, alias="type"),
    organisation_id: str | None = None,
    actor: ActorSnapshot | None = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    store: JobStore = Depends(get_job_store),
) -> JobListResponse:
    authorize(gate, actor, organisation_id, Capability.JOBS_VIEW)
    try:
        result = store.list_jobs(
            limit=limit,
            cursor=cursor,
            status=status_filter,
            job_type=job_type,
            organisation_id=organisation_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return JobListResponse(
        items=[JobResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    actor: ActorSnapshot | None = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    store: JobStore = Depends(get_job_store),
) -> JobResponse:
    job = _get_job_or_404(store, job_id)
    authorize(gate, actor, job.organisation_id, Capability.JOBS_VIEW)
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}/runs", response_model=JobRunListResponse)
def list_job_runs(
    job_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    actor: ActorSnapshot | None = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    store: JobStore = Depends(get_job_store),
) -> JobRunListResponse:
    job = _get_job_or_404(store, job_id)
    authorize(gate, actor, job.organisation_id, Capability.JOBS_VIEW)
    runs = store.list_runs(job.id, limit=limit)
    return JobRunListResponse(items=[JobRunResponse.model_validate(run_to_dict(run)) for run in runs])


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job(
    job_id: str,
    actor: ActorSnapshot | None = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    store: JobStore = Depends(get_job_store),
) -> JobResponse:
    job = _get_job_or_404(store, job_id)
    authorize(gate, actor, job.organisation_id, Capability.JOBS_MANAGE)
    try:
        cancelled = store.cancel(job.id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return JobResponse.model_validate(snapshot_to_dict(cancelled))


@router.post("/{job_id}/run", response_model=ExecutionResponse)
def run_job_now(
    job_id: str,
    organisation_id: str | None = Query(
        default=None,
        description="Organisation context to authorize against; defaults to the job's own organisation",
    ),
    actor: ActorSnapshot | None = Depends(get_current_actor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    store: JobStore = Depends(get_job_store),
    executor: JobExecutor = Depends(get_job_executor),
) -> ExecutionResponse:
    service = ManualTriggerService(settings=get_settings(), store=store, executor=executor, gate=gate)
    try:
        result = service.trigger(job_id, actor, organisation_id=organisation_id)
    except ForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobAlreadyClaimedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ExecutionResponse(
        job_id=result.job_id,
        job_type=result.job_type,
        status=result.status.value,
        ok=result.ok,
        retry_count=result.retry_count,
        next_run_at=result.next_run_at,
        applied=result.applied,
        error_code=result.error_code,
        message=result.message,
        result=result.result,
    )
