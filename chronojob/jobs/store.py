from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from chronojob.core.config import Settings
from chronojob.db.models import JobRun, JobStatus, ScheduledJob
from chronojob.jobs.recurrence import parse_recurrence_rule
from chronojob.jobs.types import (
    CompletionResult,
    JobCompletion,
    JobListResult,
    JobRunSnapshot,
    JobSnapshot,
)

logger = logging.getLogger(__name__)


class JobNotFoundError(RuntimeError):
    pass


class JobAlreadyClaimedError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.PENDING, JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.SUCCEEDED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobStore:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _enforce_transition(self, from_status: JobStatus, to_status: JobStatus) -> None:
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidJobStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")

    def create_job(
        self,
        job_type: str,
        *,
        name: str | None = None,
        payload: dict[str, Any] | None = None,
        next_run_at: datetime | None = None,
        recurrence_rule: str | None = None,
        max_retries: int | None = None,
        organisation_id: str | None = None,
        created_by: str | None = None,
        description: str | None = None,
    ) -> JobSnapshot:
        normalized_type = job_type.strip()
        if not normalized_type:
            raise ValueError("job type cannot be blank")
        effective_max_retries = self._settings.default_max_retries if max_retries is None else max_retries
        if effective_max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        normalized_rule = recurrence_rule.strip() if recurrence_rule else None
        if normalized_rule:
            parse_recurrence_rule(normalized_rule)

        now = self._now()
        job = ScheduledJob(
            id=str(uuid4()),
            type=normalized_type,
            name=(name or normalized_type).strip()[:255] or normalized_type,
            description=description,
            organisation_id=organisation_id,
            created_by=created_by,
            payload=payload or {},
            status=JobStatus.PENDING,
            next_run_at=as_utc(next_run_at) or now,
            recurrence_rule=normalized_rule or None,
            retry_count=0,
            max_retries=effective_max_retries,
            created_at=now,
            updated_at=now,
        )
        with self._session_factory() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
            logger.info("Created job %s type=%s next_run_at=%s", job.id, job.type, job.next_run_at)
            return self._to_snapshot(job)

    def get(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            job = session.get(ScheduledJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return self._to_snapshot(job)

    find_by_id = get

    def find_due(self, now: datetime, limit: int | None = None) -> list[JobSnapshot]:
        requested = self._settings.dispatch_batch_limit if limit is None else limit
        bounded_limit = max(1, min(requested, self._settings.max_batch_limit))
        cutoff = as_utc(now)
        with self._session_factory() as session:
            rows = session.scalars(
                select(ScheduledJob)
                .where(
                    ScheduledJob.status == JobStatus.PENDING,
                    ScheduledJob.next_run_at.is_not(None),
                    ScheduledJob.next_run_at <= cutoff,
                )
                .order_by(ScheduledJob.next_run_at.asc(), ScheduledJob.id.asc())
                .limit(bounded_limit)
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def claim(
        self,
        job_id: str,
        claimant: str,
        now: datetime | None = None,
        *,
        due_only: bool = False,
    ) -> JobSnapshot:
        normalized_claimant = claimant.strip()
        if not normalized_claimant:
            raise ValueError("claimant cannot be blank")

        claimed_at = as_utc(now) or self._now()
        claim_token = str(uuid4())
        conditions = [ScheduledJob.id == job_id, ScheduledJob.status == JobStatus.PENDING]
        if due_only:
            conditions.append(ScheduledJob.next_run_at <= claimed_at)

        with self._session_factory() as session:
            result = session.execute(
                update(ScheduledJob)
                .where(*conditions)
                .values(
                    status=JobStatus.RUNNING,
                    claimed_at=claimed_at,
                    claimed_by=normalized_claimant[:128],
                    claim_token=claim_token,
                    updated_at=claimed_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                exists = session.scalar(select(ScheduledJob.id).where(ScheduledJob.id == job_id))
                if exists is None:
                    raise JobNotFoundError(f"Job not found: {job_id}")
                raise JobAlreadyClaimedError(f"Job {job_id} is not pending")
            session.commit()

            job = session.get(ScheduledJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Claimed job disappeared before snapshot fetch: {job_id}")
            logger.debug("Job %s claimed by %s", job_id, normalized_claimant)
            return self._to_snapshot(job)

    def complete(self, job_id: str, completion: JobCompletion) -> CompletionResult:
        self._enforce_transition(JobStatus.RUNNING, completion.status)
        finished_at = as_utc(completion.finished_at)
        history_values: dict[str, Any] = {
            "last_run_at": as_utc(completion.started_at),
            "last_result_ok": completion.ok,
            "last_result_message": completion.message,
            "last_result": completion.result,
            "last_error_code": completion.error_code,
            "claimed_at": None,
            "claimed_by": None,
            "claim_token": None,
            "updated_at": finished_at,
        }

        with self._session_factory() as session:
            result = session.execute(
                update(ScheduledJob)
                .where(
                    ScheduledJob.id == job_id,
                    ScheduledJob.claim_token == completion.claim_token,
                    ScheduledJob.status == JobStatus.RUNNING,
                )
                .values(
                    status=completion.status,
                    next_run_at=as_utc(completion.next_run_at),
                    retry_count=completion.retry_count,
                    **history_values,
                )
                .execution_options(synchronize_session=False)
            )
            status_after = completion.status
            if result.rowcount != 1:
                # cancelled while running: keep it cancelled, only record the run
                result = session.execute(
                    update(ScheduledJob)
                    .where(
                        ScheduledJob.id == job_id,
                        ScheduledJob.claim_token == completion.claim_token,
                        ScheduledJob.status == JobStatus.CANCELLED,
                    )
                    .values(next_run_at=None, **history_values)
                    .execution_options(synchronize_session=False)
                )
                status_after = JobStatus.CANCELLED

            if result.rowcount != 1:
                session.rollback()
                job = session.get(ScheduledJob, job_id)
                if job is None:
                    raise JobNotFoundError(f"Job not found: {job_id}")
                logger.debug("Ignoring duplicate completion for job %s", job_id)
                return CompletionResult(snapshot=self._to_snapshot(job), applied=False)

            session.add(
                JobRun(
                    job_id=job_id,
                    claim_token=completion.claim_token,
                    origin=completion.origin,
                    claimed_by=completion.claimed_by,
                    started_at=as_utc(completion.started_at),
                    finished_at=finished_at,
                    ok=completion.ok,
                    error_code=completion.error_code,
                    message=completion.message,
                    retry_count=completion.retry_count,
                    status_after=status_after,
                )
            )
            session.commit()

            job = session.get(ScheduledJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            session.refresh(job)
            return CompletionResult(snapshot=self._to_snapshot(job), applied=True)

    def cancel(self, job_id: str) -> JobSnapshot:
        now = self._now()
        with self._session_factory() as session:
            result = session.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job_id, ScheduledJob.status.in_(ACTIVE_STATUSES))
                .values(status=JobStatus.CANCELLED, next_run_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                job = session.get(ScheduledJob, job_id)
                if job is None:
                    raise JobNotFoundError(f"Job not found: {job_id}")
                self._enforce_transition(job.status, JobStatus.CANCELLED)
            session.commit()

            job = session.get(ScheduledJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            session.refresh(job)
            logger.info("Job %s cancelled", job_id)
            return self._to_snapshot(job)

    def find_stale_claims(self, now: datetime | None = None) -> list[JobSnapshot]:
        cutoff = (as_utc(now) or self._now()) - timedelta(seconds=self._settings.claim_ttl_seconds)
        with self._session_factory() as session:
            rows = session.scalars(
                select(ScheduledJob)
                .where(
                    ScheduledJob.status.in_([JobStatus.RUNNING, JobStatus.CANCELLED]),
                    ScheduledJob.claim_token.is_not(None),
                    or_(ScheduledJob.claimed_at.is_(None), ScheduledJob.claimed_at <= cutoff),
                )
                .order_by(ScheduledJob.claimed_at.asc(), ScheduledJob.id.asc())
                .limit(self._settings.max_batch_limit)
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def list_jobs(
        self,
        *,
        limit: int | None = None,
        cursor: str | None = None,
        status: JobStatus | None = None,
        job_type: str | None = None,
        organisation_id: str | None = None,
    ) -> JobListResult:
        requested = self._settings.default_page_size if limit is None else limit
        bounded_limit = max(1, min(requested, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = (
                select(ScheduledJob)
                .order_by(ScheduledJob.created_at.desc(), ScheduledJob.id.desc())
                .limit(bounded_limit + 1)
            )
            if status is not None:
                stmt = stmt.where(ScheduledJob.status == status)
            if job_type:
                stmt = stmt.where(ScheduledJob.type == job_type)
            if organisation_id:
                stmt = stmt.where(ScheduledJob.organisation_id == organisation_id)
            if cursor:
                anchor_exists = session.scalar(select(ScheduledJob.id).where(ScheduledJob.id == cursor))
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_created_at = select(ScheduledJob.created_at).where(ScheduledJob.id == cursor).scalar_subquery()
                stmt = stmt.where(
                    or_(
                        ScheduledJob.created_at < anchor_created_at,
                        and_(ScheduledJob.created_at == anchor_created_at, ScheduledJob.id < cursor),
                    )
                )
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return JobListResult(items=[self._to_snapshot(row) for row in items], next_cursor=next_cursor)

    def list_runs(self, job_id: str, *, limit: int = 50) -> list[JobRunSnapshot]:
        bounded_limit = max(1, min(limit, self._settings.max_page_size))
        with self._session_factory() as session:
            if session.get(ScheduledJob, job_id) is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            rows = session.scalars(
                select(JobRun)
                .where(JobRun.job_id == job_id)
                .order_by(JobRun.finished_at.desc(), JobRun.id.desc())
                .limit(bounded_limit)
            ).all()
            return [self._to_run_snapshot(row) for row in rows]

    def count_active(self, organisation_id: str) -> int:
        with self._session_factory() as session:
            count = session.scalar(
                select(func.count())
                .select_from(ScheduledJob)
                .where(
                    ScheduledJob.organisation_id == organisation_id,
                    ScheduledJob.status.in_(ACTIVE_STATUSES),
                )
            )
            return int(count or 0)

    def _to_snapshot(self, job: ScheduledJob) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            type=job.type,
            name=job.name,
            description=job.description,
            organisation_id=job.organisation_id,
            created_by=job.created_by,
            payload=dict(job.payload or {}),
            status=job.status,
            next_run_at=as_utc(job.next_run_at),
            recurrence_rule=job.recurrence_rule,
            last_run_at=as_utc(job.last_run_at),
            last_result_ok=job.last_result_ok,
            last_result_message=job.last_result_message,
            last_result=job.last_result,
            last_error_code=job.last_error_code,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            claimed_at=as_utc(job.claimed_at),
            claimed_by=job.claimed_by,
            claim_token=job.claim_token,
            created_at=as_utc(job.created_at),
            updated_at=as_utc(job.updated_at),
        )

    def _to_run_snapshot(self, run: JobRun) -> JobRunSnapshot:
        return JobRunSnapshot(
            id=run.id,
            job_id=run.job_id,
            claim_token=run.claim_token,
            origin=run.origin,
            claimed_by=run.claimed_by,
            started_at=as_utc(run.started_at),
            finished_at=as_utc(run.finished_at),
            ok=run.ok,
            error_code=run.error_code,
            message=run.message,
            retry_count=run.retry_count,
            status_after=run.status_after,
        )


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "type": snapshot.type,
        "name": snapshot.name,
        "description": snapshot.description,
        "organisation_id": snapshot.organisation_id,
        "created_by": snapshot.created_by,
        "payload": snapshot.payload,
        "status": snapshot.status.value,
        "next_run_at": snapshot.next_run_at,
        "recurrence_rule": snapshot.recurrence_rule,
        "last_run_at": snapshot.last_run_at,
        "last_result_ok": snapshot.last_result_ok,
        "last_result_message": snapshot.last_result_message,
        "last_result": snapshot.last_result,
        "last_error_code": snapshot.last_error_code,
        "retry_count": snapshot.retry_count,
        "max_retries": snapshot.max_retries,
        "claimed_at": snapshot.claimed_at,
        "claimed_by": snapshot.claimed_by,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
    }


def run_to_dict(snapshot: JobRunSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "job_id": snapshot.job_id,
        "origin": snapshot.origin.value,
        "claimed_by": snapshot.claimed_by,
        "started_at": snapshot.started_at,
        "finished_at": snapshot.finished_at,
        "ok": snapshot.ok,
        "error_code": snapshot.error_code,
        "message": snapshot.message,
        "retry_count": snapshot.retry_count,
        "status_after": snapshot.status_after.value,
    }
