from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from chronojob.core.config import Settings
from chronojob.db.models import JobStatus, RunOrigin
from chronojob.jobs.backoff import BackoffStrategy, build_backoff
from chronojob.jobs.recurrence import InvalidRecurrenceRuleError, next_run_after
from chronojob.jobs.registry import Handler, HandlerRegistry, InvalidHandlerResultError, normalize_handler_result
from chronojob.jobs.store import InvalidJobStateError, JobStore, as_utc
from chronojob.jobs.types import ExecutionResult, JobCompletion, JobSnapshot

logger = logging.getLogger(__name__)

UNKNOWN_JOB_TYPE = "UNKNOWN_JOB_TYPE"
HANDLER_FAILED = "HANDLER_FAILED"
HANDLER_EXCEPTION = "HANDLER_EXCEPTION"
HANDLER_TIMEOUT = "HANDLER_TIMEOUT"
INVALID_HANDLER_RESULT = "INVALID_HANDLER_RESULT"
INVALID_RECURRENCE_RULE = "INVALID_RECURRENCE_RULE"

# failures that retrying cannot fix
NON_RETRYABLE_ERRORS = frozenset({UNKNOWN_JOB_TYPE, INVALID_RECURRENCE_RULE})


@dataclass(frozen=True)
class HandlerOutcome:
    ok: bool
    result: Any | None = None
    error_code: str | None = None
    message: str | None = None

    @classmethod
    def failure(cls, error_code: str, message: str) -> "HandlerOutcome":
        return cls(ok=False, error_code=error_code, message=message)


def _json_safe(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


class JobExecutor:
    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        registry: HandlerRegistry,
        *,
        backoff: BackoffStrategy | None = None,
    ):
        self._settings = settings
        self._store = store
        self._registry = registry
        self._backoff = backoff or build_backoff(settings)
        self._pool = ThreadPoolExecutor(
            max_workers=settings.handler_pool_size,
            thread_name_prefix="chronojob-handler",
        )

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def execute(
        self,
        job: JobSnapshot,
        *,
        now: datetime | None = None,
        origin: RunOrigin = RunOrigin.DISPATCH,
    ) -> ExecutionResult:
        """Run a claimed job's handler and record the outcome.

        The run starts when the handler is invoked, not when the job was claimed;
        pass ``now`` to pin the start time.
        """
        if job.status != JobStatus.RUNNING or job.claim_token is None:
            raise InvalidJobStateError(f"Job {job.id} must be claimed before execution")

        handler = self._registry.resolve(job.type)
        started_at = as_utc(now) or self._now()
        if handler is None:
            logger.error("No handler registered for job type %s (job %s)", job.type, job.id)
            outcome = HandlerOutcome.failure(UNKNOWN_JOB_TYPE, f"No handler registered for job type: {job.type}")
        else:
            outcome = self._invoke(handler, job)

        finished_at = max(self._now(), started_at)
        completion = self._build_completion(
            job,
            outcome,
            started_at=started_at,
            finished_at=finished_at,
            schedule_from=started_at,
            origin=origin,
        )
        return self._complete(job, completion)

    def recover_stale(self, now: datetime | None = None) -> list[ExecutionResult]:
        reference = as_utc(now) or self._now()
        results: list[ExecutionResult] = []
        for job in self._store.find_stale_claims(reference):
            logger.warning(
                "Recovering stale claim on job %s (claimed_by=%s claimed_at=%s)",
                job.id,
                job.claimed_by,
                job.claimed_at,
            )
            outcome = HandlerOutcome.failure(
                HANDLER_TIMEOUT,
                f"Claim held by {job.claimed_by or 'unknown'} expired after {self._settings.claim_ttl_seconds}s",
            )
            completion = self._build_completion(
                job,
                outcome,
                started_at=job.claimed_at or reference,
                finished_at=reference,
                schedule_from=reference,
                origin=RunOrigin.RECOVERY,
            )
            result = self._complete(job, completion)
            if result.applied:
                results.append(result)
        return results

    def _invoke(self, handler: Handler, job: JobSnapshot) -> HandlerOutcome:
        timeout = self._settings.handler_timeout_seconds
        future = self._pool.submit(handler, dict(job.payload))
        done, _ = wait([future], timeout=timeout)
        if not done:
            future.cancel()
            logger.warning("Handler for job %s (%s) exceeded %.1fs", job.id, job.type, timeout)
            return HandlerOutcome.failure(HANDLER_TIMEOUT, f"Handler exceeded timeout of {timeout:g}s")

        error = future.exception()
        if error is not None:
            logger.warning("Handler for job %s (%s) raised %s: %s", job.id, job.type, type(error).__name__, error)
            return HandlerOutcome.failure(HANDLER_EXCEPTION, f"{type(error).__name__}: {error}")

        try:
            normalized = normalize_handler_result(future.result())
        except InvalidHandlerResultError as exc:
            return HandlerOutcome.failure(INVALID_HANDLER_RESULT, str(exc))

        if normalized.ok:
            try:
                result = _json_safe(normalized.result)
            except (TypeError, ValueError) as exc:
                return HandlerOutcome.failure(INVALID_HANDLER_RESULT, f"Handler result is not serializable: {exc}")
            return HandlerOutcome(ok=True, result=result)
        return HandlerOutcome.failure(HANDLER_FAILED, normalized.error or "Handler reported failure")

    def _build_completion(
        self,
        job: JobSnapshot,
        outcome: HandlerOutcome,
        *,
        started_at: datetime,
        finished_at: datetime,
        schedule_from: datetime,
        origin: RunOrigin,
    ) -> JobCompletion:
        common = {
            "claim_token": job.claim_token,
            "started_at": started_at,
            "finished_at": finished_at,
            "origin": origin,
            "claimed_by": job.claimed_by,
        }

        if outcome.ok:
            if not job.recurrence_rule:
                return JobCompletion(
                    status=JobStatus.SUCCEEDED,
                    next_run_at=None,
                    retry_count=0,
                    ok=True,
                    result=outcome.result,
                    message=outcome.message,
                    **common,
                )
            try:
                next_run_at = next_run_after(job.recurrence_rule, schedule_from)
            except InvalidRecurrenceRuleError as exc:
                logger.error("Job %s has an unusable recurrence rule: %s", job.id, exc)
                outcome = HandlerOutcome.failure(INVALID_RECURRENCE_RULE, str(exc))
            else:
                return JobCompletion(
                    status=JobStatus.PENDING,
                    next_run_at=next_run_at,
                    retry_count=0,
                    ok=True,
                    result=outcome.result,
                    message=outcome.message,
                    **common,
                )

        if outcome.error_code in NON_RETRYABLE_ERRORS:
            return JobCompletion(
                status=JobStatus.FAILED,
                next_run_at=None,
                retry_count=job.retry_count,
                ok=False,
                error_code=outcome.error_code,
                message=outcome.message,
                **common,
            )

        attempt = job.retry_count + 1
        if attempt <= job.max_retries:
            delay = self._backoff.delay(attempt)
            logger.info(
                "Job %s failed (%s), retry %d/%d in %ss",
                job.id,
                outcome.error_code,
                attempt,
                job.max_retries,
                int(delay.total_seconds()),
            )
            return JobCompletion(
                status=JobStatus.PENDING,
                next_run_at=schedule_from + delay,
                retry_count=attempt,
                ok=False,
                error_code=outcome.error_code,
                message=outcome.message,
                **common,
            )

        logger.warning("Job %s failed (%s) after exhausting %d retries", job.id, outcome.error_code, job.max_retries)
        return JobCompletion(
            status=JobStatus.FAILED,
            next_run_at=None,
            retry_count=job.max_retries,
            ok=False,
            error_code=outcome.error_code,
            message=outcome.message,
            **common,
        )

    def _complete(self, job: JobSnapshot, completion: JobCompletion) -> ExecutionResult:
        outcome = self._store.complete(job.id, completion)
        snapshot = outcome.snapshot
        if not outcome.applied:
            logger.info("Completion for job %s was not applied; claim %s already released", job.id, completion.claim_token)
        elif snapshot.status != completion.status:
            logger.info("Job %s was cancelled while running; outcome recorded without rescheduling", job.id)
        return ExecutionResult(
            job_id=job.id,
            job_type=job.type,
            status=snapshot.status,
            ok=completion.ok,
            retry_count=snapshot.retry_count,
            next_run_at=snapshot.next_run_at,
            applied=outcome.applied,
            error_code=completion.error_code,
            message=completion.message,
            result=completion.result,
        )
