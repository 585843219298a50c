from __future__ import annotations

import logging
from datetime import datetime, timezone

from chronojob.auth.gate import ActorSnapshot, AuthorizationGate, Capability, ForbiddenError
from chronojob.core.config import Settings
from chronojob.db.models import RunOrigin
from chronojob.jobs.executor import JobExecutor
from chronojob.jobs.store import JobNotFoundError, JobStore, as_utc
from chronojob.jobs.types import ExecutionResult

logger = logging.getLogger(__name__)


class ManualTriggerService:
    """Force-runs a single job immediately, ignoring ``next_run_at``.

    Uses the same claim the dispatcher uses, so a manual run and a periodic
    dispatch of the same job can never both execute it.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        executor: JobExecutor,
        gate: AuthorizationGate,
    ):
        self._settings = settings
        self._store = store
        self._executor = executor
        self._gate = gate

    def _scope(self, job_id: str, actor: ActorSnapshot | None, organisation_id: str | None) -> str | None:
        """Organisation to authorize against: the caller's context, else the job's own."""
        if organisation_id is not None or actor is None:
            return organisation_id
        try:
            return self._store.get(job_id).organisation_id
        except JobNotFoundError:
            # unknown jobs are reported after the capability check
            return None

    def trigger(
        self,
        job_id: str,
        actor: ActorSnapshot | None,
        *,
        organisation_id: str | None = None,
        now: datetime | None = None,
    ) -> ExecutionResult:
        try:
            self._gate.check_capability(actor, self._scope(job_id, actor, organisation_id), Capability.JOBS_TRIGGER)
        except ForbiddenError as exc:
            if not self._settings.auth_soft_fail:
                raise
            logger.warning("Authorization soft-failed for manual trigger of job %s: %s", job_id, exc)

        job = self._store.get(job_id)
        if organisation_id is not None and job.organisation_id != organisation_id:
            raise JobNotFoundError(f"Job not found: {job_id}")

        reference = as_utc(now) or datetime.now(tz=timezone.utc)
        actor_label = actor.id if actor is not None else "anonymous"
        claimed = self._store.claim(job.id, f"manual:{actor_label}", reference)
        logger.info("Manual run of job %s requested by %s", job.id, actor_label)
        return self._executor.execute(claimed, origin=RunOrigin.MANUAL)
