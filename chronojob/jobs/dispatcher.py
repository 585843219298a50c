from __future__ import annotations

import logging
import os
import socket
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from chronojob.core.config import Settings
from chronojob.db.models import JobStatus, RunOrigin
from chronojob.jobs.executor import JobExecutor
from chronojob.jobs.store import JobAlreadyClaimedError, JobNotFoundError, JobStore, as_utc
from chronojob.jobs.types import DispatchError, DispatchSummary

logger = logging.getLogger(__name__)


def default_claimant(settings: Settings) -> str:
    if settings.worker_id:
        return settings.worker_id
    return f"dispatch:{socket.gethostname()}:{os.getpid()}"


class DueJobDispatcher:
    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        executor: JobExecutor,
        *,
        claimant: str | None = None,
    ):
        self._settings = settings
        self._store = store
        self._executor = executor
        self._claimant = claimant or default_claimant(settings)

    @property
    def claimant(self) -> str:
        return self._claimant

    def process_due_jobs(self, now: datetime | None = None, *, limit: int | None = None) -> DispatchSummary:
        reference = as_utc(now) or datetime.now(tz=timezone.utc)
        summary = DispatchSummary(started_at=datetime.now(tz=timezone.utc))

        if self._settings.recover_stale_on_dispatch:
            summary.recovered = len(self._executor.recover_stale(reference))

        candidates = self._store.find_due(reference, limit)
        for candidate in candidates:
            try:
                claimed = self._store.claim(candidate.id, self._claimant, reference, due_only=True)
            except JobAlreadyClaimedError:
                logger.debug("Job %s already claimed by another dispatcher, skipping", candidate.id)
                summary.skipped += 1
                continue
            except JobNotFoundError:
                logger.debug("Job %s disappeared before it could be claimed", candidate.id)
                summary.skipped += 1
                continue

            summary.attempted += 1
            result = self._executor.execute(claimed, origin=RunOrigin.DISPATCH)
            if result.ok:
                summary.succeeded += 1
                continue

            summary.failed += 1
            summary.errors.append(
                DispatchError(
                    job_id=result.job_id,
                    job_type=result.job_type,
                    status=result.status,
                    error_code=result.error_code,
                    message=result.message,
                    retry_count=result.retry_count,
                )
            )

        summary.finished_at = datetime.now(tz=timezone.utc)
        logger.info(
            "Dispatch finished: attempted=%d succeeded=%d failed=%d skipped=%d recovered=%d",
            summary.attempted,
            summary.succeeded,
            summary.failed,
            summary.skipped,
            summary.recovered,
        )
        return summary


def summary_to_dict(summary: DispatchSummary) -> dict[str, Any]:
    payload = asdict(summary)
    for entry in payload["errors"]:
        status = entry["status"]
        entry["status"] = status.value if isinstance(status, JobStatus) else status
    return payload
