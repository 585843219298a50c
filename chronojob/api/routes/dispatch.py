from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError

from chronojob.api.deps import get_job_executor, get_job_store, require_dispatch_token
from chronojob.api.schemas.dispatch import DispatchSummaryResponse
from chronojob.core.config import get_settings
from chronojob.jobs.dispatcher import DueJobDispatcher, summary_to_dict
from chronojob.jobs.executor import JobExecutor
from chronojob.jobs.store import JobStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["dispatch"])


@router.post("/dispatch", response_model=DispatchSummaryResponse, dependencies=[Depends(require_dispatch_token)])
def dispatch_due_jobs(
    limit: int | None = Query(default=None, ge=1),
    store: JobStore = Depends(get_job_store),
    executor: JobExecutor = Depends(get_job_executor),
) -> DispatchSummaryResponse:
    dispatcher = DueJobDispatcher(settings=get_settings(), store=store, executor=executor)
    try:
        summary = dispatcher.process_due_jobs(limit=limit)
    except SQLAlchemyError as exc:
        logger.exception("Dispatch aborted by a store failure")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Job store unavailable: {exc}") from exc
    return DispatchSummaryResponse.model_validate(summary_to_dict(summary))
