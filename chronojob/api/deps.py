from __future__ import annotations

import logging
from collections.abc import Iterator

from fastapi import Depends, Header, HTTPException, status

from chronojob.auth.gate import ActorSnapshot, AuthorizationGate, Capability, ForbiddenError
from chronojob.auth.sessions import SessionService
from chronojob.core.config import get_settings
from chronojob.db.session import get_session_factory
from chronojob.jobs.executor import JobExecutor
from chronojob.jobs.registry import HandlerRegistry, get_handler_registry
from chronojob.jobs.store import JobStore

logger = logging.getLogger(__name__)


def get_job_store() -> JobStore:
    return JobStore(settings=get_settings(), session_factory=get_session_factory())


def get_authorization_gate() -> AuthorizationGate:
    return AuthorizationGate(settings=get_settings(), session_factory=get_session_factory())


def get_session_service() -> SessionService:
    return SessionService(settings=get_settings(), session_factory=get_session_factory())


def get_job_executor(
    store: JobStore = Depends(get_job_store),
    registry: HandlerRegistry = Depends(get_handler_registry),
) -> Iterator[JobExecutor]:
    executor = JobExecutor(settings=get_settings(), store=store, registry=registry)
    try:
        yield executor
    finally:
        executor.shutdown()


def bearer_token(authorization: str | None = Header(default=None)) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_actor(
    token: str | None = Depends(bearer_token),
    sessions: SessionService = Depends(get_session_service),
) -> ActorSnapshot | None:
    actor = sessions.resolve(token)
    if actor is not None:
        return actor
    if get_settings().auth_soft_fail:
        logger.warning("Unauthenticated request admitted because auth soft-fail is enabled")
        return None
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing or invalid session token",
        headers={"WWW-Authenticate": "Bearer"},
    )


def require_dispatch_token(
    token: str | None = Depends(bearer_token),
    gate: AuthorizationGate = Depends(get_authorization_gate),
) -> None:
    if not gate.verify_dispatch_secret(token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid dispatch token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def authorize(
    gate: AuthorizationGate,
    actor: ActorSnapshot | None,
    organisation_id: str | None,
    capability: Capability,
) -> None:
    try:
        gate.check_capability(actor, organisation_id, capability)
    except ForbiddenError as exc:
        if get_settings().auth_soft_fail:
            logger.warning("Authorization soft-failed for %s: %s", capability.value, exc)
            return
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
