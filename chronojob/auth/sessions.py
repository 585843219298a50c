from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from chronojob.auth.gate import ActorSnapshot
from chronojob.core.config import Settings
from chronojob.db.models import Actor, ActorSession

logger = logging.getLogger(__name__)


class UnknownActorError(RuntimeError):
    pass


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def issue(self, actor_id: str, ttl_seconds: int | None = None) -> str:
        ttl = self._settings.session_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be > 0")
        token = secrets.token_urlsafe(32)
        now = self._now()
        with self._session_factory() as session:
            actor = session.get(Actor, actor_id)
            if actor is None or not actor.is_active:
                raise UnknownActorError(f"Actor not found or inactive: {actor_id}")
            session.add(
                ActorSession(
                    token_hash=hash_token(token),
                    actor_id=actor_id,
                    expires_at=now + timedelta(seconds=ttl),
                    created_at=now,
                )
            )
            session.commit()
        logger.info("Issued session for actor %s", actor_id)
        return token

    def resolve(self, token: str | None) -> ActorSnapshot | None:
        if not token:
            return None
        with self._session_factory() as session:
            record = session.get(ActorSession, hash_token(token))
            if record is None or record.revoked_at is not None:
                return None
            if self._coerce_utc(record.expires_at) <= self._now():
                return None
            actor = session.get(Actor, record.actor_id)
            if actor is None or not actor.is_active:
                return None
            return ActorSnapshot(
                id=actor.id,
                email=actor.email,
                display_name=actor.display_name,
                platform_role=actor.platform_role,
                is_active=actor.is_active,
            )

    def revoke(self, token: str) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                update(ActorSession)
                .where(ActorSession.token_hash == hash_token(token), ActorSession.revoked_at.is_(None))
                .values(revoked_at=self._now())
            )
            session.commit()
            return result.rowcount == 1
