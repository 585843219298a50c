from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from chronojob.core.config import Settings
from chronojob.db.models import (
    JobStatus,
    MemberRole,
    MemberStatus,
    Organisation,
    OrganisationMember,
    OrganisationStatus,
    PlatformRole,
    ScheduledJob,
)

logger = logging.getLogger(__name__)


class ForbiddenError(RuntimeError):
    pass


class QuotaExceededError(RuntimeError):
    pass


class Capability(str, Enum):
    JOBS_VIEW = "jobs:view"
    JOBS_MANAGE = "jobs:manage"
    JOBS_TRIGGER = "jobs:trigger"
    ORG_VIEW = "org:view"
    ORG_SETTINGS = "org:settings"
    ORG_MEMBERS_INVITE = "org:members:invite"
    ORG_MEMBERS_REMOVE = "org:members:remove"
    ORG_MEMBERS_UPDATE_ROLE = "org:members:update_role"
    ORG_SEATS_MANAGE = "org:seats:manage"
    ORG_BILLING_VIEW = "org:billing:view"
    ORG_BILLING_MANAGE = "org:billing:manage"


class ResourceKind(str, Enum):
    SEATS = "seats"
    SCHEDULED_JOBS = "scheduled_jobs"


ROLE_CAPABILITIES: dict[MemberRole, frozenset[Capability]] = {
    MemberRole.OWNER: frozenset(Capability),
    MemberRole.ADMIN: frozenset(
        {
            Capability.JOBS_VIEW,
            Capability.JOBS_MANAGE,
            Capability.JOBS_TRIGGER,
            Capability.ORG_VIEW,
            Capability.ORG_MEMBERS_INVITE,
            Capability.ORG_MEMBERS_REMOVE,
            Capability.ORG_MEMBERS_UPDATE_ROLE,
        }
    ),
    MemberRole.TEACHER: frozenset({Capability.JOBS_VIEW, Capability.ORG_VIEW}),
    MemberRole.BILLING_ADMIN: frozenset({Capability.ORG_VIEW, Capability.ORG_BILLING_VIEW}),
}

PLATFORM_CAPABILITIES: dict[PlatformRole, frozenset[Capability]] = {
    PlatformRole.PLATFORM_ADMIN: frozenset(Capability),
    PlatformRole.SUPPORT: frozenset({Capability.JOBS_VIEW}),
    PlatformRole.MEMBER: frozenset(),
}

# what an organisation keeps once its subscription lapses
READ_ONLY_CAPABILITIES = frozenset({Capability.ORG_VIEW, Capability.ORG_BILLING_VIEW, Capability.JOBS_VIEW})

ACTIVE_SUBSCRIPTION_STATUSES = {OrganisationStatus.ACTIVE, OrganisationStatus.TRIALING}
GRACE_PERIOD_STATUSES = {OrganisationStatus.PAST_DUE, OrganisationStatus.EXPIRED}


@dataclass(frozen=True)
class ActorSnapshot:
    id: str
    email: str
    display_name: str | None
    platform_role: PlatformRole
    is_active: bool


@dataclass(frozen=True)
class SeatUsage:
    total: int
    used: int
    available: int


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AuthorizationGate:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def is_subscription_active(self, organisation: Organisation) -> bool:
        if organisation.status in ACTIVE_SUBSCRIPTION_STATUSES:
            return True
        if organisation.status in GRACE_PERIOD_STATUSES:
            grace_period_end = _as_utc(organisation.grace_period_end)
            return grace_period_end is not None and self._now() < grace_period_end
        return False

    def check_capability(
        self,
        actor: ActorSnapshot | None,
        organisation_id: str | None,
        capability: Capability,
    ) -> None:
        if actor is None:
            raise ForbiddenError(f"Permission denied: {capability.value} requires an authenticated actor")
        if not actor.is_active:
            raise ForbiddenError(f"Permission denied: actor {actor.id} is inactive")

        if capability in PLATFORM_CAPABILITIES[actor.platform_role]:
            return
        if organisation_id is None:
            raise ForbiddenError(f"Permission denied: {capability.value}")

        with self._session_factory() as session:
            row = session.execute(
                select(OrganisationMember, Organisation)
                .join(Organisation, Organisation.id == OrganisationMember.organisation_id)
                .where(
                    OrganisationMember.organisation_id == organisation_id,
                    OrganisationMember.actor_id == actor.id,
                )
            ).first()
            if row is None:
                raise ForbiddenError(f"Permission denied: {capability.value} (not a member of {organisation_id})")
            member, organisation = row
            if member.deleted_at is not None:
                raise ForbiddenError(f"Permission denied: {capability.value} (membership removed)")

            if not self.is_subscription_active(organisation):
                if capability in READ_ONLY_CAPABILITIES:
                    return
                raise ForbiddenError(f"Permission denied: {capability.value} (subscription inactive)")

            if member.status != MemberStatus.ACTIVE:
                raise ForbiddenError(f"Permission denied: {capability.value} (membership {member.status.value})")
            if capability not in ROLE_CAPABILITIES.get(member.role, frozenset()):
                raise ForbiddenError(f"Permission denied: {capability.value}")

    def get_seat_usage(self, organisation_id: str) -> SeatUsage:
        with self._session_factory() as session:
            organisation = session.get(Organisation, organisation_id)
            if organisation is None:
                return SeatUsage(total=0, used=0, available=0)
            used = session.scalar(
                select(func.count())
                .select_from(OrganisationMember)
                .where(
                    OrganisationMember.organisation_id == organisation_id,
                    OrganisationMember.status == MemberStatus.ACTIVE,
                    OrganisationMember.seat_assigned_at.is_not(None),
                    OrganisationMember.seat_released_at.is_(None),
                    OrganisationMember.deleted_at.is_(None),
                )
            )
            used = int(used or 0)
            return SeatUsage(total=organisation.max_seats, used=used, available=max(0, organisation.max_seats - used))

    def check_quota(self, organisation_id: str, resource_kind: ResourceKind | str) -> None:
        try:
            kind = ResourceKind(resource_kind)
        except ValueError as exc:
            raise ValueError(f"Unknown resource kind: {resource_kind}") from exc

        if kind == ResourceKind.SEATS:
            usage = self.get_seat_usage(organisation_id)
            if usage.available <= 0:
                raise QuotaExceededError(
                    f"No seats available for organisation {organisation_id} ({usage.used}/{usage.total} used)"
                )
            return

        with self._session_factory() as session:
            organisation = session.get(Organisation, organisation_id)
            allotted = organisation.max_scheduled_jobs if organisation is not None else 0
            active = session.scalar(
                select(func.count())
                .select_from(ScheduledJob)
                .where(
                    ScheduledJob.organisation_id == organisation_id,
                    ScheduledJob.status.in_([JobStatus.PENDING, JobStatus.RUNNING]),
                )
            )
            active = int(active or 0)
        if active >= allotted:
            raise QuotaExceededError(
                f"Scheduled job quota reached for organisation {organisation_id} ({active}/{allotted})"
            )

    def verify_dispatch_secret(self, presented: str | None) -> bool:
        secret = self._settings.dispatch_secret
        if secret is None:
            return True
        if not presented:
            return False
        return hmac.compare_digest(presented.encode("utf-8"), secret.get_secret_value().encode("utf-8"))
