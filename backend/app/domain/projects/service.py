from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.deliverables import gating
from app.domain.deliverables.db_models import Deliverable
from app.domain.errors import AccessDeniedError, NotFoundError, ValidationDomainError
from app.domain.projects import statuses
from app.domain.projects.db_models import Project
from app.infra.auth import Principal, create_client_token
from app.infra.db import UnitOfWork


@dataclass(frozen=True)
class LatestDeliverable:
    deliverable_id: str
    title: str
    version: int
    state: str
    watermark_status: str
    download_variant: str | None
    download_blocked_reason: str | None


@dataclass(frozen=True)
class PortalSummary:
    public_id: str
    name: str
    portal_stage: str
    payment_status: str
    payment_required: bool
    payment_link_url: str | None
    release_blocked_reason: str | None
    last_update_at: datetime | None
    latest_deliverable: LatestDeliverable | None


@dataclass(frozen=True)
class PortalToken:
    project_id: str
    public_id: str
    access_token: str
    expires_at: datetime


def ensure_access(project: Project, principal: Principal) -> None:
    if principal.is_admin or principal.owns(project.client_id):
        return
    raise AccessDeniedError(detail="Not allowed to access this project")


async def load_project(session: AsyncSession, project_id: str, *, for_update: bool = False) -> Project:
    stmt = select(Project).where(Project.project_id == project_id)
    if for_update:
        stmt = stmt.with_for_update()
    project = await session.scalar(stmt)
    if project is None:
        raise NotFoundError(detail="Project not found")
    return project


async def latest_deliverable(session: AsyncSession, project_id: str) -> Deliverable | None:
    stmt = (
        select(Deliverable)
        .where(Deliverable.project_id == project_id)
        .order_by(Deliverable.version.desc())
        .limit(1)
    )
    return await session.scalar(stmt)


def release_blocked_reason(project: Project) -> str | None:
    if not project.payment_satisfied:
        return gating.REASON_PAYMENT_REQUIRED
    return None


async def get_portal_summary(uow: UnitOfWork, public_id: str, principal: Principal) -> PortalSummary:
    async def _summary(session: AsyncSession) -> PortalSummary:
        project = await session.scalar(select(Project).where(Project.public_id == public_id))
        if project is None:
            raise NotFoundError(detail="Project not found")
        ensure_access(project, principal)

        latest = await latest_deliverable(session, project.project_id)
        latest_view = None
        if latest is not None:
            decision = gating.resolve_download(latest, project)
            latest_view = LatestDeliverable(
                deliverable_id=latest.deliverable_id,
                title=latest.title,
                version=latest.version,
                state=latest.state,
                watermark_status=latest.watermark_status,
                download_variant=None if isinstance(decision, gating.Denied) else decision.variant.value,
                download_blocked_reason=decision.reason if isinstance(decision, gating.Denied) else None,
            )
        return PortalSummary(
            public_id=project.public_id,
            name=project.name,
            portal_stage=project.portal_stage,
            payment_status=project.payment_status,
            payment_required=project.payment_required,
            payment_link_url=(
                project.payment_link_url
                if project.payment_status == statuses.PAYMENT_UNPAID
                else None
            ),
            release_blocked_reason=release_blocked_reason(project),
            last_update_at=project.last_update_at,
            latest_deliverable=latest_view,
        )

    return await uow.with_transaction(_summary)


async def issue_portal_token(
    uow: UnitOfWork, project_id: str, *, secret: str, ttl_minutes: int
) -> PortalToken:
    """Mint a client bearer token for the owner of ``project_id``."""

    async def _load(session: AsyncSession) -> Project:
        return await load_project(session, project_id)

    project = await uow.with_transaction(_load)
    if not project.client_id:
        raise ValidationDomainError(
            detail="Project has no client to issue a token for",
            errors=[{"field": "client_id", "message": "Assign a client first"}],
        )
    expires_at = datetime.now(tz=timezone.utc) + timedelta(minutes=ttl_minutes)
    token = create_client_token(project.client_id, ttl_minutes, secret)
    return PortalToken(
        project_id=project.project_id,
        public_id=project.public_id,
        access_token=token,
        expires_at=expires_at,
    )
