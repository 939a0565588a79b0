"""Client feedback, sign-off and admin stage moves for a project."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.deliverables import statuses as deliverable_statuses
from app.domain.deliverables.db_models import Deliverable, Feedback, Signoff
from app.domain.deliverables.statuses import APPROVING_FEEDBACK, FeedbackType
from app.domain.delivery.state_machine import StageTrigger, guard_payment, next_stage
from app.domain.errors import NotFoundError, StageTransitionError, ValidationDomainError
from app.domain.projects import statuses as project_statuses
from app.domain.projects.db_models import Project
from app.domain.projects.service import (
    ensure_access,
    latest_deliverable,
    load_project,
    release_blocked_reason,
)
from app.infra.auth import Principal
from app.infra.db import UnitOfWork
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)

REVIEWABLE_STAGES = {
    project_statuses.PortalStage.IN_REVIEW.value,
    project_statuses.PortalStage.APPROVED.value,
}


@dataclass(frozen=True)
class FeedbackResult:
    feedback_id: str
    feedback_type: str
    portal_stage: str
    release_blocked_reason: str | None


@dataclass(frozen=True)
class SignoffResult:
    signoff_id: str
    deliverable_id: str
    portal_stage: str
    signed_at: datetime


def _now() -> datetime:
    return datetime.now(timezone.utc)


def apply_stage_trigger(project: Project, trigger: StageTrigger) -> str:
    """Move ``project`` through the stage table and return the new stage.

    Raises StageTransitionError for moves outside the table and
    PaymentRequiredError when the target is a released stage on an unpaid
    project.
    """
    previous = project.portal_stage
    target = next_stage(previous, trigger)
    guard_payment(target, project.payment_satisfied)
    project.portal_stage = target.value
    project.last_update_at = _now()
    if target.value != previous:
        metrics.record_stage_transition(target.value)
        logger.info(
            "portal_stage_transition",
            extra={
                "extra": {
                    "project_id": project.project_id,
                    "from": previous,
                    "to": target.value,
                    "trigger": trigger.value,
                }
            },
        )
    return target.value


def _validate_person(name: str, email: str) -> tuple[str, str]:
    name = (name or "").strip()
    email = (email or "").strip().lower()
    errors = []
    if not name:
        errors.append({"field": "name", "message": "Name is required"})
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        errors.append({"field": "email", "message": "A valid email is required"})
    if errors:
        raise ValidationDomainError(detail="Invalid submitter", errors=errors)
    return name, email


async def _load_for_client(
    session: AsyncSession, deliverable_id: str, principal: Principal
) -> tuple[Deliverable, Project]:
    deliverable = await session.get(Deliverable, deliverable_id)
    if deliverable is None:
        raise NotFoundError(detail="Deliverable not found")
    project = await load_project(session, deliverable.project_id, for_update=True)
    ensure_access(project, principal)
    return deliverable, project


def _ensure_reviewable(project: Project, deliverable: Deliverable) -> None:
    if project.portal_stage in project_statuses.RELEASED_STAGES:
        raise StageTransitionError(detail="Project is already released", code="already_released")
    if project.portal_stage not in REVIEWABLE_STAGES:
        raise StageTransitionError(detail="Project is not in review")
    if deliverable.state != deliverable_statuses.STATE_REVIEW:
        raise StageTransitionError(
            detail="Deliverable has not been sent for review", code="not_in_review"
        )


async def submit_feedback(
    uow: UnitOfWork,
    deliverable_id: str,
    principal: Principal,
    *,
    feedback_type: FeedbackType,
    name: str,
    email: str,
    notes: str | None = None,
) -> FeedbackResult:
    """Record review feedback on a deliverable.

    Feedback is kept whether or not the project is paid. A revision request
    keeps the project in review; approvals never move the stage by
    themselves, they only make sign-off possible.
    """
    name, email = _validate_person(name, email)
    notes = notes.strip() if notes else None
    if feedback_type == FeedbackType.NEEDS_REVISION and not notes:
        raise ValidationDomainError(
            detail="Describe the requested changes",
            errors=[{"field": "notes", "message": "Notes are required for a revision request"}],
        )

    async def _submit(session: AsyncSession) -> FeedbackResult:
        deliverable, project = await _load_for_client(session, deliverable_id, principal)
        _ensure_reviewable(project, deliverable)

        if feedback_type == FeedbackType.NEEDS_REVISION:
            apply_stage_trigger(project, StageTrigger.REVISION_REQUESTED)
        else:
            project.last_update_at = _now()

        feedback = Feedback(
            project_id=project.project_id,
            deliverable_id=deliverable.deliverable_id,
            feedback_type=feedback_type.value,
            notes=notes,
            submitted_by_name=name,
            submitted_by_email=email,
            created_at=_now(),
        )
        session.add(feedback)
        await session.flush()
        return FeedbackResult(
            feedback_id=feedback.feedback_id,
            feedback_type=feedback.feedback_type,
            portal_stage=project.portal_stage,
            release_blocked_reason=release_blocked_reason(project),
        )

    result = await uow.with_transaction(_submit)
    logger.info(
        "deliverable_feedback_submitted",
        extra={
            "extra": {
                "deliverable_id": deliverable_id,
                "feedback_type": result.feedback_type,
                "release_blocked_reason": result.release_blocked_reason,
            }
        },
    )
    return result


async def _latest_feedback(session: AsyncSession, deliverable_id: str) -> Feedback | None:
    stmt = (
        select(Feedback)
        .where(Feedback.deliverable_id == deliverable_id)
        .order_by(Feedback.created_at.desc(), Feedback.feedback_id.desc())
        .limit(1)
    )
    return await session.scalar(stmt)


async def sign_off(
    uow: UnitOfWork,
    deliverable_id: str,
    principal: Principal,
    *,
    name: str,
    email: str,
) -> SignoffResult:
    name, email = _validate_person(name, email)

    async def _sign(session: AsyncSession) -> SignoffResult:
        deliverable, project = await _load_for_client(session, deliverable_id, principal)
        _ensure_reviewable(project, deliverable)

        latest = await latest_deliverable(session, project.project_id)
        if latest is None or latest.deliverable_id != deliverable.deliverable_id:
            raise StageTransitionError(detail="Only the latest deliverable can be signed off")

        feedback = await _latest_feedback(session, deliverable.deliverable_id)
        if feedback is None or feedback.feedback_type not in APPROVING_FEEDBACK:
            raise StageTransitionError(
                detail="The latest feedback on this deliverable must be an approval",
                code="approval_required",
            )

        apply_stage_trigger(project, StageTrigger.SIGN_OFF)
        deliverable.state = deliverable_statuses.STATE_FINAL
        signoff = Signoff(
            project_id=project.project_id,
            deliverable_id=deliverable.deliverable_id,
            signed_by_name=name,
            signed_by_email=email,
            action=deliverable_statuses.SIGNOFF_APPROVED_AND_RELEASED,
            signed_at=_now(),
        )
        session.add(signoff)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise StageTransitionError(
                detail="Project is already signed off", code="already_released"
            ) from exc
        return SignoffResult(
            signoff_id=signoff.signoff_id,
            deliverable_id=deliverable.deliverable_id,
            portal_stage=project.portal_stage,
            signed_at=signoff.signed_at,
        )

    result = await uow.with_transaction(_sign)
    logger.info(
        "deliverable_signed_off",
        extra={"extra": {"deliverable_id": result.deliverable_id, "signoff_id": result.signoff_id}},
    )
    return result


async def advance_stage(uow: UnitOfWork, project_id: str, trigger: StageTrigger) -> Project:
    async def _advance(session: AsyncSession) -> Project:
        project = await load_project(session, project_id, for_update=True)
        apply_stage_trigger(project, trigger)
        return project

    return await uow.with_transaction(_advance)


async def start_delivery(uow: UnitOfWork, project_id: str) -> Project:
    return await advance_stage(uow, project_id, StageTrigger.START_DELIVERY)


async def approve_stage(uow: UnitOfWork, project_id: str) -> Project:
    return await advance_stage(uow, project_id, StageTrigger.ADMIN_APPROVE)


async def complete_project(uow: UnitOfWork, project_id: str) -> Project:
    return await advance_stage(uow, project_id, StageTrigger.COMPLETE)
