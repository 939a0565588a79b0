from enum import Enum

from app.domain.errors import PaymentRequiredError, StageTransitionError
from app.domain.projects.statuses import PortalStage


class StageTrigger(str, Enum):
    START_DELIVERY = "START_DELIVERY"
    SUBMIT_FOR_REVIEW = "SUBMIT_FOR_REVIEW"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    ADMIN_APPROVE = "ADMIN_APPROVE"
    SIGN_OFF = "SIGN_OFF"
    COMPLETE = "COMPLETE"


ADMIN_TRIGGERS = {StageTrigger.START_DELIVERY, StageTrigger.ADMIN_APPROVE, StageTrigger.COMPLETE}
PAYMENT_GUARDED_STAGES = {PortalStage.RELEASED, PortalStage.COMPLETE}

TRANSITIONS: dict[tuple[PortalStage, StageTrigger], PortalStage] = {
    (PortalStage.SCHEDULED, StageTrigger.START_DELIVERY): PortalStage.IN_DELIVERY,
    (PortalStage.IN_DELIVERY, StageTrigger.SUBMIT_FOR_REVIEW): PortalStage.IN_REVIEW,
    (PortalStage.IN_REVIEW, StageTrigger.SUBMIT_FOR_REVIEW): PortalStage.IN_REVIEW,
    (PortalStage.APPROVED, StageTrigger.SUBMIT_FOR_REVIEW): PortalStage.IN_REVIEW,
    (PortalStage.IN_REVIEW, StageTrigger.REVISION_REQUESTED): PortalStage.IN_REVIEW,
    (PortalStage.APPROVED, StageTrigger.REVISION_REQUESTED): PortalStage.IN_REVIEW,
    (PortalStage.IN_REVIEW, StageTrigger.ADMIN_APPROVE): PortalStage.APPROVED,
    (PortalStage.IN_REVIEW, StageTrigger.SIGN_OFF): PortalStage.RELEASED,
    (PortalStage.APPROVED, StageTrigger.SIGN_OFF): PortalStage.RELEASED,
    (PortalStage.RELEASED, StageTrigger.COMPLETE): PortalStage.COMPLETE,
}


def next_stage(current: str | PortalStage, trigger: StageTrigger) -> PortalStage:
    """Target stage for ``trigger`` from ``current``.

    Raises :class:`StageTransitionError` for pairs outside the table; released
    projects get the ``already_released`` code so callers can tell the cases
    apart.
    """
    stage = PortalStage(current)
    target = TRANSITIONS.get((stage, trigger))
    if target is not None:
        return target
    if stage in (PortalStage.RELEASED, PortalStage.COMPLETE) and trigger != StageTrigger.COMPLETE:
        raise StageTransitionError(
            detail=f"Project is already {stage.value.lower()}",
            code="already_released",
        )
    raise StageTransitionError(
        detail=f"Cannot apply {trigger.value} while project is {stage.value}",
    )


def guard_payment(target: PortalStage, payment_satisfied: bool) -> None:
    """Released stages are reachable only when payment is satisfied."""
    if target in PAYMENT_GUARDED_STAGES and not payment_satisfied:
        raise PaymentRequiredError(detail="Payment is required before the project can be released")


def allowed_triggers(current: str | PortalStage) -> list[StageTrigger]:
    stage = PortalStage(current)
    return [trigger for (source, trigger) in TRANSITIONS if source == stage]
