"""Decides which rendition of a deliverable a requester may fetch.

The payment check always runs first, so an unpaid project never releases the
clean file whatever its delivery stage says. The clean file also needs the
deliverable itself to be FINAL, so a version uploaded after sign-off stays a
draft. A decision never substitutes the clean rendition when the watermarked
one is missing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.domain.deliverables import statuses
from app.domain.deliverables.db_models import Deliverable
from app.domain.projects import statuses as project_statuses
from app.domain.projects.db_models import Project
from app.infra.metrics import metrics

ACTION_DOWNLOAD = "download"
ACTION_VIEW = "view"

REASON_PAYMENT_REQUIRED = "payment_required"
REASON_PREVIEW_UNAVAILABLE = "preview_unavailable"


class Variant(str, Enum):
    CLEAN = "CLEAN"
    WATERMARKED = "WATERMARKED"


@dataclass(frozen=True)
class GateDecision:
    variant: Variant
    key: str
    draft: bool = False

    @property
    def watermarked(self) -> bool:
        return self.variant == Variant.WATERMARKED


@dataclass(frozen=True)
class Denied:
    reason: str


def _watermarked(deliverable: Deliverable) -> GateDecision | Denied:
    if not deliverable.preview_key:
        return Denied(REASON_PREVIEW_UNAVAILABLE)
    return GateDecision(Variant.WATERMARKED, deliverable.preview_key, draft=True)


def record_decision(action: str, decision: GateDecision | Denied) -> None:
    if isinstance(decision, Denied):
        metrics.record_download_decision(action, decision.reason)
    else:
        metrics.record_download_decision(action, decision.variant.value.lower())


def resolve_download(deliverable: Deliverable, project: Project) -> GateDecision | Denied:
    if project.payment_required and project.payment_status != project_statuses.PAYMENT_PAID:
        return Denied(REASON_PAYMENT_REQUIRED)
    if (
        project.portal_stage in project_statuses.RELEASED_STAGES
        and deliverable.state == statuses.STATE_FINAL
        and deliverable.download_key
    ):
        return GateDecision(Variant.CLEAN, deliverable.download_key)
    return _watermarked(deliverable)


def resolve_view(deliverable: Deliverable) -> GateDecision | Denied:
    """Viewing is always the watermarked rendition, paid or not."""
    return _watermarked(deliverable)


def download_filename(deliverable: Deliverable, decision: GateDecision) -> str:
    name = deliverable.original_filename or f"deliverable-v{deliverable.version}"
    if not decision.draft:
        return name
    stem, dot, suffix = name.rpartition(".")
    if not dot or not stem:
        return f"{name}-DRAFT"
    return f"{stem}-DRAFT.{suffix}"
