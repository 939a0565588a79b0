"""Deliverable uploads, review hand-off and gated link issuance."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.deliverables import gating, statuses
from app.domain.deliverables.db_models import Deliverable
from app.domain.deliverables.watermark import WatermarkPipeline, normalize_mime_type
from app.domain.delivery.service import apply_stage_trigger
from app.domain.delivery.state_machine import StageTrigger
from app.domain.errors import (
    AccessDeniedError,
    NotFoundError,
    PaymentRequiredError,
    StageTransitionError,
    ValidationDomainError,
)
from app.domain.projects import statuses as project_statuses
from app.domain.projects.db_models import Project
from app.domain.projects.service import ensure_access, load_project
from app.infra.auth import Principal
from app.infra.db import UnitOfWork
from app.infra.storage import StorageBackend

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class UploadRequest:
    project_id: str
    title: str
    filename: str
    mime_type: str
    data: bytes
    uploaded_by: str | None = None
    send_for_review: bool = False


@dataclass(frozen=True)
class IssuedLink:
    url: str
    variant: gating.Variant
    draft: bool
    filename: str
    expires_in: int

    @property
    def watermarked(self) -> bool:
        return self.variant == gating.Variant.WATERMARKED


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _safe_filename(filename: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", filename.rsplit("/", 1)[-1]).strip("._")
    return cleaned[:120] or "deliverable"


def _object_keys(project_id: str, deliverable_id: str, filename: str) -> tuple[str, str]:
    prefix = f"projects/{project_id}/deliverables/{deliverable_id}"
    return f"{prefix}/original/{filename}", f"{prefix}/preview/{filename}"


def _submit_for_review(project: Project, deliverable: Deliverable) -> None:
    if deliverable.state == statuses.STATE_FINAL:
        raise StageTransitionError(
            detail="Deliverable is already final",
            code="already_released",
        )
    apply_stage_trigger(project, StageTrigger.SUBMIT_FOR_REVIEW)
    if statuses.can_advance(deliverable.state, statuses.STATE_REVIEW):
        deliverable.state = statuses.STATE_REVIEW


async def upload_deliverable(
    uow: UnitOfWork,
    storage: StorageBackend,
    pipeline: WatermarkPipeline,
    request: UploadRequest,
    *,
    max_bytes: int,
) -> Deliverable:
    if not request.data:
        raise ValidationDomainError(detail="Uploaded file is empty")
    if len(request.data) > max_bytes:
        raise ValidationDomainError(detail=f"Uploaded file exceeds {max_bytes} bytes")
    title = request.title.strip()
    if not title:
        raise ValidationDomainError(detail="Title is required")

    mime_type = normalize_mime_type(request.mime_type) or "application/octet-stream"
    deliverable_id = str(uuid.uuid4())
    filename = _safe_filename(request.filename)
    download_key, preview_key = _object_keys(request.project_id, deliverable_id, filename)

    result = await pipeline.run(request.data, mime_type)
    await storage.put(key=download_key, data=request.data, content_type=mime_type)
    if result.has_preview:
        await storage.put(key=preview_key, data=result.data, content_type=mime_type)
    else:
        preview_key = None

    async def _persist(session: AsyncSession) -> Deliverable:
        project = await load_project(session, request.project_id, for_update=True)
        if project.portal_stage in project_statuses.RELEASED_STAGES:
            raise StageTransitionError(detail="Project is already released", code="already_released")
        current = await session.scalar(
            select(func.max(Deliverable.version)).where(Deliverable.project_id == project.project_id)
        )
        deliverable = Deliverable(
            deliverable_id=deliverable_id,
            project_id=project.project_id,
            title=title,
            version=(current or 0) + 1,
            state=statuses.STATE_DRAFT,
            preview_key=preview_key,
            download_key=download_key,
            watermark_status=result.status,
            mime_type=mime_type,
            byte_size=len(request.data),
            original_filename=filename,
            uploaded_by=request.uploaded_by,
        )
        session.add(deliverable)
        if request.send_for_review:
            _submit_for_review(project, deliverable)
        else:
            project.last_update_at = _now()
        await session.flush()
        return deliverable

    try:
        deliverable = await uow.with_transaction(_persist)
    except Exception:
        for key in filter(None, (download_key, preview_key)):
            try:
                await storage.delete(key=key)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "deliverable_cleanup_failed",
                    extra={"extra": {"project_id": request.project_id, "key": key}},
                    exc_info=True,
                )
        raise

    logger.info(
        "deliverable_uploaded",
        extra={
            "extra": {
                "project_id": deliverable.project_id,
                "deliverable_id": deliverable.deliverable_id,
                "version": deliverable.version,
                "watermark_status": deliverable.watermark_status,
                "byte_size": deliverable.byte_size,
            }
        },
    )
    return deliverable


async def _load_deliverable(session: AsyncSession, deliverable_id: str) -> Deliverable:
    deliverable = await session.get(Deliverable, deliverable_id)
    if deliverable is None:
        raise NotFoundError(detail="Deliverable not found")
    return deliverable


async def mark_for_review(uow: UnitOfWork, deliverable_id: str) -> Deliverable:
    async def _mark(session: AsyncSession) -> Deliverable:
        deliverable = await _load_deliverable(session, deliverable_id)
        project = await load_project(session, deliverable.project_id, for_update=True)
        _submit_for_review(project, deliverable)
        return deliverable

    return await uow.with_transaction(_mark)


async def _issue(
    uow: UnitOfWork,
    storage: StorageBackend,
    deliverable_id: str,
    principal: Principal,
    *,
    action: str,
    resource_base: str,
    ttl_seconds: int,
) -> IssuedLink:
    async def _decide(session: AsyncSession) -> tuple[Deliverable, gating.GateDecision | gating.Denied]:
        deliverable = await _load_deliverable(session, deliverable_id)
        project = await load_project(session, deliverable.project_id)
        ensure_access(project, principal)
        if action == gating.ACTION_DOWNLOAD:
            return deliverable, gating.resolve_download(deliverable, project)
        return deliverable, gating.resolve_view(deliverable)

    deliverable, decision = await uow.with_transaction(_decide)
    gating.record_decision(action, decision)
    log_extra = {
        "deliverable_id": deliverable.deliverable_id,
        "project_id": deliverable.project_id,
        "action": action,
    }

    if isinstance(decision, gating.Denied):
        logger.info("deliverable_access_denied", extra={"extra": {**log_extra, "reason": decision.reason}})
        if decision.reason == gating.REASON_PAYMENT_REQUIRED:
            raise PaymentRequiredError(detail="Payment is required before the final file is available")
        raise AccessDeniedError(
            detail="No watermarked preview is available for this deliverable",
            code=gating.REASON_PREVIEW_UNAVAILABLE,
        )

    filename = gating.download_filename(deliverable, decision)
    url = await storage.generate_signed_get_url(
        key=decision.key,
        expires_in=ttl_seconds,
        resource_url=f"{resource_base.rstrip('/')}/v1/files/{decision.key}",
        filename=filename,
    )
    logger.info(
        "deliverable_link_issued",
        extra={"extra": {**log_extra, "variant": decision.variant.value}},
    )
    return IssuedLink(
        url=url,
        variant=decision.variant,
        draft=decision.draft,
        filename=filename,
        expires_in=ttl_seconds,
    )


async def issue_download(
    uow: UnitOfWork,
    storage: StorageBackend,
    deliverable_id: str,
    principal: Principal,
    *,
    resource_base: str,
    ttl_seconds: int,
) -> IssuedLink:
    return await _issue(
        uow,
        storage,
        deliverable_id,
        principal,
        action=gating.ACTION_DOWNLOAD,
        resource_base=resource_base,
        ttl_seconds=ttl_seconds,
    )


async def issue_view(
    uow: UnitOfWork,
    storage: StorageBackend,
    deliverable_id: str,
    principal: Principal,
    *,
    resource_base: str,
    ttl_seconds: int,
) -> IssuedLink:
    return await _issue(
        uow,
        storage,
        deliverable_id,
        principal,
        action=gating.ACTION_VIEW,
        resource_base=resource_base,
        ttl_seconds=ttl_seconds,
    )
