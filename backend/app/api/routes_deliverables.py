import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse

from app.api.admin_auth import require_admin
from app.api.client_auth import require_requester
from app.dependencies import (
    get_app_settings,
    get_storage,
    get_unit_of_work,
    get_watermark_pipeline,
    resource_base_url,
)
from app.domain.deliverables import schemas as deliverable_schemas
from app.domain.deliverables import service as deliverable_service
from app.domain.deliverables.watermark import WatermarkPipeline, normalize_mime_type
from app.infra.auth import Principal
from app.infra.db import UnitOfWork
from app.infra.storage import StorageBackend
from app.settings import Settings

router = APIRouter()
logger = logging.getLogger(__name__)


def _link_response(link: deliverable_service.IssuedLink) -> JSONResponse:
    body = deliverable_schemas.DeliverableLinkResponse(
        url=link.url,
        variant=link.variant.value,
        draft=link.draft,
        filename=link.filename,
        expires_in=link.expires_in,
    )
    return JSONResponse(
        content=body.model_dump(),
        headers={
            "Cache-Control": "no-store",
            "X-Watermarked": "true" if link.watermarked else "false",
            "Content-Disposition": f'attachment; filename="{link.filename}"',
        },
    )


@router.post(
    "/v1/admin/projects/{project_id}/deliverables",
    status_code=status.HTTP_201_CREATED,
    response_model=deliverable_schemas.DeliverableResponse,
)
async def upload_deliverable(
    project_id: str,
    title: str = Form(...),
    send_for_review: bool = Form(False),
    file: UploadFile = File(...),
    uow: UnitOfWork = Depends(get_unit_of_work),
    storage: StorageBackend = Depends(get_storage),
    pipeline: WatermarkPipeline = Depends(get_watermark_pipeline),
    app_settings: Settings = Depends(get_app_settings),
    principal: Principal = Depends(require_admin),
) -> deliverable_schemas.DeliverableResponse:
    data = await file.read(app_settings.max_upload_bytes + 1)
    if len(data) > app_settings.max_upload_bytes:
        logger.info(
            "deliverable_upload_rejected",
            extra={"extra": {"project_id": project_id, "reason": "too_large"}},
        )
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large")

    deliverable = await deliverable_service.upload_deliverable(
        uow,
        storage,
        pipeline,
        deliverable_service.UploadRequest(
            project_id=project_id,
            title=title,
            filename=file.filename or "deliverable",
            mime_type=normalize_mime_type(file.content_type),
            data=data,
            uploaded_by=principal.subject,
            send_for_review=send_for_review,
        ),
        max_bytes=app_settings.max_upload_bytes,
    )
    return deliverable_schemas.DeliverableResponse.model_validate(deliverable)


@router.post(
    "/v1/admin/deliverables/{deliverable_id}/review",
    response_model=deliverable_schemas.DeliverableResponse,
)
async def send_for_review(
    deliverable_id: str,
    uow: UnitOfWork = Depends(get_unit_of_work),
    _principal: Principal = Depends(require_admin),
) -> deliverable_schemas.DeliverableResponse:
    deliverable = await deliverable_service.mark_for_review(uow, deliverable_id)
    return deliverable_schemas.DeliverableResponse.model_validate(deliverable)


@router.get(
    "/v1/deliverables/{deliverable_id}/download",
    response_model=deliverable_schemas.DeliverableLinkResponse,
)
async def download_deliverable(
    deliverable_id: str,
    request: Request,
    uow: UnitOfWork = Depends(get_unit_of_work),
    storage: StorageBackend = Depends(get_storage),
    app_settings: Settings = Depends(get_app_settings),
    principal: Principal = Depends(require_requester),
) -> JSONResponse:
    link = await deliverable_service.issue_download(
        uow,
        storage,
        deliverable_id,
        principal,
        resource_base=resource_base_url(request),
        ttl_seconds=app_settings.signed_url_ttl_seconds,
    )
    return _link_response(link)


@router.get(
    "/v1/deliverables/{deliverable_id}/view",
    response_model=deliverable_schemas.DeliverableLinkResponse,
)
async def view_deliverable(
    deliverable_id: str,
    request: Request,
    uow: UnitOfWork = Depends(get_unit_of_work),
    storage: StorageBackend = Depends(get_storage),
    app_settings: Settings = Depends(get_app_settings),
    principal: Principal = Depends(require_requester),
) -> JSONResponse:
    link = await deliverable_service.issue_view(
        uow,
        storage,
        deliverable_id,
        principal,
        resource_base=resource_base_url(request),
        ttl_seconds=app_settings.signed_url_ttl_seconds,
    )
    return _link_response(link)
