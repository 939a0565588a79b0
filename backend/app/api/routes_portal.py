from fastapi import APIRouter, Depends, status

from app.api.admin_auth import require_admin
from app.api.client_auth import require_requester
from app.dependencies import get_app_settings, get_unit_of_work
from app.domain.delivery import schemas as delivery_schemas
from app.domain.delivery import service as delivery_service
from app.domain.projects import schemas as project_schemas
from app.domain.projects import service as project_service
from app.infra.auth import Principal
from app.infra.db import UnitOfWork
from app.settings import Settings

router = APIRouter()

_STAGE_ACTIONS = {
    "start": delivery_service.start_delivery,
    "approve": delivery_service.approve_stage,
    "complete": delivery_service.complete_project,
}


@router.get("/v1/projects/{public_id}", response_model=project_schemas.PortalSummaryResponse)
async def get_project_portal(
    public_id: str,
    uow: UnitOfWork = Depends(get_unit_of_work),
    principal: Principal = Depends(require_requester),
) -> project_schemas.PortalSummaryResponse:
    summary = await project_service.get_portal_summary(uow, public_id, principal)
    return project_schemas.PortalSummaryResponse.model_validate(summary)


@router.post(
    "/v1/deliverables/{deliverable_id}/feedback",
    status_code=status.HTTP_201_CREATED,
    response_model=delivery_schemas.FeedbackResponse,
)
async def submit_feedback(
    deliverable_id: str,
    payload: delivery_schemas.FeedbackRequest,
    uow: UnitOfWork = Depends(get_unit_of_work),
    principal: Principal = Depends(require_requester),
) -> delivery_schemas.FeedbackResponse:
    result = await delivery_service.submit_feedback(
        uow,
        deliverable_id,
        principal,
        feedback_type=payload.feedback_type,
        name=payload.name,
        email=payload.email,
        notes=payload.notes,
    )
    return delivery_schemas.FeedbackResponse(
        feedback_id=result.feedback_id,
        feedback_type=result.feedback_type,
        portal_stage=result.portal_stage,
        release_blocked_reason=result.release_blocked_reason,
    )


@router.post(
    "/v1/deliverables/{deliverable_id}/signoff",
    status_code=status.HTTP_201_CREATED,
    response_model=delivery_schemas.SignoffResponse,
)
async def sign_off_deliverable(
    deliverable_id: str,
    payload: delivery_schemas.SignoffRequest,
    uow: UnitOfWork = Depends(get_unit_of_work),
    principal: Principal = Depends(require_requester),
) -> delivery_schemas.SignoffResponse:
    result = await delivery_service.sign_off(
        uow, deliverable_id, principal, name=payload.name, email=payload.email
    )
    return delivery_schemas.SignoffResponse(
        signoff_id=result.signoff_id,
        deliverable_id=result.deliverable_id,
        portal_stage=result.portal_stage,
        signed_at=result.signed_at,
    )


@router.post("/v1/admin/projects/{project_id}/stage", response_model=delivery_schemas.StageResponse)
async def change_project_stage(
    project_id: str,
    payload: delivery_schemas.StageRequest,
    uow: UnitOfWork = Depends(get_unit_of_work),
    _principal: Principal = Depends(require_admin),
) -> delivery_schemas.StageResponse:
    project = await _STAGE_ACTIONS[payload.action](uow, project_id)
    return delivery_schemas.StageResponse(project_id=project.project_id, portal_stage=project.portal_stage)


@router.post(
    "/v1/admin/projects/{project_id}/portal-token",
    status_code=status.HTTP_201_CREATED,
    response_model=project_schemas.PortalTokenResponse,
)
async def issue_portal_token(
    project_id: str,
    uow: UnitOfWork = Depends(get_unit_of_work),
    app_settings: Settings = Depends(get_app_settings),
    _principal: Principal = Depends(require_admin),
) -> project_schemas.PortalTokenResponse:
    issued = await project_service.issue_portal_token(
        uow,
        project_id,
        secret=app_settings.auth_secret_key,
        ttl_minutes=app_settings.client_token_ttl_minutes,
    )
    return project_schemas.PortalTokenResponse(
        project_id=issued.project_id,
        public_id=issued.public_id,
        access_token=issued.access_token,
        expires_at=issued.expires_at,
    )
