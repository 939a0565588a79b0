from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.admin_auth import require_admin
from app.dependencies import get_app_settings, get_stripe_client, get_unit_of_work
from app.domain.payments import ledger
from app.domain.payments import schemas as payment_schemas
from app.domain.payments import service as payment_service
from app.domain.projects.service import load_project
from app.infra.auth import Principal
from app.infra.db import UnitOfWork
from app.infra.metrics import metrics
from app.settings import Settings
from app.shared.circuit_breaker import CircuitBreakerOpenError

router = APIRouter(prefix="/v1/admin")
logger = logging.getLogger(__name__)


def _outcome_response(outcome: payment_service.PaymentOutcome) -> payment_schemas.PaymentOutcomeResponse:
    return payment_schemas.PaymentOutcomeResponse(
        project_id=outcome.project_id,
        payment_status=outcome.payment_status,
        skipped=outcome.skipped,
        reason=outcome.reason,
    )


def _link_response(project) -> payment_schemas.PaymentLinkResponse:
    return payment_schemas.PaymentLinkResponse(
        project_id=project.project_id,
        payment_link_id=project.payment_link_id,
        payment_link_url=project.payment_link_url,
    )


@router.post(
    "/projects/{project_id}/mark-paid",
    response_model=payment_schemas.PaymentOutcomeResponse,
)
async def mark_project_paid(
    project_id: str,
    payload: payment_schemas.ManualPaymentRequest,
    uow: UnitOfWork = Depends(get_unit_of_work),
    principal: Principal = Depends(require_admin),
) -> payment_schemas.PaymentOutcomeResponse:
    outcome = await payment_service.mark_paid_manually(uow, project_id, payload.reason, principal.subject)
    return _outcome_response(outcome)


@router.put(
    "/projects/{project_id}/payment-link",
    response_model=payment_schemas.PaymentLinkResponse,
)
async def set_payment_link(
    project_id: str,
    payload: payment_schemas.PaymentLinkRequest,
    uow: UnitOfWork = Depends(get_unit_of_work),
    _principal: Principal = Depends(require_admin),
) -> payment_schemas.PaymentLinkResponse:
    project = await payment_service.update_payment_link(uow, project_id, payload.url)
    return _link_response(project)


@router.post(
    "/projects/{project_id}/checkout",
    response_model=payment_schemas.PaymentLinkResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout(
    project_id: str,
    request: Request,
    uow: UnitOfWork = Depends(get_unit_of_work),
    app_settings: Settings = Depends(get_app_settings),
    _principal: Principal = Depends(require_admin),
) -> payment_schemas.PaymentLinkResponse:
    try:
        project = await payment_service.create_checkout_link(
            uow, get_stripe_client(request), project_id, app_settings
        )
    except CircuitBreakerOpenError as exc:
        metrics.record_stripe_circuit_open()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe temporarily unavailable"
        ) from exc
    except ValueError as exc:
        logger.warning("stripe_checkout_unavailable", extra={"extra": {"reason": str(exc)}})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe checkout is not configured"
        ) from exc
    return _link_response(project)


@router.get(
    "/projects/{project_id}/payment-events",
    response_model=payment_schemas.PaymentEventListResponse,
)
async def list_payment_events(
    project_id: str,
    uow: UnitOfWork = Depends(get_unit_of_work),
    _principal: Principal = Depends(require_admin),
) -> payment_schemas.PaymentEventListResponse:
    async def _list(session: AsyncSession):
        await load_project(session, project_id)
        return await ledger.list_project_events(session, project_id)

    events = await uow.with_transaction(_list)
    return payment_schemas.PaymentEventListResponse(
        events=[payment_schemas.PaymentEventResponse.model_validate(event) for event in events]
    )


@router.get(
    "/payments/unmatched",
    response_model=payment_schemas.PaymentEventListResponse,
)
async def list_unmatched_events(
    uow: UnitOfWork = Depends(get_unit_of_work),
    _principal: Principal = Depends(require_admin),
) -> payment_schemas.PaymentEventListResponse:
    events = await uow.with_transaction(ledger.list_unmatched)
    return payment_schemas.PaymentEventListResponse(
        events=[payment_schemas.PaymentEventResponse.model_validate(event) for event in events]
    )


@router.post(
    "/payments/unmatched/{event_id}/reconcile",
    response_model=payment_schemas.PaymentOutcomeResponse,
)
async def reconcile_event(
    event_id: str,
    payload: payment_schemas.ReconcileRequest,
    uow: UnitOfWork = Depends(get_unit_of_work),
    principal: Principal = Depends(require_admin),
) -> payment_schemas.PaymentOutcomeResponse:
    outcome = await payment_service.reconcile_unmatched(uow, event_id, payload.project_id, principal.subject)
    return _outcome_response(outcome)
