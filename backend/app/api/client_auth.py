import logging

from fastapi import HTTPException, Request, status
from fastapi.security.utils import get_authorization_scheme_param

from app.api.admin_auth import AdminAuthException, authenticate_admin, security
from app.infra.auth import InvalidTokenError, Principal, principal_from_token
from app.infra.logging import update_log_context
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)


def _unauthorized(reason: str) -> HTTPException:
    metrics.record_auth_failure("client", reason)
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid authentication",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_requester(request: Request) -> Principal:
    """Client bearer token or admin Basic credentials.

    Ownership of the target project is checked by the domain layer; this only
    establishes who is asking.
    """
    authorization = request.headers.get("Authorization")
    scheme, param = get_authorization_scheme_param(authorization)
    scheme = scheme.lower()

    if scheme == "bearer" and param:
        app_settings = getattr(request.app.state, "app_settings", None) or settings
        try:
            principal = principal_from_token(param, app_settings.auth_secret_key)
        except InvalidTokenError as exc:
            logger.info("client_auth_failed", extra={"extra": {"reason": str(exc), "path": request.url.path}})
            raise _unauthorized("invalid_token") from exc
        request.state.principal = principal
        update_log_context(role=principal.role, client_id=principal.subject)
        return principal

    if scheme == "basic":
        credentials = await security(request)
        try:
            principal = authenticate_admin(credentials)
        except AdminAuthException as exc:
            raise _unauthorized(exc.reason) from exc
        if principal is None:
            raise _unauthorized("invalid_credentials")
        request.state.principal = principal
        update_log_context(role=principal.role, operator_id=principal.subject)
        return principal

    raise _unauthorized("missing_credentials")
