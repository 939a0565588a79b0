import logging
import secrets
import uuid

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.security.utils import get_authorization_scheme_param

from app.infra.auth import ROLE_ADMIN, Principal
from app.infra.logging import update_log_context
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

security = HTTPBasic(auto_error=False)


class AdminAuthException(HTTPException):
    def __init__(self, *, reason: str, detail: str = "Invalid authentication") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Basic"},
        )
        self.reason = reason


def _resolve_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    return request_id or str(uuid.uuid4())


def _log_admin_auth_failure(
    request: Request, *, reason: str, credentials: HTTPBasicCredentials | None
) -> None:
    scheme, _ = get_authorization_scheme_param(request.headers.get("Authorization"))
    payload = {
        "reason": reason,
        "path": request.url.path,
        "method": request.method,
        "request_id": _resolve_request_id(request),
        "auth_scheme": scheme.lower() if scheme else None,
    }
    if credentials and credentials.username:
        payload["presented_username"] = credentials.username
    logger.warning("admin_auth_failed", extra={"extra": payload})
    metrics.record_auth_failure("admin", reason)


def authenticate_admin(credentials: HTTPBasicCredentials | None) -> Principal | None:
    """Principal for valid admin credentials, ``None`` when they do not match.

    Raises AdminAuthException when admin access is not configured at all.
    """
    username = settings.admin_basic_username
    password = settings.admin_basic_password
    if not username or not password:
        raise AdminAuthException(reason="unconfigured_credentials")
    if credentials is None:
        return None
    if secrets.compare_digest(credentials.username.encode(), username.encode()) and secrets.compare_digest(
        credentials.password.encode(), password.encode()
    ):
        return Principal(subject=username, role=ROLE_ADMIN)
    return None


async def require_admin(
    request: Request, credentials: HTTPBasicCredentials | None = Depends(security)
) -> Principal:
    cached: Principal | None = getattr(request.state, "principal", None)
    if cached is not None and cached.is_admin:
        return cached
    try:
        principal = authenticate_admin(credentials)
    except AdminAuthException as exc:
        _log_admin_auth_failure(request, reason=exc.reason, credentials=credentials)
        raise
    if principal is None:
        reason = "missing_credentials" if credentials is None else "invalid_credentials"
        _log_admin_auth_failure(request, reason=reason, credentials=credentials)
        raise AdminAuthException(reason=reason)
    request.state.principal = principal
    update_log_context(role=ROLE_ADMIN, operator_id=principal.subject)
    return principal
