from dataclasses import dataclass
from typing import List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None
    status: int = 400
    code: str = "domain_error"

    def __str__(self) -> str:
        return self.detail


@dataclass
class ValidationDomainError(DomainError):
    title: str = "Validation Error"
    type: str = "https://example.com/problems/validation-error"
    status: int = 422
    code: str = "validation_error"


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = "https://example.com/problems/not-found"
    status: int = 404
    code: str = "not_found"


@dataclass
class AccessDeniedError(DomainError):
    title: str = "Access Denied"
    type: str = "https://example.com/problems/access-denied"
    status: int = 403
    code: str = "forbidden"


@dataclass
class PaymentRequiredError(DomainError):
    """Guard violation: the action needs a paid project."""

    title: str = "Payment Required"
    type: str = "https://example.com/problems/payment-required"
    status: int = 402
    code: str = "payment_required"


@dataclass
class RefundedProjectError(DomainError):
    """Guard violation: refunded projects can never become paid again."""

    title: str = "Project Refunded"
    type: str = "https://example.com/problems/project-refunded"
    status: int = 409
    code: str = "project_refunded"


@dataclass
class StageTransitionError(DomainError):
    title: str = "Invalid Stage Transition"
    type: str = "https://example.com/problems/stage-transition"
    status: int = 409
    code: str = "invalid_stage_transition"


@dataclass
class TransientStorageError(DomainError):
    """Database unavailable or transaction conflict; safe to retry."""

    title: str = "Storage Unavailable"
    type: str = "https://example.com/problems/server-error"
    status: int = 503
    code: str = "storage_unavailable"
