from enum import Enum

STATE_DRAFT = "DRAFT"
STATE_REVIEW = "REVIEW"
STATE_FINAL = "FINAL"

# Deliverable states only ever move forward through this order.
STATE_ORDER = (STATE_DRAFT, STATE_REVIEW, STATE_FINAL)

WATERMARK_APPLIED = "applied"
WATERMARK_UNSUPPORTED = "unsupported"
WATERMARK_FAILED = "failed"

SIGNOFF_APPROVED_AND_RELEASED = "APPROVED_AND_RELEASED"


class FeedbackType(str, Enum):
    APPROVE = "APPROVE"
    APPROVE_MINOR = "APPROVE_MINOR"
    NEEDS_REVISION = "NEEDS_REVISION"


APPROVING_FEEDBACK = {FeedbackType.APPROVE.value, FeedbackType.APPROVE_MINOR.value}


def can_advance(current: str, target: str) -> bool:
    return STATE_ORDER.index(target) > STATE_ORDER.index(current)
