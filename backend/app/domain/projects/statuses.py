from enum import Enum

PAYMENT_UNPAID = "UNPAID"
PAYMENT_PAID = "PAID"
PAYMENT_REFUNDED = "REFUNDED"

PAYMENT_STATUSES = {PAYMENT_UNPAID, PAYMENT_PAID, PAYMENT_REFUNDED}

PROVIDER_STRIPE = "STRIPE"
PROVIDER_MANUAL = "MANUAL"


class PortalStage(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_DELIVERY = "IN_DELIVERY"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    RELEASED = "RELEASED"
    COMPLETE = "COMPLETE"


RELEASED_STAGES = {PortalStage.RELEASED.value, PortalStage.COMPLETE.value}
