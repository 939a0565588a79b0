LEDGER_SUCCESS = "SUCCESS"
LEDGER_FAILED = "FAILED"
LEDGER_UNMATCHED = "UNMATCHED"

LEDGER_STATUSES = {LEDGER_SUCCESS, LEDGER_FAILED, LEDGER_UNMATCHED}

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_CHECKOUT_EXPIRED = "checkout.session.expired"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"
EVENT_CHARGE_REFUNDED = "charge.refunded"
EVENT_MANUAL_PAYMENT = "manual.payment"
EVENT_RECONCILIATION = "manual.reconciliation"

METADATA_PROJECT_PUBLIC_ID = "project_public_id"
METADATA_ENVIRONMENT = "environment"
METADATA_PURPOSE = "purpose"
METADATA_CLIENT_ID = "client_id"
METADATA_INVOICE_ID = "invoice_id"

PURPOSE_PROJECT_PAYMENT = "project_payment"
