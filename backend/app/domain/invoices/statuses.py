DRAFT = "DRAFT"
SENT = "SENT"
PAID = "PAID"
VOID = "VOID"
REFUNDED = "REFUNDED"

INVOICE_STATUSES = {DRAFT, SENT, PAID, VOID, REFUNDED}

# Invoices the payment engine may settle when a checkout completes.
PAYABLE_STATUSES = {DRAFT, SENT}
