"""Central registry for SQLAlchemy models with string-based relationships.

Importing this module loads all ORM classes that may be referenced by string to
avoid mapper configuration errors when individual models are imported in
isolation.
"""

from app.domain.projects import db_models as project_db_models  # noqa: F401
from app.domain.deliverables import db_models as deliverable_db_models  # noqa: F401
from app.domain.payments import db_models as payment_db_models  # noqa: F401
from app.domain.invoices import db_models as invoice_db_models  # noqa: F401
