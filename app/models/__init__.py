# Models package — import all models here so Alembic can discover them.

from app.models.user import User  # noqa: F401
from app.models.course import Course  # noqa: F401
from app.models.billing import BillingCustomer, Subscription, Enrollment  # noqa: F401
from app.models.checkout_session import CheckoutSession  # noqa: F401
from app.models.processed_event import ProcessedEvent  # noqa: F401
from app.models.audit import AuditEvent  # noqa: F401
