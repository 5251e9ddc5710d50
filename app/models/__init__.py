# Models package — import all models here so Alembic can discover them.

from app.models.user import User  # noqa: F401
from app.models.subscription import Subscription  # noqa: F401
from app.models.billing import BillingHistoryEntry  # noqa: F401
from app.models.webhook_log import WebhookLog  # noqa: F401
from app.models.audit import AuditEvent  # noqa: F401
from app.models.job_lease import JobLease  # noqa: F401
