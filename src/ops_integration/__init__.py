# ops_integration package
__version__ = "0.1.0"

from .config import Settings
from .retry import RetryOptions, RetryError, with_retry, normalize_error
from .database import (
    OutboxEvent,
    OutboxStatus,
    PaymentRecord,
    init_db,
    close_db,
    get_db,
)
from .services import PaymentRecordService

# Outbox exports
from .outbox import (
    OutboxDispatcher,
    OutboxPoller,
    OutboxEventType,
    BatchStats,
    enqueue_event,
)

# Reconciliation exports
from .reconciliation import (
    ReconciliationRunner,
    ReconciliationResult,
    AppointmentMatcher,
    map_charge_to_payment_fields,
    get_charge_fetcher,
)
