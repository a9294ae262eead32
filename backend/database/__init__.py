from .connection import (
    get_db, get_engine, get_session_factory, build_engine,
    build_session_factory, create_tables, init_db, Base
)

# Import models to ensure they are registered with Base
from .reconciliation_models import ReconciliationRunDB, ReconciliationItemDB
from .payment_models import (
    PaymentDB, EventOrderDB, DonationDB, WebhookEventDB,
    PayableStatus, PaymentStatus, WebhookEventStatus
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'build_engine',
    'build_session_factory', 'create_tables', 'init_db', 'Base',
    # Run store
    'ReconciliationRunDB', 'ReconciliationItemDB',
    # Payables
    'PaymentDB', 'EventOrderDB', 'DonationDB', 'WebhookEventDB',
    'PayableStatus', 'PaymentStatus', 'WebhookEventStatus',
]
