from .connection import get_db, engine, AsyncSessionLocal, init_db, create_tables, Base

# Import models to ensure they are registered with Base
from .ledger_models import (
    WalletDB, LedgerTransactionDB, UserMappingDB,
    LedgerTransactionType, LedgerTransactionStatus
)

from .notification_models import (
    NotificationRecordDB, NotificationRole, NotificationStatus,
    Direction, ReferenceSource
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'create_tables', 'Base',
    # Ledger models
    'WalletDB', 'LedgerTransactionDB', 'UserMappingDB',
    'LedgerTransactionType', 'LedgerTransactionStatus',
    # Notification models
    'NotificationRecordDB', 'NotificationRole', 'NotificationStatus',
    'Direction', 'ReferenceSource',
]
