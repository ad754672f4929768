from .wallet import router as wallet_router
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    'wallet_router',
    'reconciliation_router',
]
