"""
Wallet API Router

Endpoints for the wallet ledger:
- GET /api/wallet/{user_id}/balance
- GET /api/wallet/{user_id}/transactions
- POST /api/wallet/{user_id}/credit
- POST /api/wallet/{user_id}/debit
- POST /api/wallet/{user_id}/deposit-requests
- GET /api/wallet/deposits/pending
- POST /api/wallet/deposits/{transaction_id}/approve
- GET /api/wallet/reports/daily
"""

from datetime import date
from functools import lru_cache
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from database.connection import get_session_factory
from database.ledger_models import LedgerTransactionType
from middleware.internal_auth import verify_internal_auth, require_operator
from reconciliation.endpoints.reconciliation_api import http_error_for
from services.ledger_service import (
    WalletBalance, TransactionHistoryPage, db_to_ledger_transaction
)
from services.wallet_service import WalletService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet", tags=["Wallet"])


# ==================== Request Models ====================

class WalletMutationRequest(BaseModel):
    amount: float = Field(..., gt=0)
    description: Optional[str] = None
    transaction_type: Optional[LedgerTransactionType] = None
    external_reference: Optional[str] = Field(default=None, max_length=128)


class DepositRequest(BaseModel):
    amount: float = Field(..., gt=0)
    reference: Optional[str] = Field(default=None, max_length=64, description="Bank reference from the receipt")
    description: str = "Bank deposit"


# ==================== Dependencies ====================

@lru_cache()
def get_wallet_service() -> WalletService:
    return WalletService(get_session_factory())


def _mutation_response(result) -> dict:
    return {
        "applied": result.applied,
        "transaction": db_to_ledger_transaction(result.transaction).model_dump(),
        "balance": float(result.transaction.balance_after) if result.transaction.balance_after is not None else None,
    }


# ==================== BALANCE / HISTORY ====================

@router.get("/{user_id}/balance", response_model=WalletBalance)
async def get_balance(
    user_id: str,
    service: WalletService = Depends(get_wallet_service),
    _auth=Depends(verify_internal_auth)
):
    """Current balance; 0 for a user without a wallet"""
    try:
        return await service.get_wallet_balance(user_id)
    except Exception as e:
        raise http_error_for(e, "get balance")


@router.get("/{user_id}/transactions", response_model=TransactionHistoryPage)
async def get_transactions(
    user_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    service: WalletService = Depends(get_wallet_service),
    _auth=Depends(verify_internal_auth)
):
    """Newest first"""
    try:
        return await service.get_transaction_history(user_id, page=page, limit=limit)
    except Exception as e:
        raise http_error_for(e, "get transaction history")


# ==================== MUTATIONS ====================

@router.post("/{user_id}/credit")
async def credit_wallet(
    user_id: str,
    request: WalletMutationRequest,
    service: WalletService = Depends(get_wallet_service),
    _auth=Depends(verify_internal_auth)
):
    """
    Credit a wallet (winnings, refunds). Repeating an external_reference
    returns the original transaction with applied=false.
    """
    try:
        result = await service.credit(
            user_id,
            request.amount,
            description=request.description,
            transaction_type=request.transaction_type or LedgerTransactionType.WINNING,
            external_reference=request.external_reference,
        )
        return _mutation_response(result)
    except Exception as e:
        raise http_error_for(e, "credit wallet")


@router.post("/{user_id}/debit")
async def debit_wallet(
    user_id: str,
    request: WalletMutationRequest,
    service: WalletService = Depends(get_wallet_service),
    _auth=Depends(verify_internal_auth)
):
    """Debit a wallet; 402 when the balance is too low"""
    try:
        result = await service.debit(
            user_id,
            request.amount,
            description=request.description,
            transaction_type=request.transaction_type or LedgerTransactionType.GAME_ENTRY,
            external_reference=request.external_reference,
        )
        return _mutation_response(result)
    except Exception as e:
        raise http_error_for(e, "debit wallet")


# ==================== DEPOSITS ====================

@router.post("/{user_id}/deposit-requests")
async def request_deposit(
    user_id: str,
    request: DepositRequest,
    service: WalletService = Depends(get_wallet_service),
    _auth=Depends(verify_internal_auth)
):
    try:
        txn = await service.request_deposit(
            user_id, request.amount, reference=request.reference, description=request.description
        )
        return db_to_ledger_transaction(txn).model_dump()
    except Exception as e:
        raise http_error_for(e, "request deposit")


@router.get("/deposits/pending")
async def get_pending_deposits(
    limit: int = Query(default=50, ge=1, le=200),
    service: WalletService = Depends(get_wallet_service),
    _auth=Depends(verify_internal_auth)
):
    try:
        items = await service.get_pending_deposits(limit)
        return {"deposits": [t.model_dump() for t in items], "count": len(items)}
    except Exception as e:
        raise http_error_for(e, "get pending deposits")


@router.post("/deposits/{transaction_id}/approve")
async def approve_deposit(
    transaction_id: str,
    service: WalletService = Depends(get_wallet_service),
    operator_id: str = Depends(require_operator)
):
    """
    Approve a manual deposit request. Deposits opened for a notification
    are approved through /reconciliation/records/{id}/approve.
    """
    try:
        result = await service.approve_pending_deposit(transaction_id, operator_id)
        return _mutation_response(result)
    except Exception as e:
        raise http_error_for(e, "approve deposit")


# ==================== REPORTS ====================

@router.get("/reports/daily")
async def daily_report(
    day: Optional[date] = Query(default=None, description="UTC day, defaults to today"),
    service: WalletService = Depends(get_wallet_service),
    _auth=Depends(verify_internal_auth)
):
    try:
        return await service.generate_daily_report(day)
    except Exception as e:
        raise http_error_for(e, "generate daily report")
