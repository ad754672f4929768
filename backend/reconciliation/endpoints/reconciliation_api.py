"""
Reconciliation API Endpoints

REST API for the deposit reconciliation engine:
- POST /api/reconciliation/ingest - Submit a payment notification
- POST /api/reconciliation/looks-like-payment - Pre-check chat text
- GET /api/reconciliation/pending - Operator review queue
- GET /api/reconciliation/records/{record_id} - Get a single record
- GET /api/reconciliation/records/{record_id}/candidates - Ranked counterparts
- POST /api/reconciliation/records/{record_id}/approve - Approve a record
- POST /api/reconciliation/records/{record_id}/reject - Reject a record
- POST /api/reconciliation/force-match - Pair two records and credit the payer
- POST /api/reconciliation/batch-approve - Approve several records
- POST /api/reconciliation/auto-approve-small - Approve small waiting deposits
- POST /api/reconciliation/sweep - Run the re-match sweep now
- GET /api/reconciliation/stats - Reconciliation statistics
- GET /api/reconciliation/channels - Supported payment channels
- GET /api/reconciliation/status - Module status
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from config import get_settings
from database.connection import get_session_factory
from middleware.internal_auth import verify_internal_auth, require_operator
from reconciliation.channel_registry import channel_registry
from reconciliation.extraction.identifier_extractor import looks_like_payment_notification
from reconciliation.services.reconciliation_service import (
    ReconciliationService,
    ExtractionFailureError,
    NotFoundError,
    InvalidStateError,
    record_to_dict,
)
from sentry_integration import capture_exception
from services.identity import MappingIdentityResolver
from services.ledger_service import (
    InsufficientBalanceError, LedgerStateError, LedgerNotFoundError, db_to_ledger_transaction
)
from services.notifier import build_notifier
from utils.retry import WriteConflictError
from utils.validation_errors import validate_required_uuid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request/Response Models ====================

class IngestRequest(BaseModel):
    """A notification forwarded by the chat layer."""
    submitter_id: str = Field(..., min_length=1, description="Submitter identity (e.g. Telegram id)")
    text: str = Field(..., min_length=1, description="Raw notification text")
    channel_hint: Optional[str] = Field(default=None, description="Channel named by the submitter")


class TextRequest(BaseModel):
    text: str = Field(..., description="Arbitrary chat text")


class ForceMatchRequest(BaseModel):
    """Pair two records regardless of score."""
    payer_record_id: str
    payee_record_id: str


class RejectRequest(BaseModel):
    """Request to reject a record."""
    reason: Optional[str] = Field(default=None, description="Rejection reason")


class BatchApproveRequest(BaseModel):
    record_ids: List[str] = Field(..., min_length=1, max_length=200)


class AutoApproveRequest(BaseModel):
    limit_amount: Optional[float] = Field(default=None, gt=0, description="Defaults to SMALL_DEPOSIT_AUTO_APPROVE_LIMIT")


# ==================== Dependencies ====================

@lru_cache()
def get_reconciliation_service() -> ReconciliationService:
    """Process-wide service bound to the application database"""
    settings = get_settings()
    session_factory = get_session_factory()
    return ReconciliationService(
        session_factory,
        notifier=build_notifier(settings),
        identity=MappingIdentityResolver(session_factory),
        settings=settings,
    )


def http_error_for(exc: Exception, action: str) -> HTTPException:
    """Map a service error to its HTTP response"""
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, ExtractionFailureError):
        return HTTPException(
            status_code=422,
            detail={
                "error": "extraction_failed",
                "message": str(exc),
                "extracted": exc.extracted.to_dict() if exc.extracted else None,
            }
        )
    if isinstance(exc, (NotFoundError, LedgerNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidStateError, LedgerStateError, WriteConflictError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InsufficientBalanceError):
        return HTTPException(
            status_code=402,
            detail={
                "error": "insufficient_balance",
                "message": str(exc),
                "balance": float(exc.balance),
                "required": float(exc.amount),
            }
        )
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))

    logger.error(f"Failed to {action}: {exc}", exc_info=True)
    capture_exception(exc, action=action)
    return HTTPException(status_code=500, detail=f"Failed to {action}")


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status.

    Returns configuration and availability information.
    """
    settings = get_settings()
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": settings.API_VERSION,
        "features": {
            "auto_matching": True,
            "operator_review": True,
            "sweep": settings.SWEEP_ENABLED,
            "small_deposit_auto_approve": float(settings.SMALL_DEPOSIT_AUTO_APPROVE_LIMIT) > 0,
        },
        "thresholds": {
            "auto_match": settings.AUTO_MATCH_THRESHOLD,
            "suggest_match": settings.SUGGEST_MATCH_THRESHOLD,
        },
        "channels_enabled": [c.value for c in channel_registry.get_enabled_channels()],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/channels", summary="List supported payment channels")
async def list_channels():
    """
    List payment channels with collection accounts and deposit instructions.
    """
    configs = channel_registry.get_all_configs()
    return {
        "channels": [cfg.to_dict() for cfg in configs],
        "enabled_count": len(channel_registry.get_enabled_channels())
    }


@router.post("/ingest", summary="Submit a payment notification")
async def ingest_notification(
    request: IngestRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth=Depends(verify_internal_auth)
):
    """
    Store a notification, classify it and try to auto-match it.

    Returns the record, the outcome (AUTO_APPROVED, PENDING_REVIEW,
    REJECTED) and the message to show the submitter. 422 when no amount
    could be read from the text.
    """
    try:
        result = await service.ingest(request.submitter_id, request.text, request.channel_hint)
        return result.to_dict()
    except Exception as e:
        raise http_error_for(e, "ingest notification")


@router.post("/looks-like-payment", summary="Detect a payment notification")
async def looks_like_payment(
    request: TextRequest,
    _auth=Depends(verify_internal_auth)
):
    return {"looks_like_payment": looks_like_payment_notification(request.text)}


@router.get("/pending", summary="Operator review queue")
async def get_pending(
    limit: int = Query(default=50, ge=1, le=200),
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth=Depends(verify_internal_auth)
):
    """
    RECEIVED and WAITING_MATCH records, oldest first, with candidate scores.
    """
    try:
        items = await service.get_pending_for_operator(limit=limit)
        return {"records": items, "count": len(items), "limit": limit}
    except Exception as e:
        raise http_error_for(e, "get pending records")


@router.get("/records/{record_id}", summary="Get single record")
async def get_record(
    record_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth=Depends(verify_internal_auth)
):
    validated_id = validate_required_uuid(record_id, "record_id")
    try:
        record = await service.get_record(validated_id)
        return record_to_dict(record)
    except Exception as e:
        raise http_error_for(e, "get record")


@router.get("/records/{record_id}/candidates", summary="Find match candidates")
async def find_candidates(
    record_id: str,
    limit: int = Query(default=10, ge=1, le=50),
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth=Depends(verify_internal_auth)
):
    """
    Ranked counterparts within the operator lookback window.
    Scores only; nothing is changed.
    """
    validated_id = validate_required_uuid(record_id, "record_id")
    try:
        candidates = await service.find_candidates(validated_id, limit=limit)
        return {
            "record_id": validated_id,
            "candidates": [c.to_dict() for c in candidates],
            "count": len(candidates)
        }
    except Exception as e:
        raise http_error_for(e, "find candidates")


@router.post("/records/{record_id}/approve", summary="Approve a record")
async def approve_record(
    record_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
    operator_id: str = Depends(require_operator)
):
    """
    Approve a pending record. It is paired with a confident counterpart
    when one exists, otherwise the submitter is credited alone.
    """
    validated_id = validate_required_uuid(record_id, "record_id")
    try:
        txn = await service.approve(validated_id, operator_id)
        return {
            "success": True,
            "record_id": validated_id,
            "transaction": db_to_ledger_transaction(txn).model_dump()
        }
    except Exception as e:
        raise http_error_for(e, "approve record")


@router.post("/records/{record_id}/reject", summary="Reject a record")
async def reject_record(
    record_id: str,
    request: RejectRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    operator_id: str = Depends(require_operator)
):
    validated_id = validate_required_uuid(record_id, "record_id")
    try:
        record = await service.reject(validated_id, operator_id, reason=request.reason)
        return {"success": True, "record": record_to_dict(record)}
    except Exception as e:
        raise http_error_for(e, "reject record")


@router.post("/force-match", summary="Force-match two records")
async def force_match(
    request: ForceMatchRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    operator_id: str = Depends(require_operator)
):
    payer_id = validate_required_uuid(request.payer_record_id, "payer_record_id")
    payee_id = validate_required_uuid(request.payee_record_id, "payee_record_id")
    try:
        txn = await service.force_match(payer_id, payee_id, operator_id)
        return {"success": True, "transaction": db_to_ledger_transaction(txn).model_dump()}
    except Exception as e:
        raise http_error_for(e, "force match")


@router.post("/batch-approve", summary="Approve several records")
async def batch_approve(
    request: BatchApproveRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    operator_id: str = Depends(require_operator)
):
    """
    Each id is approved in its own unit; failures are listed per id.
    """
    try:
        result = await service.batch_approve(request.record_ids, operator_id)
        return result.to_dict()
    except Exception as e:
        raise http_error_for(e, "batch approve")


@router.post("/auto-approve-small", summary="Approve small waiting deposits")
async def auto_approve_small(
    request: AutoApproveRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    operator_id: str = Depends(require_operator)
):
    try:
        result = await service.auto_approve_small_deposits(request.limit_amount, operator_id=operator_id)
        return result.to_dict()
    except Exception as e:
        raise http_error_for(e, "auto-approve deposits")


@router.post("/sweep", summary="Run the re-match sweep")
async def trigger_sweep(
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth=Depends(verify_internal_auth)
):
    try:
        result = await service.sweep_waiting_matches()
        return result.to_dict()
    except Exception as e:
        raise http_error_for(e, "run sweep")


@router.get("/stats", summary="Reconciliation statistics")
async def get_stats(
    service: ReconciliationService = Depends(get_reconciliation_service),
    _auth=Depends(verify_internal_auth)
):
    try:
        return await service.get_stats()
    except Exception as e:
        raise http_error_for(e, "get stats")
