"""
Reconciliation Service

Core business logic for the deposit reconciliation engine:
- Ingesting payment notifications (extract, classify, persist)
- Auto-matching payer and payee notifications with high confidence
- Crediting the payer's wallet in the same atomic unit that resolves
  both records
- Operator queue, candidate lookup, force-match, approve, reject and
  batch approval
- Periodic re-match sweep of waiting records
- Audit logging

Record lifecycle:
RECEIVED -> WAITING_MATCH -> AUTO_MATCHED | APPROVED | OPERATOR_APPROVED
| CONFIRMED (payee side) | REJECTED. Operators may also resolve a
RECEIVED record directly.
"""

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Any, List, Optional, Sequence, Tuple

from sqlalchemy import select, func, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.atomic import run_atomic, KeyedLock
from database.ledger_models import (
    LedgerTransactionDB, LedgerTransactionType, LedgerTransactionStatus, as_utc
)
from database.notification_models import (
    NotificationRecordDB,
    NotificationRole,
    NotificationStatus,
    Direction,
    ReferenceSource,
    PENDING_STATUSES,
)
from reconciliation.channel_registry import PaymentChannel
from reconciliation.extraction.identifier_extractor import (
    IdentifierExtractor,
    ExtractedIdentifiers,
    identifier_extractor,
    compute_content_hash,
)
from reconciliation.matching_rules.classifier import (
    NotificationClassifier,
    notification_classifier,
)
from reconciliation.matching_rules.notification_rules import (
    NotificationMatchingRules,
    MatchCandidate,
    MatchResult,
)
from services.identity import IdentityResolver
from services.ledger_service import LedgerRepository, LedgerError, ReferenceOwnershipError, to_amount
from services.notifier import Notifier, LoggingNotifier
from utils.retry import RetryPolicy, RetryableConflict, WriteConflictError

logger = logging.getLogger(__name__)


# ==================== ERRORS ====================

class ReconciliationError(Exception):
    """Base class for reconciliation failures"""


class ExtractionFailureError(ReconciliationError):
    """No amount could be recovered; the submitter should resend clearer text"""

    def __init__(self, message: str, extracted: Optional[ExtractedIdentifiers] = None):
        super().__init__(message)
        self.extracted = extracted


class NotFoundError(ReconciliationError):
    """Unknown record id"""


class InvalidStateError(ReconciliationError):
    """Record is not in a state that allows the operation"""


class _DuplicateSubmissionConflict(RetryableConflict):
    """Same (user, content hash) inserted concurrently"""


# Review reasons (non-fatal outcomes kept on the record)
REVIEW_CLASSIFICATION_AMBIGUOUS = "CLASSIFICATION_AMBIGUOUS"
REVIEW_NO_CONFIDENT_MATCH = "NO_CONFIDENT_MATCH"
REVIEW_DUPLICATE_REFERENCE = "DUPLICATE_REFERENCE"


# ==================== RESULTS ====================

class IngestOutcome(str, Enum):
    AUTO_APPROVED = "AUTO_APPROVED"
    PENDING_REVIEW = "PENDING_REVIEW"
    REJECTED = "REJECTED"


@dataclass
class IngestResult:
    """What the submitter is told about their notification"""
    record: NotificationRecordDB
    outcome: IngestOutcome
    message: str
    duplicate: bool = False
    match: Optional[MatchResult] = None
    transaction: Optional[LedgerTransactionDB] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record": record_to_dict(self.record),
            "outcome": self.outcome.value,
            "message": self.message,
            "duplicate": self.duplicate,
            "match": self.match.to_dict() if self.match else None,
            "transaction_id": self.transaction.id if self.transaction else None,
        }


@dataclass
class BatchApprovalResult:
    """Per-id outcome of a batch approval"""
    successful: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "total": len(self.successful) + len(self.failed),
        }


@dataclass
class SweepResult:
    groups: int = 0
    examined: int = 0
    matched: int = 0
    requeued: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groups": self.groups,
            "examined": self.examined,
            "matched": self.matched,
            "requeued": self.requeued,
            "errors": self.errors,
        }


# ==================== AUDIT ====================

class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RECORD_INGESTED = "reconciliation.record_ingested"
    DUPLICATE_SUBMISSION = "reconciliation.duplicate_submission"
    EXTRACTION_FAILED = "reconciliation.extraction_failed"
    CLASSIFICATION_AMBIGUOUS = "reconciliation.classification_ambiguous"
    AUTO_MATCHED = "reconciliation.auto_matched"
    NO_CONFIDENT_MATCH = "reconciliation.no_confident_match"
    FORCE_MATCHED = "reconciliation.force_matched"
    APPROVED = "reconciliation.approved"
    REJECTED = "reconciliation.rejected"
    BATCH_APPROVED = "reconciliation.batch_approved"
    SWEEP_COMPLETED = "reconciliation.sweep_completed"


def log_reconciliation_event(
    event_type: str,
    user_id: Optional[str],
    details: Dict[str, Any],
    record_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "user_id": user_id,
        "record_id": record_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


# ==================== HELPERS ====================

def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def record_to_dict(record: NotificationRecordDB) -> Dict[str, Any]:
    """Operator view of a record: extracted fields, never the raw text hash"""
    return {
        "id": record.id,
        "user_id": record.user_id,
        "raw_text": record.raw_text,
        "channel": record.channel.value if record.channel else None,
        "amount": float(record.amount) if record.amount is not None else None,
        "reference_code": record.reference_code,
        "raw_reference_code": record.raw_reference_code,
        "reference_source": record.reference_source.value if record.reference_source else None,
        "counterparty_name": record.counterparty_name,
        "transaction_time": _format_datetime(record.transaction_time),
        "direction": record.direction.value if record.direction else None,
        "role": record.role.value if record.role else None,
        "role_confidence": record.role_confidence,
        "status": record.status.value if record.status else None,
        "matched_record_id": record.matched_record_id,
        "ledger_transaction_id": record.ledger_transaction_id,
        "match_score": record.match_score,
        "review_reason": record.review_reason,
        "resolved_by": record.resolved_by,
        "resolved_at": _format_datetime(record.resolved_at),
        "rejection_reason": record.rejection_reason,
        "created_at": _format_datetime(record.created_at),
    }


def deposit_reference(record: NotificationRecordDB) -> str:
    """Idempotency key for the credit produced by a payer record"""
    if record.reference_code:
        channel = record.channel.value if record.channel else PaymentChannel.UNKNOWN.value
        return f"deposit:{channel}:{record.reference_code}"
    return f"deposit:record:{record.id}"


def _record_key(record_id: str) -> str:
    return f"record:{record_id}"


def _outcome_for(record: NotificationRecordDB) -> IngestOutcome:
    if record.status == NotificationStatus.REJECTED:
        return IngestOutcome.REJECTED
    if record.status in PENDING_STATUSES:
        return IngestOutcome.PENDING_REVIEW
    return IngestOutcome.AUTO_APPROVED


def _opposite_roles(role: NotificationRole) -> List[NotificationRole]:
    if role == NotificationRole.PAYER:
        return [NotificationRole.PAYEE]
    if role == NotificationRole.PAYEE:
        return [NotificationRole.PAYER]
    return [NotificationRole.PAYER, NotificationRole.PAYEE]


# ==================== SERVICE ====================

class ReconciliationService:
    """
    Reconciles payment notifications and credits wallets.

    Every state change runs in an atomic unit (own session, one
    transaction, wallet / record locks held, re-run on write conflicts).
    Notifications are sent only after the unit has committed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger_factory=None,
        notifier: Optional[Notifier] = None,
        identity: Optional[IdentityResolver] = None,
        settings=None,
        extractor: Optional[IdentifierExtractor] = None,
        classifier: Optional[NotificationClassifier] = None,
        rules: Optional[NotificationMatchingRules] = None,
        policy: Optional[RetryPolicy] = None,
        locks: Optional[KeyedLock] = None,
    ):
        if settings is None:
            from config import get_settings
            settings = get_settings()

        self.session_factory = session_factory
        self.settings = settings
        self.ledger_factory = ledger_factory or (
            lambda session: LedgerRepository(session, currency=settings.DEFAULT_CURRENCY)
        )
        self.notifier = notifier or LoggingNotifier(settings.OPERATOR_CHANNEL_ID)
        self.identity = identity or IdentityResolver()
        self.extractor = extractor or identifier_extractor
        self.classifier = classifier or notification_classifier
        self.rules = rules or NotificationMatchingRules(
            auto_match_threshold=settings.AUTO_MATCH_THRESHOLD,
            suggest_match_threshold=settings.SUGGEST_MATCH_THRESHOLD,
        )
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.locks = locks

    @property
    def currency(self) -> str:
        return self.settings.DEFAULT_CURRENCY

    async def _atomic(self, work, *lock_keys: Optional[str], description: str):
        return await run_atomic(
            self.session_factory, work,
            lock_keys=lock_keys, policy=self.policy, locks=self.locks,
            description=description
        )

    # ==================== INGEST ====================

    async def ingest(
        self,
        submitter_id: str,
        text: str,
        channel_hint: Optional[str] = None
    ) -> IngestResult:
        """
        Store a notification and try to resolve it.

        Raises:
            ExtractionFailureError: no amount in the text; nothing is stored
        """
        user_id = await self.identity.resolve(submitter_id)
        extracted = self.extractor.extract(text, channel_hint)

        if extracted.amount is None:
            log_reconciliation_event(
                ReconciliationAuditEvent.EXTRACTION_FAILED,
                user_id,
                {"channel": extracted.channel.value, "warnings": extracted.warnings},
            )
            logger.warning(f"Unparseable amount in notification from {user_id}")
            raise ExtractionFailureError(
                "Could not find the amount in your message. Please resend the full bank SMS.",
                extracted=extracted
            )

        content_hash = compute_content_hash(text)
        classification = self.classifier.classify(text)

        async def persist(session: AsyncSession) -> Tuple[NotificationRecordDB, bool]:
            existing = await self._find_by_hash(session, user_id, content_hash)
            if existing:
                return existing, True

            record = NotificationRecordDB(
                user_id=user_id,
                raw_text=text,
                content_hash=content_hash,
                channel=extracted.channel,
                amount=extracted.amount,
                reference_code=extracted.reference_code,
                raw_reference_code=extracted.raw_reference_code,
                reference_source=ReferenceSource(extracted.reference_source) if extracted.reference_source else None,
                counterparty_name=extracted.counterparty_name,
                transaction_time=extracted.transaction_time,
                is_debit=extracted.is_debit,
                is_credit=extracted.is_credit,
                direction=Direction(extracted.direction),
                role=classification.role,
                role_confidence=classification.confidence,
                status=NotificationStatus.RECEIVED,
                review_reason=classification.review_reason,
                debug_info=json.dumps({
                    "rule": classification.rule_name,
                    "warnings": extracted.warnings,
                }),
            )
            session.add(record)
            try:
                await session.flush()
            except IntegrityError as e:
                raise _DuplicateSubmissionConflict(f"Duplicate submission from {user_id}") from e
            return record, False

        record, duplicate = await self._atomic(persist, user_id, description=f"ingest {user_id}")

        if duplicate:
            log_reconciliation_event(
                ReconciliationAuditEvent.DUPLICATE_SUBMISSION, user_id,
                {"status": record.status.value}, record_id=record.id
            )
            if record.status == NotificationStatus.RECEIVED and record.role != NotificationRole.UNKNOWN:
                # Stored earlier but never reached matching
                result = await self._match_or_wait(record)
                result.duplicate = True
                return result
            outcome = _outcome_for(record)
            return IngestResult(
                record=record,
                outcome=outcome,
                message=self._message_for(record, outcome, duplicate=True),
                duplicate=True,
            )

        log_reconciliation_event(
            ReconciliationAuditEvent.RECORD_INGESTED, user_id,
            {
                "amount": str(record.amount),
                "channel": record.channel.value,
                "role": record.role.value,
                "reference_code": record.reference_code,
            },
            record_id=record.id
        )

        if record.role == NotificationRole.UNKNOWN:
            log_reconciliation_event(
                ReconciliationAuditEvent.CLASSIFICATION_AMBIGUOUS, user_id, {}, record_id=record.id
            )
            message = (
                f"We received your message for {record.amount} {self.currency} but could not tell "
                f"whether it is a payment you sent or received. An operator will review it."
            )
            await self._notify_user(user_id, message, record_id=record.id)
            await self.notifier.notify_operators(
                f"Unclassified notification {record.id} from {user_id} needs triage",
                record_id=record.id
            )
            return IngestResult(record=record, outcome=IngestOutcome.PENDING_REVIEW, message=message)

        return await self._match_or_wait(record)

    async def _match_or_wait(self, record: NotificationRecordDB) -> IngestResult:
        since = datetime.now(timezone.utc) - timedelta(minutes=self.settings.AUTO_MATCH_LOOKBACK_MINUTES)
        async with self.session_factory() as session:
            candidates = await self._candidate_records(session, record, since, include_unknown=False)

        match = self.rules.find_match(record, candidates)

        if match.auto_matched:
            counterpart = match.best_match.record
            payer, payee = (record, counterpart) if record.role == NotificationRole.PAYER else (counterpart, record)
            try:
                txn, payer_after, payee_after = await self._resolve_pair(
                    payer.id, payee.id,
                    actor="system",
                    payer_status=NotificationStatus.AUTO_MATCHED,
                    score=match.best_match.score,
                )
            except (InvalidStateError, LedgerError) as e:
                logger.info(f"Auto-match of {record.id} with {counterpart.id} abandoned: {e}")
            else:
                log_reconciliation_event(
                    ReconciliationAuditEvent.AUTO_MATCHED, payer_after.user_id,
                    {
                        "payee_record_id": payee_after.id,
                        "score": match.best_match.score,
                        "transaction_id": txn.id,
                        "amount": str(txn.amount),
                    },
                    record_id=payer_after.id
                )
                await self._notify_resolved(payer_after, payee_after, txn)
                resolved = payer_after if record.id == payer_after.id else payee_after
                outcome = IngestOutcome.AUTO_APPROVED
                return IngestResult(
                    record=resolved,
                    outcome=outcome,
                    message=self._message_for(resolved, outcome, transaction=txn),
                    match=match,
                    transaction=txn,
                )

        waiting = await self._mark_waiting(record.id, match)
        log_reconciliation_event(
            ReconciliationAuditEvent.NO_CONFIDENT_MATCH, waiting.user_id,
            {
                "candidates": len(match.candidates),
                "best_score": match.best_match.score if match.best_match else None,
            },
            record_id=waiting.id
        )
        outcome = _outcome_for(waiting)
        message = self._message_for(waiting, outcome)
        await self._notify_user(waiting.user_id, message, record_id=waiting.id)
        if waiting.role == NotificationRole.PAYER and waiting.status == NotificationStatus.WAITING_MATCH:
            await self.notifier.notify_operators(
                f"Deposit of {waiting.amount} {self.currency} from {waiting.user_id} is pending review "
                f"(record {waiting.id}, ref {waiting.reference_code or '-'})",
                record_id=waiting.id
            )
        return IngestResult(record=waiting, outcome=outcome, message=message, match=match)

    async def _mark_waiting(self, record_id: str, match: Optional[MatchResult]) -> NotificationRecordDB:
        """RECEIVED -> WAITING_MATCH; a payer record opens a pending deposit"""

        async def work(session: AsyncSession) -> NotificationRecordDB:
            record = await self._load_record(session, record_id, for_update=True)
            if record.status not in PENDING_STATUSES:
                # Resolved concurrently by a counterpart or an operator
                return record

            record.status = NotificationStatus.WAITING_MATCH
            record.review_reason = REVIEW_NO_CONFIDENT_MATCH
            if match is not None:
                best = max(match.candidates, key=lambda c: c.score, default=None)
                record.match_score = best.score if best else 0.0
                record.debug_info = json.dumps({
                    "candidates": [c.to_dict() for c in match.candidates[:5]],
                })

            if record.role == NotificationRole.PAYER and not record.ledger_transaction_id:
                ledger = self.ledger_factory(session)
                try:
                    pending = await ledger.open_pending_deposit(
                        record.user_id,
                        record.amount,
                        external_reference=deposit_reference(record),
                        notification_record_id=record.id,
                        description=f"Deposit via {record.channel.value} pending review",
                    )
                except ReferenceOwnershipError as e:
                    logger.warning(f"Record {record.id}: {e}")
                    pending = None
                if pending is not None and pending.notification_record_id == record.id:
                    record.ledger_transaction_id = pending.id
                else:
                    record.review_reason = REVIEW_DUPLICATE_REFERENCE

            await session.flush()
            return record

        record = await self._peek_record(record_id)
        return await self._atomic(
            work, record.user_id, _record_key(record_id), description=f"wait {record_id}"
        )

    # ==================== PAIR RESOLUTION ====================

    async def _resolve_pair(
        self,
        payer_id: str,
        payee_id: str,
        actor: str,
        payer_status: NotificationStatus,
        score: Optional[float] = None,
    ) -> Tuple[LedgerTransactionDB, NotificationRecordDB, NotificationRecordDB]:
        """
        Credit the payer and resolve both records in one unit.
        """
        if payer_id == payee_id:
            raise InvalidStateError("A record cannot be matched with itself")

        payer_peek = await self._peek_record(payer_id)
        await self._peek_record(payee_id)

        async def work(session: AsyncSession):
            payer = await self._load_record(session, payer_id, for_update=True)
            payee = await self._load_record(session, payee_id, for_update=True)

            for rec in (payer, payee):
                if rec.status not in PENDING_STATUSES:
                    raise InvalidStateError(f"Record {rec.id} is already {rec.status.value}")
            if payer.role == NotificationRole.PAYEE:
                raise InvalidStateError(f"Record {payer.id} is a payee notification")
            if payee.role == NotificationRole.PAYER:
                raise InvalidStateError(f"Record {payee.id} is a payer notification")

            ledger = self.ledger_factory(session)
            result = await ledger.apply(
                payer.user_id,
                payer.amount,
                LedgerTransactionType.DEPOSIT,
                description=f"Deposit via {payer.channel.value}"
                            + (f" ref {payer.reference_code}" if payer.reference_code else ""),
                external_reference=deposit_reference(payer),
                notification_record_id=payer.id,
                counterpart_record_id=payee.id,
                approved_by=None if actor == "system" else actor,
            )
            txn = result.transaction
            if txn.notification_record_id not in (payer.id, None):
                raise InvalidStateError(
                    f"Reference {txn.external_reference} was already credited by record {txn.notification_record_id}"
                )

            now = datetime.now(timezone.utc)
            payer.status = payer_status
            payee.status = NotificationStatus.CONFIRMED
            payer.matched_record_id = payee.id
            payee.matched_record_id = payer.id
            for rec in (payer, payee):
                rec.ledger_transaction_id = txn.id
                rec.resolved_by = actor
                rec.resolved_at = now
                rec.review_reason = None
                if score is not None:
                    rec.match_score = score

            await session.flush()
            return txn, payer, payee

        return await self._atomic(
            work,
            payer_peek.user_id, _record_key(payer_id), _record_key(payee_id),
            description=f"resolve {payer_id}/{payee_id}"
        )

    async def _approve_single(self, record_id: str, operator_id: str) -> Tuple[LedgerTransactionDB, NotificationRecordDB]:
        """Credit the submitter for one record without a counterpart"""
        peek = await self._peek_record(record_id)

        async def work(session: AsyncSession):
            record = await self._load_record(session, record_id, for_update=True)
            if record.status not in PENDING_STATUSES:
                raise InvalidStateError(f"Record {record.id} is already {record.status.value}")
            if record.role == NotificationRole.PAYEE:
                raise InvalidStateError("Payee notifications cannot be approved without a payer counterpart")

            ledger = self.ledger_factory(session)
            result = await ledger.apply(
                record.user_id,
                record.amount,
                LedgerTransactionType.DEPOSIT,
                description=f"Deposit via {record.channel.value} approved by operator",
                external_reference=deposit_reference(record),
                notification_record_id=record.id,
                approved_by=operator_id,
            )
            txn = result.transaction
            if txn.notification_record_id not in (record.id, None):
                raise InvalidStateError(
                    f"Reference {txn.external_reference} was already credited by record {txn.notification_record_id}"
                )

            record.status = NotificationStatus.OPERATOR_APPROVED
            record.ledger_transaction_id = txn.id
            record.resolved_by = operator_id
            record.resolved_at = datetime.now(timezone.utc)
            record.review_reason = None
            await session.flush()
            return txn, record

        return await self._atomic(
            work, peek.user_id, _record_key(record_id), description=f"approve {record_id}"
        )

    # ==================== OPERATOR ACTIONS ====================

    async def force_match(self, payer_id: str, payee_id: str, operator_id: str) -> LedgerTransactionDB:
        """
        Pair two records regardless of their score and credit the payer.
        """
        txn, payer, payee = await self._resolve_pair(
            payer_id, payee_id,
            actor=operator_id,
            payer_status=NotificationStatus.APPROVED,
        )
        log_reconciliation_event(
            ReconciliationAuditEvent.FORCE_MATCHED, payer.user_id,
            {"payee_record_id": payee.id, "transaction_id": txn.id, "amount": str(txn.amount)},
            record_id=payer.id,
            actor=operator_id
        )
        await self._notify_resolved(payer, payee, txn)
        return txn

    async def approve(self, record_id: str, operator_id: str) -> LedgerTransactionDB:
        """
        Approve a pending record: pair it with a confident counterpart
        when one exists, else credit the submitter alone.
        """
        record = await self._peek_record(record_id)
        if record.status not in PENDING_STATUSES:
            raise InvalidStateError(f"Record {record_id} is already {record.status.value}")
        if record.role == NotificationRole.PAYEE:
            raise InvalidStateError("Payee notifications cannot be approved without a payer counterpart")

        since = datetime.now(timezone.utc) - timedelta(days=self.settings.OPERATOR_LOOKBACK_DAYS)
        async with self.session_factory() as session:
            candidates = await self._candidate_records(
                session, record, since, roles=[NotificationRole.PAYEE]
            )
        match = self.rules.find_match(record, candidates)

        if match.auto_matched:
            try:
                txn, payer, payee = await self._resolve_pair(
                    record.id, match.best_match.record_id,
                    actor=operator_id,
                    payer_status=NotificationStatus.APPROVED,
                    score=match.best_match.score,
                )
            except InvalidStateError as e:
                logger.info(f"Counterpart for {record_id} no longer available: {e}")
            else:
                log_reconciliation_event(
                    ReconciliationAuditEvent.APPROVED, payer.user_id,
                    {"payee_record_id": payee.id, "transaction_id": txn.id, "paired": True},
                    record_id=payer.id,
                    actor=operator_id
                )
                await self._notify_resolved(payer, payee, txn)
                return txn

        txn, approved = await self._approve_single(record_id, operator_id)
        log_reconciliation_event(
            ReconciliationAuditEvent.APPROVED, approved.user_id,
            {"transaction_id": txn.id, "amount": str(txn.amount), "paired": False},
            record_id=approved.id,
            actor=operator_id
        )
        await self._notify_user(
            approved.user_id,
            self._message_for(approved, IngestOutcome.AUTO_APPROVED, transaction=txn),
            record_id=approved.id
        )
        return txn

    async def reject(self, record_id: str, operator_id: str, reason: Optional[str] = None) -> NotificationRecordDB:
        """
        Reject a pending record. No balance effect; its pending deposit fails.
        """
        peek = await self._peek_record(record_id)

        async def work(session: AsyncSession) -> NotificationRecordDB:
            record = await self._load_record(session, record_id, for_update=True)
            if record.status not in PENDING_STATUSES:
                raise InvalidStateError(f"Record {record.id} is already {record.status.value}")

            record.status = NotificationStatus.REJECTED
            record.rejection_reason = reason
            record.resolved_by = operator_id
            record.resolved_at = datetime.now(timezone.utc)

            if record.ledger_transaction_id:
                ledger = self.ledger_factory(session)
                txn = await ledger.get_transaction(record.ledger_transaction_id, for_update=True)
                if (
                    txn is not None
                    and txn.notification_record_id == record.id
                    and txn.status == LedgerTransactionStatus.PENDING
                ):
                    await ledger.fail_pending_deposit(txn, reason=reason or "Rejected by operator", actor=operator_id)

            await session.flush()
            return record

        record = await self._atomic(
            work, peek.user_id, _record_key(record_id), description=f"reject {record_id}"
        )

        log_reconciliation_event(
            ReconciliationAuditEvent.REJECTED, record.user_id,
            {"reason": reason, "amount": str(record.amount)},
            record_id=record.id,
            actor=operator_id
        )
        await self._notify_user(
            record.user_id,
            self._message_for(record, IngestOutcome.REJECTED),
            record_id=record.id
        )
        return record

    async def batch_approve(self, record_ids: Sequence[str], operator_id: str) -> BatchApprovalResult:
        """
        Approve each id in its own unit; one failure does not affect the others.
        """
        result = BatchApprovalResult()

        for record_id in record_ids:
            try:
                txn = await self.approve(record_id, operator_id)
                result.successful.append({
                    "record_id": record_id,
                    "transaction_id": txn.id,
                    "amount": float(txn.amount),
                })
            except (ReconciliationError, LedgerError, WriteConflictError) as e:
                result.failed.append({"record_id": record_id, "error": str(e)})
            except Exception as e:
                logger.exception(f"Unexpected error approving {record_id}")
                result.failed.append({"record_id": record_id, "error": f"Unexpected error: {e}"})

        log_reconciliation_event(
            ReconciliationAuditEvent.BATCH_APPROVED, None,
            {"successful": len(result.successful), "failed": len(result.failed)},
            actor=operator_id
        )
        return result

    async def auto_approve_small_deposits(
        self,
        limit_amount=None,
        operator_id: str = "auto-approve",
        max_records: int = 100
    ) -> BatchApprovalResult:
        """
        Approve waiting payer deposits up to `limit_amount`
        (SMALL_DEPOSIT_AUTO_APPROVE_LIMIT when omitted; 0 disables).
        """
        limit = to_amount(limit_amount if limit_amount is not None else self.settings.SMALL_DEPOSIT_AUTO_APPROVE_LIMIT)
        if limit <= 0:
            return BatchApprovalResult()

        async with self.session_factory() as session:
            rows = await session.execute(
                select(NotificationRecordDB.id)
                .where(
                    NotificationRecordDB.status == NotificationStatus.WAITING_MATCH,
                    NotificationRecordDB.role == NotificationRole.PAYER,
                    NotificationRecordDB.amount <= limit,
                )
                .order_by(NotificationRecordDB.created_at.asc())
                .limit(max_records)
            )
            record_ids = list(rows.scalars().all())

        logger.info(f"Auto-approving {len(record_ids)} deposits up to {limit} {self.currency}")
        return await self.batch_approve(record_ids, operator_id)

    # ==================== SWEEP ====================

    async def sweep_waiting_matches(self) -> SweepResult:
        """
        Re-attempt matching for WAITING_MATCH records, grouped by reference
        code, so a late counterpart is picked up without a new submission.

        Classified records left in RECEIVED past the grace period (their
        ingest was interrupted) are matched too, and moved to WAITING_MATCH
        when nothing pairs with them.
        """
        result = SweepResult()
        now = datetime.now(timezone.utc)
        since = now - timedelta(hours=self.settings.SWEEP_LOOKBACK_HOURS)
        stale_before = now - timedelta(seconds=self.settings.SWEEP_RECEIVED_GRACE_SECONDS)

        async with self.session_factory() as session:
            rows = await session.execute(
                select(NotificationRecordDB)
                .where(
                    or_(
                        NotificationRecordDB.status == NotificationStatus.WAITING_MATCH,
                        and_(
                            NotificationRecordDB.status == NotificationStatus.RECEIVED,
                            NotificationRecordDB.created_at <= stale_before,
                        ),
                    ),
                    NotificationRecordDB.role.in_([NotificationRole.PAYER, NotificationRole.PAYEE]),
                    NotificationRecordDB.created_at >= since,
                )
                .order_by(NotificationRecordDB.created_at.desc())
            )
            waiting = list(rows.scalars().all())

        groups: Dict[Optional[str], List[NotificationRecordDB]] = defaultdict(list)
        for record in waiting:
            groups[record.reference_code].append(record)
        result.groups = len(groups)

        resolved_ids = set()

        async def attempt(payers: List[NotificationRecordDB], payees: List[NotificationRecordDB]):
            for payer in payers:
                if payer.id in resolved_ids:
                    continue
                open_payees = [p for p in payees if p.id not in resolved_ids]
                if not open_payees:
                    return
                result.examined += 1
                match = self.rules.find_match(payer, open_payees)
                if not match.auto_matched:
                    continue
                try:
                    txn, payer_after, payee_after = await self._resolve_pair(
                        payer.id, match.best_match.record_id,
                        actor="sweep",
                        payer_status=NotificationStatus.AUTO_MATCHED,
                        score=match.best_match.score,
                    )
                except (ReconciliationError, LedgerError, WriteConflictError) as e:
                    result.errors += 1
                    logger.warning(f"Sweep could not resolve {payer.id}: {e}")
                    continue
                resolved_ids.update({payer_after.id, payee_after.id})
                result.matched += 1
                log_reconciliation_event(
                    ReconciliationAuditEvent.AUTO_MATCHED, payer_after.user_id,
                    {"payee_record_id": payee_after.id, "transaction_id": txn.id, "via": "sweep"},
                    record_id=payer_after.id,
                    actor="sweep"
                )
                await self._notify_resolved(payer_after, payee_after, txn)

        def split(records):
            payers = [r for r in records if r.role == NotificationRole.PAYER]
            payees = [r for r in records if r.role == NotificationRole.PAYEE]
            return payers, payees

        for records in groups.values():
            await attempt(*split(records))

        # Codes that differ only by a suffix land in different groups
        leftovers = [r for r in waiting if r.id not in resolved_ids and r.reference_code]
        await attempt(*split(leftovers))

        for record in waiting:
            if record.id in resolved_ids or record.status != NotificationStatus.RECEIVED:
                continue
            try:
                requeued = await self._mark_waiting(record.id, None)
            except (ReconciliationError, LedgerError, WriteConflictError) as e:
                result.errors += 1
                logger.warning(f"Sweep could not requeue {record.id}: {e}")
                continue
            if requeued.status == NotificationStatus.WAITING_MATCH:
                result.requeued += 1

        log_reconciliation_event(ReconciliationAuditEvent.SWEEP_COMPLETED, None, result.to_dict(), actor="sweep")
        return result

    # ==================== QUERIES ====================

    async def get_record(self, record_id: str) -> NotificationRecordDB:
        return await self._peek_record(record_id)

    async def find_candidates(self, record_id: str, limit: int = 10) -> List[MatchCandidate]:
        """Ranked counterparts within the operator lookback"""
        record = await self._peek_record(record_id)
        since = datetime.now(timezone.utc) - timedelta(days=self.settings.OPERATOR_LOOKBACK_DAYS)
        async with self.session_factory() as session:
            candidates = await self._candidate_records(session, record, since, include_unknown=True)
        return self.rules.rank_candidates(record, candidates)[:limit]

    async def get_pending_for_operator(self, limit: int = 50, candidates_per_record: int = 3) -> List[Dict[str, Any]]:
        """
        RECEIVED / WAITING_MATCH records, oldest first, each with its best
        candidate scores.
        """
        since = datetime.now(timezone.utc) - timedelta(days=self.settings.OPERATOR_LOOKBACK_DAYS)
        items = []

        async with self.session_factory() as session:
            rows = await session.execute(
                select(NotificationRecordDB)
                .where(NotificationRecordDB.status.in_(PENDING_STATUSES))
                .order_by(NotificationRecordDB.created_at.asc())
                .limit(limit)
            )
            records = list(rows.scalars().all())

            for record in records:
                candidates = await self._candidate_records(session, record, since, include_unknown=True)
                ranked = self.rules.rank_candidates(record, candidates)[:candidates_per_record]
                item = record_to_dict(record)
                item["candidates"] = [c.to_dict() for c in ranked]
                items.append(item)

        return items

    async def get_stats(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            status_rows = await session.execute(
                select(NotificationRecordDB.status, func.count(NotificationRecordDB.id))
                .group_by(NotificationRecordDB.status)
            )
            by_status = {s.value: 0 for s in NotificationStatus}
            for status, count in status_rows.all():
                by_status[status.value] = count

            role_rows = await session.execute(
                select(NotificationRecordDB.role, func.count(NotificationRecordDB.id))
                .group_by(NotificationRecordDB.role)
            )
            by_role = {r.value: 0 for r in NotificationRole}
            for role, count in role_rows.all():
                by_role[role.value] = count

            credited = await session.execute(
                select(
                    func.count(LedgerTransactionDB.id),
                    func.coalesce(func.sum(LedgerTransactionDB.amount), 0)
                )
                .where(
                    LedgerTransactionDB.type == LedgerTransactionType.DEPOSIT,
                    LedgerTransactionDB.status == LedgerTransactionStatus.COMPLETED
                )
            )
            credited_count, credited_total = credited.one()

        total = sum(by_status.values())
        auto = by_status[NotificationStatus.AUTO_MATCHED.value]
        payers_resolved = auto + by_status[NotificationStatus.APPROVED.value] + by_status[NotificationStatus.OPERATOR_APPROVED.value]
        return {
            "total_records": total,
            "by_status": by_status,
            "by_role": by_role,
            "pending_review": sum(by_status[s.value] for s in PENDING_STATUSES),
            "deposits_credited": credited_count,
            "credited_total": float(to_amount(credited_total)),
            "auto_match_rate": round(auto / payers_resolved, 4) if payers_resolved else 0.0,
        }

    # ==================== INTERNAL ====================

    async def _peek_record(self, record_id: str) -> NotificationRecordDB:
        async with self.session_factory() as session:
            return await self._load_record(session, record_id)

    async def _load_record(
        self,
        session: AsyncSession,
        record_id: str,
        for_update: bool = False
    ) -> NotificationRecordDB:
        query = select(NotificationRecordDB).where(NotificationRecordDB.id == record_id)
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"Record {record_id} not found")
        return record

    async def _find_by_hash(self, session: AsyncSession, user_id: str, content_hash: str) -> Optional[NotificationRecordDB]:
        result = await session.execute(
            select(NotificationRecordDB).where(
                NotificationRecordDB.user_id == user_id,
                NotificationRecordDB.content_hash == content_hash
            )
        )
        return result.scalar_one_or_none()

    async def _candidate_records(
        self,
        session: AsyncSession,
        record: NotificationRecordDB,
        since: datetime,
        roles: Optional[List[NotificationRole]] = None,
        include_unknown: bool = False,
        limit: int = 200
    ) -> List[NotificationRecordDB]:
        """Pending records of the opposite role with the same amount, newest first"""
        if roles is None:
            roles = _opposite_roles(record.role)
            if include_unknown and NotificationRole.UNKNOWN not in roles:
                roles = roles + [NotificationRole.UNKNOWN]

        result = await session.execute(
            select(NotificationRecordDB)
            .where(
                NotificationRecordDB.id != record.id,
                NotificationRecordDB.role.in_(roles),
                NotificationRecordDB.status.in_(PENDING_STATUSES),
                NotificationRecordDB.amount == record.amount,
                NotificationRecordDB.created_at >= since,
            )
            .order_by(NotificationRecordDB.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _notify_user(self, user_id: str, message: str, **context):
        """Deliver to the submitter under their chat-layer identity"""
        recipient = await self.identity.external_id_for(user_id)
        return await self.notifier.notify(recipient, message, **context)

    async def _notify_resolved(
        self,
        payer: NotificationRecordDB,
        payee: NotificationRecordDB,
        txn: LedgerTransactionDB
    ):
        await self._notify_user(
            payer.user_id,
            self._message_for(payer, IngestOutcome.AUTO_APPROVED, transaction=txn),
            record_id=payer.id,
            transaction_id=txn.id
        )
        if payee.user_id != payer.user_id:
            await self._notify_user(
                payee.user_id,
                f"Incoming payment of {payee.amount} {self.currency} confirmed and matched.",
                record_id=payee.id
            )

    def _message_for(
        self,
        record: NotificationRecordDB,
        outcome: IngestOutcome,
        transaction: Optional[LedgerTransactionDB] = None,
        duplicate: bool = False
    ) -> str:
        prefix = "This message was already submitted. " if duplicate else ""
        amount = f"{record.amount} {self.currency}"

        if outcome == IngestOutcome.REJECTED:
            reason = f": {record.rejection_reason}" if record.rejection_reason else ""
            return f"{prefix}Your deposit of {amount} was rejected{reason}."

        if outcome == IngestOutcome.AUTO_APPROVED:
            if record.role == NotificationRole.PAYEE or record.status == NotificationStatus.CONFIRMED:
                return f"{prefix}Incoming payment of {amount} confirmed and matched."
            balance = ""
            if transaction is not None and transaction.balance_after is not None:
                balance = f" New balance: {to_amount(transaction.balance_after)} {self.currency}."
            return f"{prefix}Deposit of {amount} approved.{balance}"

        if record.role == NotificationRole.PAYEE:
            return f"{prefix}Incoming payment of {amount} recorded; waiting for the matching deposit."
        return f"{prefix}Deposit of {amount} received and pending review."
