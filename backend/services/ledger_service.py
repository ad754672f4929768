"""
Deposit Reconciliation Core - Ledger Service Layer

The only writer of wallet balances.

LedgerRepository works inside a transaction owned by the caller: it
flushes but never commits, so a wallet update and the ledger row that
explains it always land in the same atomic unit.

Guarantees:
- balance_after == balance_before + amount on every COMPLETED row
- one row per external_reference; re-applying returns the existing row
  with applied=False and leaves the balance alone; a reference booked
  for one user is never reused for another
- in completion order, balance_after of one COMPLETED row is the
  balance_before of the next for the same user
- a debit that would make the balance negative is rejected whole
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Dict, Any, Tuple
import logging

from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import (
    WalletDB, LedgerTransactionDB,
    LedgerTransactionType, LedgerTransactionStatus,
    as_utc
)
from utils.retry import RetryableConflict

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# ==================== EXCEPTIONS ====================

class LedgerError(Exception):
    """Base class for ledger failures"""


class InsufficientBalanceError(LedgerError):
    """Debit would drive the balance below zero"""

    def __init__(self, user_id: str, balance: Decimal, amount: Decimal):
        super().__init__(f"Insufficient balance: {balance} available, {amount} required")
        self.user_id = user_id
        self.balance = balance
        self.amount = amount


class DuplicateReferenceError(LedgerError, RetryableConflict):
    """
    Another unit inserted the same external reference first. The unit is
    re-run and then finds the existing row.
    """


class WalletCreationConflict(LedgerError, RetryableConflict):
    """Two units created the same user's wallet at once"""


class LedgerStateError(LedgerError):
    """Transaction is not in a state that allows the operation"""


class ReferenceOwnershipError(LedgerStateError):
    """External reference is already booked for another user"""

    def __init__(self, external_reference: str, owner_id: str, user_id: str):
        super().__init__(f"Reference {external_reference} is already booked for another user")
        self.external_reference = external_reference
        self.owner_id = owner_id
        self.user_id = user_id


class LedgerNotFoundError(LedgerError):
    """Unknown ledger transaction"""


# ==================== PYDANTIC MODELS ====================

class LedgerTransaction(BaseModel):
    """Ledger row as returned by the API"""
    id: str
    user_id: str
    type: str
    amount: float
    balance_before: Optional[float] = None
    balance_after: Optional[float] = None
    status: str
    description: Optional[str] = None
    external_reference: Optional[str] = None
    notification_record_id: Optional[str] = None
    counterpart_record_id: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class WalletBalance(BaseModel):
    user_id: str
    balance: float
    currency: str


class TransactionHistoryPage(BaseModel):
    """Paginated transaction history"""
    items: List[LedgerTransaction]
    total: int
    page: int
    limit: int
    pages: int


# ==================== HELPER FUNCTIONS ====================

def to_amount(value) -> Decimal:
    """Coerce to a 2-place Decimal"""
    return Decimal(str(value)).quantize(CENT)


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime to ISO string"""
    dt = as_utc(dt)
    if not dt:
        return None
    return dt.isoformat()


def _optional_float(value) -> Optional[float]:
    return float(value) if value is not None else None


def effective_at():
    """Ordering key of a ledger row: completion time, else creation time"""
    return func.coalesce(LedgerTransactionDB.completed_at, LedgerTransactionDB.created_at)


def db_to_ledger_transaction(db_obj: LedgerTransactionDB) -> LedgerTransaction:
    """Convert database model to Pydantic model"""
    return LedgerTransaction(
        id=db_obj.id,
        user_id=db_obj.user_id,
        type=db_obj.type.value,
        amount=float(db_obj.amount),
        balance_before=_optional_float(db_obj.balance_before),
        balance_after=_optional_float(db_obj.balance_after),
        status=db_obj.status.value,
        description=db_obj.description,
        external_reference=db_obj.external_reference,
        notification_record_id=db_obj.notification_record_id,
        counterpart_record_id=db_obj.counterpart_record_id,
        approved_by=db_obj.approved_by,
        approved_at=_format_datetime(db_obj.approved_at),
        failure_reason=db_obj.failure_reason,
        created_at=_format_datetime(db_obj.created_at),
        completed_at=_format_datetime(db_obj.completed_at),
    )


@dataclass
class LedgerResult:
    """Outcome of apply(); applied=False means the reference was already booked"""
    wallet: Optional[WalletDB]
    transaction: LedgerTransactionDB
    applied: bool


# ==================== REPOSITORY ====================

class LedgerRepository:
    """Repository for wallet and ledger rows; caller owns the transaction"""

    def __init__(self, session: AsyncSession, currency: str = "ETB"):
        self.session = session
        self.currency = currency

    # ==================== WALLETS ====================

    async def get_wallet(self, user_id: str, for_update: bool = False) -> Optional[WalletDB]:
        query = select(WalletDB).where(WalletDB.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_or_create_wallet(self, user_id: str, for_update: bool = True) -> WalletDB:
        """A missing wallet is created with a zero balance"""
        wallet = await self.get_wallet(user_id, for_update=for_update)
        if wallet:
            return wallet

        wallet = WalletDB(user_id=user_id, balance=Decimal("0.00"), currency=self.currency)
        self.session.add(wallet)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise WalletCreationConflict(f"Wallet for {user_id} created concurrently") from e

        logger.info(f"Wallet created for user {user_id}")
        return wallet

    async def get_balance(self, user_id: str) -> Decimal:
        wallet = await self.get_wallet(user_id)
        return to_amount(wallet.balance) if wallet else Decimal("0.00")

    # ==================== TRANSACTIONS ====================

    async def get_transaction(self, transaction_id: str, for_update: bool = False) -> Optional[LedgerTransactionDB]:
        query = select(LedgerTransactionDB).where(LedgerTransactionDB.id == transaction_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_reference(self, external_reference: str) -> Optional[LedgerTransactionDB]:
        result = await self.session.execute(
            select(LedgerTransactionDB)
            .where(LedgerTransactionDB.external_reference == external_reference)
        )
        return result.scalar_one_or_none()

    async def _insert(self, txn: LedgerTransactionDB):
        self.session.add(txn)
        try:
            await self.session.flush()
        except IntegrityError as e:
            message = str(e.orig).lower() if e.orig else str(e).lower()
            if "external_reference" in message or "unique" in message or "duplicate" in message:
                raise DuplicateReferenceError(
                    f"External reference {txn.external_reference} already booked"
                ) from e
            raise

    def _move_balance(self, wallet: WalletDB, amount: Decimal) -> Tuple[Decimal, Decimal]:
        before = to_amount(wallet.balance)
        after = before + amount
        if after < 0:
            raise InsufficientBalanceError(wallet.user_id, before, -amount)
        wallet.balance = after
        return before, after

    async def apply(
        self,
        user_id: str,
        amount,
        transaction_type: LedgerTransactionType,
        description: Optional[str] = None,
        external_reference: Optional[str] = None,
        notification_record_id: Optional[str] = None,
        counterpart_record_id: Optional[str] = None,
        approved_by: Optional[str] = None,
    ) -> LedgerResult:
        """
        Apply a signed amount to the user's wallet and record it.

        An existing PENDING row with the same reference is completed in
        place; an existing COMPLETED row is returned with applied=False.
        """
        amount = to_amount(amount)
        if amount == 0:
            raise ValueError("Amount must be non-zero")

        if external_reference:
            existing = await self.get_by_reference(external_reference)
            if existing is not None:
                if existing.user_id != user_id:
                    raise ReferenceOwnershipError(external_reference, existing.user_id, user_id)
                if existing.status == LedgerTransactionStatus.COMPLETED:
                    logger.info(f"Reference {external_reference} already applied; skipping")
                    return LedgerResult(wallet=None, transaction=existing, applied=False)
                if existing.status == LedgerTransactionStatus.PENDING:
                    if to_amount(existing.amount) != amount:
                        raise LedgerStateError(
                            f"Pending transaction {existing.id} does not match the requested credit"
                        )
                    return await self.complete_pending_deposit(
                        existing,
                        approved_by=approved_by,
                        counterpart_record_id=counterpart_record_id,
                        notification_record_id=notification_record_id,
                        description=description,
                    )
                raise LedgerStateError(f"Reference {external_reference} belongs to a failed transaction")

        wallet = await self.get_or_create_wallet(user_id)
        if not wallet.is_active:
            raise LedgerStateError(f"Wallet for {user_id} is inactive")

        before, after = self._move_balance(wallet, amount)
        now = datetime.now(timezone.utc)

        txn = LedgerTransactionDB(
            user_id=user_id,
            wallet_id=wallet.id,
            type=transaction_type,
            amount=amount,
            balance_before=before,
            balance_after=after,
            status=LedgerTransactionStatus.COMPLETED,
            description=description,
            external_reference=external_reference,
            notification_record_id=notification_record_id,
            counterpart_record_id=counterpart_record_id,
            approved_by=approved_by,
            approved_at=now if approved_by else None,
            created_at=now,
            completed_at=now,
        )
        await self._insert(txn)

        logger.info(
            f"Ledger {transaction_type.value} {amount} for {user_id}: {before} -> {after}",
            extra={"user_id": user_id, "transaction_id": txn.id, "external_reference": external_reference}
        )
        return LedgerResult(wallet=wallet, transaction=txn, applied=True)

    async def deduct(
        self,
        user_id: str,
        amount,
        transaction_type: LedgerTransactionType = LedgerTransactionType.GAME_ENTRY,
        description: Optional[str] = None,
        external_reference: Optional[str] = None,
    ) -> LedgerResult:
        """Debit; raises InsufficientBalanceError without touching anything"""
        amount = to_amount(amount)
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        return await self.apply(
            user_id, -amount, transaction_type,
            description=description, external_reference=external_reference
        )

    # ==================== PENDING DEPOSITS ====================

    async def open_pending_deposit(
        self,
        user_id: str,
        amount,
        external_reference: Optional[str] = None,
        notification_record_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerTransactionDB:
        """
        Record a deposit awaiting review. No balance effect until completed.
        """
        amount = to_amount(amount)
        if amount <= 0:
            raise ValueError("Deposit amount must be positive")

        if external_reference:
            existing = await self.get_by_reference(external_reference)
            if existing is not None:
                if existing.user_id != user_id:
                    raise ReferenceOwnershipError(external_reference, existing.user_id, user_id)
                return existing

        wallet = await self.get_or_create_wallet(user_id, for_update=False)
        txn = LedgerTransactionDB(
            user_id=user_id,
            wallet_id=wallet.id,
            type=LedgerTransactionType.DEPOSIT,
            amount=amount,
            status=LedgerTransactionStatus.PENDING,
            description=description,
            external_reference=external_reference,
            notification_record_id=notification_record_id,
            created_at=datetime.now(timezone.utc),
        )
        await self._insert(txn)
        return txn

    async def complete_pending_deposit(
        self,
        txn: LedgerTransactionDB,
        approved_by: Optional[str] = None,
        counterpart_record_id: Optional[str] = None,
        notification_record_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerResult:
        if txn.status == LedgerTransactionStatus.COMPLETED:
            return LedgerResult(wallet=None, transaction=txn, applied=False)
        if txn.status != LedgerTransactionStatus.PENDING:
            raise LedgerStateError(f"Transaction {txn.id} is {txn.status.value}")

        wallet = await self.get_or_create_wallet(txn.user_id)
        before, after = self._move_balance(wallet, to_amount(txn.amount))
        now = datetime.now(timezone.utc)

        txn.balance_before = before
        txn.balance_after = after
        txn.status = LedgerTransactionStatus.COMPLETED
        txn.completed_at = now
        if approved_by:
            txn.approved_by = approved_by
            txn.approved_at = now
        if counterpart_record_id:
            txn.counterpart_record_id = counterpart_record_id
        if notification_record_id and not txn.notification_record_id:
            txn.notification_record_id = notification_record_id
        if description:
            txn.description = description
        await self.session.flush()

        logger.info(
            f"Pending deposit {txn.id} completed for {txn.user_id}: {before} -> {after}",
            extra={"user_id": txn.user_id, "transaction_id": txn.id, "approved_by": approved_by}
        )
        return LedgerResult(wallet=wallet, transaction=txn, applied=True)

    async def fail_pending_deposit(
        self,
        txn: LedgerTransactionDB,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> LedgerTransactionDB:
        if txn.status != LedgerTransactionStatus.PENDING:
            raise LedgerStateError(f"Transaction {txn.id} is {txn.status.value}")

        txn.status = LedgerTransactionStatus.FAILED
        txn.failure_reason = reason
        if actor:
            txn.approved_by = actor
        await self.session.flush()
        return txn

    # ==================== READ ====================

    async def get_history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[LedgerTransactionDB], int]:
        """
        Newest first by when the row took effect: completion time, or
        creation time for rows that never completed.
        """
        page = max(page, 1)
        limit = max(min(limit, 100), 1)

        total_result = await self.session.execute(
            select(func.count(LedgerTransactionDB.id))
            .where(LedgerTransactionDB.user_id == user_id)
        )
        total = total_result.scalar() or 0

        result = await self.session.execute(
            select(LedgerTransactionDB)
            .where(LedgerTransactionDB.user_id == user_id)
            .order_by(effective_at().desc(), LedgerTransactionDB.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def get_pending_deposits(self, limit: int = 50) -> List[LedgerTransactionDB]:
        result = await self.session.execute(
            select(LedgerTransactionDB)
            .where(
                LedgerTransactionDB.type == LedgerTransactionType.DEPOSIT,
                LedgerTransactionDB.status == LedgerTransactionStatus.PENDING
            )
            .order_by(LedgerTransactionDB.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def summarize(self, start: datetime, end: datetime) -> Dict[str, Dict[str, Any]]:
        """Completed totals per type in [start, end)"""
        result = await self.session.execute(
            select(
                LedgerTransactionDB.type,
                func.count(LedgerTransactionDB.id),
                func.coalesce(func.sum(LedgerTransactionDB.amount), 0)
            )
            .where(
                LedgerTransactionDB.status == LedgerTransactionStatus.COMPLETED,
                LedgerTransactionDB.completed_at >= start,
                LedgerTransactionDB.completed_at < end
            )
            .group_by(LedgerTransactionDB.type)
        )
        summary = {
            t.value: {"count": 0, "total": 0.0} for t in LedgerTransactionType
        }
        for txn_type, count, total in result.all():
            summary[txn_type.value] = {"count": count, "total": float(abs(to_amount(total)))}
        return summary
