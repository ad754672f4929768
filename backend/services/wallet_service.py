"""
Deposit Reconciliation Core - Wallet Service

Atomic wallet operations for collaborators outside the reconciliation
engine (game entry fees, winnings, manual deposit requests) and the
read side of the ledger (balance, history, pending deposits, daily
report).

Every mutation is one atomic unit: own session, one transaction, the
user's wallet lock held, re-run on write conflicts.
"""

from datetime import datetime, date, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Dict, Any
import logging
import math

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.atomic import run_atomic, KeyedLock
from database.ledger_models import LedgerTransactionDB, LedgerTransactionType, LedgerTransactionStatus
from database.notification_models import NotificationRecordDB, NotificationStatus
from services.ledger_service import (
    LedgerRepository, LedgerResult, LedgerStateError, LedgerNotFoundError,
    TransactionHistoryPage, WalletBalance, LedgerTransaction,
    db_to_ledger_transaction, to_amount
)
from utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class WalletService:
    """Atomic facade over LedgerRepository"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings=None,
        policy: Optional[RetryPolicy] = None,
        locks: Optional[KeyedLock] = None
    ):
        if settings is None:
            from config import get_settings
            settings = get_settings()
        self.session_factory = session_factory
        self.settings = settings
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.locks = locks

    def _repo(self, session: AsyncSession) -> LedgerRepository:
        return LedgerRepository(session, currency=self.settings.DEFAULT_CURRENCY)

    async def _atomic(self, work, *user_ids: str, description: str):
        return await run_atomic(
            self.session_factory, work,
            lock_keys=user_ids, policy=self.policy, locks=self.locks,
            description=description
        )

    # ==================== MUTATIONS ====================

    async def credit(
        self,
        user_id: str,
        amount,
        description: Optional[str] = None,
        transaction_type: LedgerTransactionType = LedgerTransactionType.WINNING,
        external_reference: Optional[str] = None,
    ) -> LedgerResult:
        """Credit a wallet; idempotent when external_reference is given"""
        amount = to_amount(amount)
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        async def work(session: AsyncSession) -> LedgerResult:
            return await self._repo(session).apply(
                user_id, amount, transaction_type,
                description=description, external_reference=external_reference
            )

        return await self._atomic(work, user_id, description=f"credit {user_id}")

    async def debit(
        self,
        user_id: str,
        amount,
        description: Optional[str] = None,
        transaction_type: LedgerTransactionType = LedgerTransactionType.GAME_ENTRY,
        external_reference: Optional[str] = None,
    ) -> LedgerResult:
        """Debit a wallet; InsufficientBalanceError leaves it untouched"""

        async def work(session: AsyncSession) -> LedgerResult:
            return await self._repo(session).deduct(
                user_id, amount, transaction_type,
                description=description, external_reference=external_reference
            )

        return await self._atomic(work, user_id, description=f"debit {user_id}")

    async def request_deposit(
        self,
        user_id: str,
        amount,
        reference: Optional[str] = None,
        description: str = "Bank deposit",
    ) -> LedgerTransactionDB:
        """Manual deposit request awaiting operator approval"""
        external_reference = f"deposit:manual:{reference.strip().upper()}" if reference else None

        async def work(session: AsyncSession) -> LedgerTransactionDB:
            return await self._repo(session).open_pending_deposit(
                user_id, amount, external_reference=external_reference, description=description
            )

        return await self._atomic(work, user_id, description=f"deposit request {user_id}")

    async def approve_pending_deposit(self, transaction_id: str, operator_id: str) -> LedgerResult:
        """
        Complete a manual pending deposit.

        Deposits opened for a notification record are approved through the
        record so its status moves in the same unit.
        """
        async with self.session_factory() as session:
            txn = await self._repo(session).get_transaction(transaction_id)
        if txn is None:
            raise LedgerNotFoundError(f"Transaction {transaction_id} not found")
        if txn.notification_record_id:
            raise LedgerStateError(
                f"Transaction {transaction_id} belongs to notification {txn.notification_record_id}"
            )

        async def work(session: AsyncSession) -> LedgerResult:
            repo = self._repo(session)
            locked = await repo.get_transaction(transaction_id, for_update=True)
            return await repo.complete_pending_deposit(locked, approved_by=operator_id)

        result = await self._atomic(work, txn.user_id, description=f"approve deposit {transaction_id}")
        logger.info(f"Deposit {transaction_id} approved by {operator_id}")
        return result

    # ==================== READ ====================

    async def get_balance(self, user_id: str) -> Decimal:
        async with self.session_factory() as session:
            return await self._repo(session).get_balance(user_id)

    async def get_wallet_balance(self, user_id: str) -> WalletBalance:
        async with self.session_factory() as session:
            wallet = await self._repo(session).get_wallet(user_id)
        return WalletBalance(
            user_id=user_id,
            balance=float(wallet.balance) if wallet else 0.0,
            currency=wallet.currency if wallet else self.settings.DEFAULT_CURRENCY
        )

    async def get_transaction_history(self, user_id: str, page: int = 1, limit: int = 20) -> TransactionHistoryPage:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        async with self.session_factory() as session:
            items, total = await self._repo(session).get_history(user_id, page, limit)
        return TransactionHistoryPage(
            items=[db_to_ledger_transaction(t) for t in items],
            total=total,
            page=page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )

    async def get_pending_deposits(self, limit: int = 50) -> List[LedgerTransaction]:
        async with self.session_factory() as session:
            items = await self._repo(session).get_pending_deposits(limit)
        return [db_to_ledger_transaction(t) for t in items]

    async def generate_daily_report(self, day: Optional[date] = None) -> Dict[str, Any]:
        """
        Ledger and reconciliation totals for one UTC day.
        """
        day = day or datetime.now(timezone.utc).date()
        start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        async with self.session_factory() as session:
            totals = await self._repo(session).summarize(start, end)

            pending_result = await session.execute(
                select(func.count(LedgerTransactionDB.id))
                .where(
                    LedgerTransactionDB.type == LedgerTransactionType.DEPOSIT,
                    LedgerTransactionDB.status == LedgerTransactionStatus.PENDING
                )
            )
            pending_deposits = pending_result.scalar() or 0

            resolved_result = await session.execute(
                select(NotificationRecordDB.status, func.count(NotificationRecordDB.id))
                .where(
                    NotificationRecordDB.resolved_at >= start,
                    NotificationRecordDB.resolved_at < end
                )
                .group_by(NotificationRecordDB.status)
            )
            resolved = {status.value: count for status, count in resolved_result.all()}

        return {
            "date": day.isoformat(),
            "deposits": totals[LedgerTransactionType.DEPOSIT.value],
            "withdrawals": totals[LedgerTransactionType.WITHDRAWAL.value],
            "game_entries": totals[LedgerTransactionType.GAME_ENTRY.value],
            "winnings": totals[LedgerTransactionType.WINNING.value],
            "pending_deposits": pending_deposits,
            "records_resolved": resolved,
            "auto_matched": resolved.get(NotificationStatus.AUTO_MATCHED.value, 0),
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
