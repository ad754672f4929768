"""
Tests for the Wallet Ledger

Tests:
- Credits, debits and insufficient balance
- Idempotent external references
- Pending deposit lifecycle
- Balance invariants over a seeded random sequence
- Concurrent credits (same user, different users, unlocked races)
- History pagination and the daily report

Run with: pytest tests/test_ledger.py -v
"""

import asyncio
import random
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import inspect

from conftest import ledger_rows, assert_ledger_consistent
from database.atomic import KeyedLock
from database.ledger_models import LedgerTransactionDB, LedgerTransactionStatus, LedgerTransactionType, WalletDB
from services.ledger_service import (
    LedgerRepository,
    InsufficientBalanceError,
    LedgerStateError,
    LedgerNotFoundError,
    ReferenceOwnershipError,
    to_amount,
)
from services.wallet_service import WalletService
from utils.retry import RetryPolicy


class TestCreditsAndDebits:
    """Basic wallet mutations."""

    @pytest.mark.asyncio
    async def test_credit_creates_wallet(self, wallet_service):
        result = await wallet_service.credit("user-1", 150, description="Winning")

        assert result.applied is True
        assert result.transaction.type == LedgerTransactionType.WINNING
        assert to_amount(result.transaction.balance_before) == Decimal("0.00")
        assert to_amount(result.transaction.balance_after) == Decimal("150.00")
        assert await wallet_service.get_balance("user-1") == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_balance_of_unknown_user_is_zero(self, wallet_service):
        assert await wallet_service.get_balance("nobody") == Decimal("0.00")
        balance = await wallet_service.get_wallet_balance("nobody")
        assert balance.balance == 0.0
        assert balance.currency == "ETB"

    @pytest.mark.asyncio
    async def test_debit(self, wallet_service):
        await wallet_service.credit("user-1", 100)
        result = await wallet_service.debit("user-1", 40, description="Game entry")

        assert result.applied is True
        assert to_amount(result.transaction.amount) == Decimal("-40.00")
        assert result.transaction.type == LedgerTransactionType.GAME_ENTRY
        assert await wallet_service.get_balance("user-1") == Decimal("60.00")

    @pytest.mark.asyncio
    async def test_insufficient_balance_leaves_wallet_untouched(self, wallet_service, session_factory):
        await wallet_service.credit("user-1", 30)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await wallet_service.debit("user-1", 30.01)

        assert exc_info.value.balance == Decimal("30.00")
        assert exc_info.value.amount == Decimal("30.01")
        assert await wallet_service.get_balance("user-1") == Decimal("30.00")
        assert len(await ledger_rows(session_factory, "user-1")) == 1

    @pytest.mark.asyncio
    async def test_debit_without_wallet_fails_cleanly(self, wallet_service, session_factory):
        with pytest.raises(InsufficientBalanceError):
            await wallet_service.debit("user-new", 10)
        assert await ledger_rows(session_factory, "user-new") == []

    @pytest.mark.asyncio
    async def test_non_positive_amounts_rejected(self, wallet_service):
        with pytest.raises(ValueError):
            await wallet_service.credit("user-1", 0)
        with pytest.raises(ValueError):
            await wallet_service.debit("user-1", -5)

    def test_wallet_links_are_never_lazy_loaded(self):
        assert inspect(WalletDB).relationships["transactions"].lazy == "raise"
        assert inspect(LedgerTransactionDB).relationships["wallet"].lazy == "raise"


class TestIdempotency:
    """A repeated external reference is applied once."""

    @pytest.mark.asyncio
    async def test_repeated_reference_returns_original(self, wallet_service):
        first = await wallet_service.credit("user-1", 100, external_reference="game:42:win")
        second = await wallet_service.credit("user-1", 100, external_reference="game:42:win")

        assert first.applied is True
        assert second.applied is False
        assert second.transaction.id == first.transaction.id
        assert await wallet_service.get_balance("user-1") == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_failed_reference_cannot_be_reused(self, session_factory):
        async with session_factory() as session:
            async with session.begin():
                repo = LedgerRepository(session)
                txn = await repo.open_pending_deposit("user-1", 50, external_reference="deposit:manual:X1")
                await repo.fail_pending_deposit(txn, reason="bad receipt")

        async with session_factory() as session:
            async with session.begin():
                with pytest.raises(LedgerStateError):
                    await LedgerRepository(session).apply(
                        "user-1", 50, LedgerTransactionType.DEPOSIT, external_reference="deposit:manual:X1"
                    )

    @pytest.mark.asyncio
    async def test_concurrent_same_reference_applies_once(self, wallet_service):
        results = await asyncio.gather(*[
            wallet_service.credit("user-1", 25, external_reference="bonus:1")
            for _ in range(10)
        ])

        assert sum(1 for r in results if r.applied) == 1
        assert len({r.transaction.id for r in results}) == 1
        assert await wallet_service.get_balance("user-1") == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_unlocked_race_on_same_reference_applies_once(self, session_factory, settings):
        """Two services with separate in-process locks still book one row."""
        policy = RetryPolicy(max_attempts=5, delays=[0.01, 0.02, 0.05])
        first = WalletService(session_factory, settings=settings, policy=policy, locks=KeyedLock())
        second = WalletService(session_factory, settings=settings, policy=policy, locks=KeyedLock())

        results = await asyncio.gather(
            first.credit("user-1", 75, external_reference="race:1"),
            second.credit("user-1", 75, external_reference="race:1"),
        )

        assert sorted(r.applied for r in results) == [False, True]
        assert await first.get_balance("user-1") == Decimal("75.00")
        await assert_ledger_consistent(session_factory, "user-1")


    @pytest.mark.asyncio
    async def test_reference_of_another_user_is_refused(self, wallet_service, session_factory):
        await wallet_service.credit("user-1", 40, external_reference="game:7:win")

        with pytest.raises(ReferenceOwnershipError) as exc_info:
            await wallet_service.credit("user-2", 40, external_reference="game:7:win")

        assert exc_info.value.owner_id == "user-1"
        assert await wallet_service.get_balance("user-2") == Decimal("0.00")
        assert await ledger_rows(session_factory, "user-2") == []


class TestPendingDeposits:
    """Manual deposit requests and approval."""

    @pytest.mark.asyncio
    async def test_pending_deposit_has_no_balance_effect(self, wallet_service):
        txn = await wallet_service.request_deposit("user-1", 200, reference="ft555")

        assert txn.status == LedgerTransactionStatus.PENDING
        assert txn.external_reference == "deposit:manual:FT555"
        assert await wallet_service.get_balance("user-1") == Decimal("0.00")

        pending = await wallet_service.get_pending_deposits()
        assert [p.id for p in pending] == [txn.id]

    @pytest.mark.asyncio
    async def test_approve_pending_deposit(self, wallet_service):
        txn = await wallet_service.request_deposit("user-1", 200, reference="ft555")

        result = await wallet_service.approve_pending_deposit(txn.id, "operator-1")

        assert result.applied is True
        assert result.transaction.status == LedgerTransactionStatus.COMPLETED
        assert result.transaction.approved_by == "operator-1"
        assert await wallet_service.get_balance("user-1") == Decimal("200.00")
        assert await wallet_service.get_pending_deposits() == []

        again = await wallet_service.approve_pending_deposit(txn.id, "operator-1")
        assert again.applied is False
        assert await wallet_service.get_balance("user-1") == Decimal("200.00")

    @pytest.mark.asyncio
    async def test_repeated_request_returns_same_pending(self, wallet_service):
        first = await wallet_service.request_deposit("user-1", 200, reference="FT777")
        second = await wallet_service.request_deposit("user-1", 200, reference="ft777")
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_approve_unknown_transaction(self, wallet_service):
        with pytest.raises(LedgerNotFoundError):
            await wallet_service.approve_pending_deposit("missing", "operator-1")

    @pytest.mark.asyncio
    async def test_notification_deposit_cannot_be_approved_directly(self, wallet_service, session_factory):
        async with session_factory() as session:
            async with session.begin():
                txn = await LedgerRepository(session).open_pending_deposit(
                    "user-1", 50,
                    external_reference="deposit:CBE_BANK:FT1",
                    notification_record_id="record-1"
                )

        with pytest.raises(LedgerStateError):
            await wallet_service.approve_pending_deposit(txn.id, "operator-1")
        assert await wallet_service.get_balance("user-1") == Decimal("0.00")


    @pytest.mark.asyncio
    async def test_deposit_request_with_another_users_reference(self, wallet_service, session_factory):
        first = await wallet_service.request_deposit("user-1", 200, reference="FT555")

        with pytest.raises(ReferenceOwnershipError):
            await wallet_service.request_deposit("user-2", 75, reference="ft555")

        assert await ledger_rows(session_factory, "user-2") == []
        pending = await wallet_service.get_pending_deposits()
        assert [p.id for p in pending] == [first.id]
        assert pending[0].amount == 200.0


class TestInvariants:
    """Balances stay consistent under arbitrary operation sequences."""

    @pytest.mark.asyncio
    async def test_seeded_random_sequence(self, wallet_service, session_factory):
        rng = random.Random(20261019)
        expected = Decimal("0.00")

        for i in range(80):
            amount = to_amount(Decimal(rng.randint(1, 50000)) / 100)
            if rng.random() < 0.55:
                await wallet_service.credit("user-r", amount, external_reference=f"seq:{i}")
                expected += amount
            elif amount > expected:
                with pytest.raises(InsufficientBalanceError):
                    await wallet_service.debit("user-r", amount, external_reference=f"seq:{i}")
            else:
                await wallet_service.debit("user-r", amount, external_reference=f"seq:{i}")
                expected -= amount

            assert await wallet_service.get_balance("user-r") == expected

        assert await assert_ledger_consistent(session_factory, "user-r") == expected


class TestConcurrency:
    """Concurrent atomic units."""

    @pytest.mark.asyncio
    async def test_fifty_concurrent_credits_same_user(self, wallet_service, session_factory):
        results = await asyncio.gather(*[
            wallet_service.credit("user-c", 10, external_reference=f"c:{i}")
            for i in range(50)
        ])

        assert all(r.applied for r in results)
        assert await wallet_service.get_balance("user-c") == Decimal("500.00")
        assert len(await ledger_rows(session_factory, "user-c")) == 50
        await assert_ledger_consistent(session_factory, "user-c")

    @pytest.mark.asyncio
    async def test_concurrent_credits_and_debits(self, wallet_service, session_factory):
        await wallet_service.credit("user-c", 100)

        async def debit(i):
            try:
                return await wallet_service.debit("user-c", 30, external_reference=f"d:{i}")
            except InsufficientBalanceError:
                return None

        results = await asyncio.gather(*[debit(i) for i in range(5)])

        assert sum(1 for r in results if r is not None) == 3
        assert await wallet_service.get_balance("user-c") == Decimal("10.00")
        await assert_ledger_consistent(session_factory, "user-c")

    @pytest.mark.asyncio
    async def test_concurrent_credits_different_users(self, wallet_service, session_factory):
        users = [f"user-{n}" for n in range(5)]
        await asyncio.gather(*[
            wallet_service.credit(user, 20, external_reference=f"{user}:{i}")
            for user in users
            for i in range(4)
        ])

        for user in users:
            assert await wallet_service.get_balance(user) == Decimal("80.00")
            await assert_ledger_consistent(session_factory, user)


class TestHistoryAndReports:
    """Read side of the ledger."""

    @pytest.mark.asyncio
    async def test_history_pagination_newest_first(self, wallet_service):
        for i in range(5):
            await wallet_service.credit("user-1", i + 1, external_reference=f"h:{i}")

        page = await wallet_service.get_transaction_history("user-1", page=1, limit=2)

        assert page.total == 5
        assert page.pages == 3
        assert [item.amount for item in page.items] == [5.0, 4.0]

        last = await wallet_service.get_transaction_history("user-1", page=3, limit=2)
        assert [item.amount for item in last.items] == [1.0]

    @pytest.mark.asyncio
    async def test_daily_report(self, wallet_service):
        await wallet_service.credit("user-1", 100)
        await wallet_service.debit("user-1", 30)
        await wallet_service.request_deposit("user-1", 50, reference="FT9")

        report = await wallet_service.generate_daily_report(datetime.now(timezone.utc).date())

        assert report["winnings"] == {"count": 1, "total": 100.0}
        assert report["game_entries"] == {"count": 1, "total": 30.0}
        assert report["deposits"] == {"count": 0, "total": 0.0}
        assert report["pending_deposits"] == 1

    @pytest.mark.asyncio
    async def test_history_follows_completion_order(self, wallet_service, session_factory):
        deposit = await wallet_service.request_deposit("user-1", 100, reference="FT77")
        await wallet_service.credit("user-1", 5, external_reference="game:1:win")
        await wallet_service.approve_pending_deposit(deposit.id, "operator-1")

        page = await wallet_service.get_transaction_history("user-1", page=1, limit=10)

        assert [item.type for item in page.items] == ["DEPOSIT", "WINNING"]
        newest, oldest = page.items
        assert oldest.balance_before == 0.0
        assert oldest.balance_after == 5.0
        assert newest.balance_before == 5.0
        assert newest.balance_after == 105.0
        await assert_ledger_consistent(session_factory, "user-1")
