"""
Shared fixtures: a throw-away SQLite database per test, settings with
fast retries, a notifier that records what it was asked to send, and
ledger consistency checks.
"""

import os
import tempfile
from decimal import Decimal

# Must be set before config.get_settings() is first called
_TEST_DIR = tempfile.mkdtemp(prefix="deposit-recon-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DIR}/default.db")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("ENVIRONMENT", "development")

from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from config import Settings
from database.atomic import KeyedLock
from database.connection import build_session_factory, create_tables
from database.ledger_models import LedgerTransactionDB, LedgerTransactionStatus, WalletDB, as_utc
from database.notification_models import (
    NotificationRecordDB, NotificationRole, NotificationStatus, Direction
)
from reconciliation.channel_registry import PaymentChannel
from reconciliation.services.reconciliation_service import ReconciliationService
from services.ledger_service import to_amount
from services.notifier import Notifier, DeliveryResult
from services.wallet_service import WalletService
from utils.retry import RetryPolicy

TEST_API_KEY = "test-internal-key"


class RecordingNotifier(Notifier):
    """Keeps every notification in memory"""

    def __init__(self):
        super().__init__("operators")
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    async def send(self, user_id: str, message: str, context: Optional[Dict[str, Any]] = None) -> DeliveryResult:
        self.sent.append((user_id, message, context or {}))
        return DeliveryResult(success=True)

    def messages_for(self, user_id: str) -> List[str]:
        return [message for recipient, message, _ in self.sent if recipient == user_id]


def make_settings(**overrides) -> Settings:
    values = dict(
        INTERNAL_API_KEY=TEST_API_KEY,
        RETRY_MAX_ATTEMPTS=5,
        RETRY_DELAYS=[0.01, 0.02, 0.05],
        SWEEP_ENABLED=False,
        DEFAULT_TIMEZONE="Africa/Addis_Ababa",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def sqlite_url(directory) -> str:
    return f"sqlite+aiosqlite:///{directory}/test.db"


def build_test_engine(directory):
    return create_async_engine(
        sqlite_url(directory),
        poolclass=NullPool,
        connect_args={"timeout": 30}
    )


@pytest.fixture
def settings():
    return make_settings()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_test_engine(tmp_path)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def wallet_service(session_factory, settings):
    return WalletService(
        session_factory,
        settings=settings,
        policy=RetryPolicy.from_settings(settings),
        locks=KeyedLock()
    )


@pytest.fixture
def reconciliation_service(session_factory, settings, notifier):
    return ReconciliationService(
        session_factory,
        notifier=notifier,
        settings=settings,
        policy=RetryPolicy.from_settings(settings),
        locks=KeyedLock()
    )


async def insert_record(session_factory, **fields) -> NotificationRecordDB:
    """Store a notification record directly, bypassing ingest"""
    values = dict(
        user_id="user-1",
        raw_text="test notification",
        channel=PaymentChannel.CBE_BANK,
        amount=100,
        direction=Direction.DEBIT,
        role=NotificationRole.PAYER,
        role_confidence=0.9,
        status=NotificationStatus.WAITING_MATCH,
    )
    values.update(fields)
    values.setdefault("content_hash", f"hash-{values['user_id']}-{values['raw_text']}-{values.get('reference_code')}")

    async with session_factory() as session:
        async with session.begin():
            record = NotificationRecordDB(**values)
            session.add(record)
        return record


async def load_record(session_factory, record_id: str) -> NotificationRecordDB:
    async with session_factory() as session:
        return await session.get(NotificationRecordDB, record_id)


async def ledger_rows(session_factory, user_id):
    async with session_factory() as session:
        result = await session.execute(
            select(LedgerTransactionDB).where(LedgerTransactionDB.user_id == user_id)
        )
        return list(result.scalars().all())


async def assert_ledger_consistent(session_factory, user_id):
    """
    Every completed row explains its balance move, each row starts where
    the previous one (in completion order) ended, and the rows sum to the
    balance.
    """
    rows = await ledger_rows(session_factory, user_id)
    completed = sorted(
        (r for r in rows if r.status == LedgerTransactionStatus.COMPLETED),
        key=lambda r: as_utc(r.completed_at)
    )
    previous_after = Decimal("0.00")
    for row in completed:
        assert to_amount(row.balance_after) == to_amount(row.balance_before) + to_amount(row.amount)
        assert to_amount(row.balance_after) >= 0
        assert to_amount(row.balance_before) == previous_after
        previous_after = to_amount(row.balance_after)

    async with session_factory() as session:
        wallet = (await session.execute(
            select(WalletDB).where(WalletDB.user_id == user_id)
        )).scalar_one_or_none()
    balance = to_amount(wallet.balance) if wallet else Decimal("0.00")
    assert balance == sum((to_amount(r.amount) for r in completed), Decimal("0.00"))
    return balance
