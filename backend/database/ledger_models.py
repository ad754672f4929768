"""
Wallet Ledger Database Models

The ledger is the only writer of wallet balances.

Tables:
- wallets: One balance per user
- ledger_transactions: Append-only log of balance changes
- user_mappings: External (chat) identities mapped to internal users
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Column, String, Text, Boolean, DateTime, Integer,
    ForeignKey, Index, CheckConstraint, Enum as SQLEnum, Numeric
)
from sqlalchemy.orm import relationship

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ==================== ENUMS ====================

class LedgerTransactionType(str, PyEnum):
    """What caused the balance change"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    GAME_ENTRY = "GAME_ENTRY"
    WINNING = "WINNING"


class LedgerTransactionStatus(str, PyEnum):
    """PENDING rows carry no balance effect until approved"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ==================== DATABASE MODELS ====================

class WalletDB(Base):
    """
    One wallet per user.

    `version` is bumped on every update; a concurrent writer holding a
    stale copy fails with StaleDataError and is retried.
    """
    __tablename__ = "wallets"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    balance = Column(Numeric(14, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="ETB")
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    transactions = relationship("LedgerTransactionDB", back_populates="wallet", lazy="raise")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )


class LedgerTransactionDB(Base):
    """
    One balance change.

    balance_before / balance_after stay NULL while PENDING and are written
    in the same unit that moves the wallet balance.
    """
    __tablename__ = "ledger_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=False, index=True)

    type = Column(
        SQLEnum(LedgerTransactionType, name="ledger_transaction_type_enum"),
        nullable=False
    )
    amount = Column(Numeric(14, 2), nullable=False)
    balance_before = Column(Numeric(14, 2), nullable=True)
    balance_after = Column(Numeric(14, 2), nullable=True)
    status = Column(
        SQLEnum(LedgerTransactionStatus, name="ledger_transaction_status_enum"),
        nullable=False,
        default=LedgerTransactionStatus.PENDING,
        index=True
    )
    description = Column(Text, nullable=True)

    # Idempotency key: one credit per deposit reference
    external_reference = Column(String(255), nullable=True, unique=True)

    # Provenance
    notification_record_id = Column(String(36), nullable=True, index=True)
    counterpart_record_id = Column(String(36), nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    wallet = relationship("WalletDB", back_populates="transactions", lazy="raise")

    __table_args__ = (
        Index("ix_ledger_transactions_user_created", "user_id", "created_at"),
        Index("ix_ledger_transactions_type_status", "type", "status"),
    )


class UserMappingDB(Base):
    """
    Maps an identity from the chat layer (e.g. a Telegram id) to the
    internal user id that owns the wallet.
    """
    __tablename__ = "user_mappings"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    external_id = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


__all__ = [
    'LedgerTransactionType',
    'LedgerTransactionStatus',
    'WalletDB',
    'LedgerTransactionDB',
    'UserMappingDB',
]
