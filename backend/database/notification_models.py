"""
Notification Record Database Model

One row per submitted payment notification (free-text SMS).
Rows are never deleted; terminal states stay for audit.
"""

from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, Boolean, DateTime, Integer, Float,
    Index, UniqueConstraint, Enum as SQLEnum, Numeric
)

from database.connection import Base
from database.ledger_models import generate_uuid, utc_now, as_utc
from reconciliation.channel_registry import PaymentChannel


# ==================== ENUMS ====================

class NotificationRole(str, PyEnum):
    """Which side of the transfer the message describes"""
    PAYER = "PAYER"      # Money leaving the submitter
    PAYEE = "PAYEE"      # Money arriving at the collection account
    UNKNOWN = "UNKNOWN"


class Direction(str, PyEnum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"
    UNKNOWN = "UNKNOWN"


class ReferenceSource(str, PyEnum):
    """Where the reference code was found in the text"""
    URL = "URL"
    LABEL = "LABEL"
    BARE = "BARE"


class NotificationStatus(str, PyEnum):
    """Record lifecycle"""
    RECEIVED = "RECEIVED"                      # Stored, not yet matched
    WAITING_MATCH = "WAITING_MATCH"            # Classified, waiting for a counterpart
    AUTO_MATCHED = "AUTO_MATCHED"              # Payer side, credited by the engine
    APPROVED = "APPROVED"                      # Payer side, credited by an operator pairing
    OPERATOR_APPROVED = "OPERATOR_APPROVED"    # Credited by an operator without a counterpart
    CONFIRMED = "CONFIRMED"                    # Payee side of a resolved pair
    REJECTED = "REJECTED"


PENDING_STATUSES = (NotificationStatus.RECEIVED, NotificationStatus.WAITING_MATCH)

TERMINAL_STATUSES = (
    NotificationStatus.AUTO_MATCHED,
    NotificationStatus.APPROVED,
    NotificationStatus.OPERATOR_APPROVED,
    NotificationStatus.CONFIRMED,
    NotificationStatus.REJECTED,
)


# ==================== DATABASE MODEL ====================

class NotificationRecordDB(Base):
    """
    A submitted notification and the identifiers extracted from it.

    raw_text and amount are written once at insert. Status and links are
    changed only by the reconciliation service.
    """
    __tablename__ = "notification_records"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False, index=True)

    raw_text = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)
    channel = Column(
        SQLEnum(PaymentChannel, name="payment_channel_enum"),
        nullable=False,
        default=PaymentChannel.UNKNOWN
    )

    # Extracted identifiers
    amount = Column(Numeric(14, 2), nullable=False)
    reference_code = Column(String(64), nullable=True, index=True)
    raw_reference_code = Column(String(128), nullable=True)
    reference_source = Column(SQLEnum(ReferenceSource, name="reference_source_enum"), nullable=True)
    counterparty_name = Column(String(255), nullable=True)
    transaction_time = Column(DateTime(timezone=True), nullable=True)
    is_debit = Column(Boolean, nullable=False, default=False)
    is_credit = Column(Boolean, nullable=False, default=False)
    direction = Column(
        SQLEnum(Direction, name="direction_enum"),
        nullable=False,
        default=Direction.UNKNOWN
    )

    # Classification
    role = Column(
        SQLEnum(NotificationRole, name="notification_role_enum"),
        nullable=False,
        default=NotificationRole.UNKNOWN,
        index=True
    )
    role_confidence = Column(Float, nullable=False, default=0.5)

    # Lifecycle
    status = Column(
        SQLEnum(NotificationStatus, name="notification_status_enum"),
        nullable=False,
        default=NotificationStatus.RECEIVED,
        index=True
    )
    matched_record_id = Column(String(36), nullable=True)
    ledger_transaction_id = Column(String(36), nullable=True)

    # Diagnostics consumed by the operator queue
    match_score = Column(Float, nullable=True)
    review_reason = Column(String(64), nullable=True)
    debug_info = Column(Text, nullable=True)

    resolved_by = Column(String(64), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("user_id", "content_hash", name="uq_notification_records_user_content"),
        Index("ix_notification_records_match", "status", "role", "amount"),
        Index("ix_notification_records_status_created", "status", "created_at"),
    )

    @property
    def received_at(self):
        """Best known instant of the transfer"""
        return as_utc(self.transaction_time or self.created_at)


__all__ = [
    'NotificationRole',
    'Direction',
    'ReferenceSource',
    'NotificationStatus',
    'PENDING_STATUSES',
    'TERMINAL_STATUSES',
    'NotificationRecordDB',
]
