"""
Trust & Escrow Engine - SQLAlchemy ORM Models

Relational invariants the engine relies on:
- trust_events rows are append-only
- a transaction carries exactly one status; dispute_data and completion_proof
  are only written by the transitions that own them
- at most one escrowed transaction per (client, provider, service)
"""
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON, ForeignKey, Numeric, Index,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================

class TransactionStatus(str, Enum):
    """Escrow lifecycle states. PENDING is conceptual and never persisted."""
    PENDING = "pending"
    ESCROWED = "escrowed"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    RESOLVED = "resolved"


class TrustEventType(str, Enum):
    """Kinds of trust-relevant occurrences recorded on the ledger."""
    REGISTRATION = "registration"
    LOGIN = "login"
    REVIEW_RECEIVED = "review_received"
    VERIFICATION_UPGRADE = "verification_upgrade"
    FRAUD_REPORTED = "fraud_reported"
    DISPUTE_OUTCOME = "dispute_outcome"
    TRANSACTION_COMPLETED = "transaction_completed"


class DisputeWinner(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"


class DisputeCaseStatus(str, Enum):
    """Sub-status stored inside dispute_data."""
    OPEN = "open"
    RESOLVED = "resolved"


# =============================================================================
# TABLES
# =============================================================================

class UserDB(Base):
    """
    User snapshot. Owned by the identity subsystem; the engine reads it and
    only increments trust_score/reputation_score through the ledger.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    username = Column(String(100), unique=True, nullable=False, index=True)

    trust_score = Column(Integer, nullable=False, default=0)       # 0-1000 after recalculation
    reputation_score = Column(Integer, nullable=False, default=0)  # floor 0, unbounded above
    verification_tier = Column(Integer, nullable=False, default=1)  # 1-4

    payout_account = Column(String(255), nullable=True)  # Transfer destination for provider payouts

    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_active = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    trust_events = relationship("TrustEventDB", back_populates="user", order_by="TrustEventDB.created_at")


class ServiceDB(Base):
    """Bookable service listing. Only the fields the status projection needs."""
    __tablename__ = "services"

    id = Column(String(36), primary_key=True)  # UUID
    provider_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    service_type = Column(String(50), nullable=False, default="service_booking")

    created_at = Column(DateTime, default=utcnow)


class TransactionDB(Base):
    """Escrowed transaction. Mutated only through EscrowService transitions."""
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True)  # UUID
    client_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    provider_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.ESCROWED)

    scheduled_time = Column(DateTime, nullable=True)
    location_data = Column(JSON, nullable=True)      # LocationData
    dispute_data = Column(JSON, nullable=True)       # DisputeRecord, present iff disputed/resolved
    completion_proof = Column(JSON, nullable=True)   # CompletionProof, present iff completed/resolved

    # External references
    payment_hold_id = Column(String(255), nullable=True)
    escrow_address = Column(String(255), nullable=True)   # Optional mirror reference
    dispute_case_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    client = relationship("UserDB", foreign_keys=[client_id])
    provider = relationship("UserDB", foreign_keys=[provider_id])
    service = relationship("ServiceDB")

    __table_args__ = (
        # One live hold per (client, provider, service)
        Index(
            "uq_transactions_active_escrow",
            "client_id", "provider_id", "service_id",
            unique=True,
            postgresql_where=(status == TransactionStatus.ESCROWED),
            sqlite_where=(status == TransactionStatus.ESCROWED),
        ),
    )


class TrustEventDB(Base):
    """Append-only trust ledger row. Never updated or deleted."""
    __tablename__ = "trust_events"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(SQLEnum(TrustEventType), nullable=False, index=True)
    event_data = Column(JSON, nullable=True)
    trust_delta = Column(Integer, nullable=False, default=0)
    reputation_delta = Column(Integer, nullable=False, default=0)
    transaction_id = Column(String(36), ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    user = relationship("UserDB", back_populates="trust_events")


class ReviewDB(Base):
    """One review per reviewer per completed transaction."""
    __tablename__ = "reviews"

    id = Column(String(36), primary_key=True)  # UUID
    transaction_id = Column(String(36), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True)
    reviewer_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    reviewee_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("uq_reviews_transaction_reviewer", "transaction_id", "reviewer_id", unique=True),
    )
