"""
Pytest fixtures for Trust & Escrow Engine tests.

Each test gets a fresh in-memory SQLite database, a fixed clock and an
in-memory payment port that records every call.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from trust_escrow.context import EngineContext
from trust_escrow.database import init_db, make_engine, make_session_factory
from trust_escrow.models.db_models import (
    ServiceDB, TransactionDB, TransactionStatus, UserDB,
)
from trust_escrow.ports import InMemoryPaymentPort

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db():
    """Fresh in-memory database per test."""
    engine = make_engine("sqlite:///:memory:")
    init_db(engine)
    session = make_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def payment_port():
    return InMemoryPaymentPort()


@pytest.fixture
def ctx(db, payment_port):
    return EngineContext(db=db, payment_port=payment_port, clock=lambda: NOW)


@pytest.fixture
def make_user(db):
    """Factory for users with trust fields relative to NOW."""
    def _make(
        username=None,
        trust_score=500,
        reputation_score=0,
        verification_tier=2,
        age_days=60,
        inactive_days=1,
        payout_account=None,
    ):
        user = UserDB(
            id=str(uuid4()),
            username=username or f"user-{uuid4().hex[:8]}",
            trust_score=trust_score,
            reputation_score=reputation_score,
            verification_tier=verification_tier,
            payout_account=payout_account,
            created_at=NOW - timedelta(days=age_days),
            last_active=NOW - timedelta(days=inactive_days),
        )
        db.add(user)
        db.commit()
        return user
    return _make


@pytest.fixture
def make_service(db):
    def _make(provider, title="Home cleaning", service_type="service_booking"):
        service = ServiceDB(
            id=str(uuid4()),
            provider_id=provider.id,
            title=title,
            service_type=service_type,
            created_at=NOW - timedelta(days=30),
        )
        db.add(service)
        db.commit()
        return service
    return _make


@pytest.fixture
def make_transaction(db):
    """Insert a transaction row directly, bypassing the escrow service."""
    def _make(
        client,
        provider,
        service,
        status=TransactionStatus.COMPLETED,
        amount=Decimal("100.00"),
        created_at=None,
        completion_hours=None,
    ):
        created_at = created_at or NOW - timedelta(days=10)
        transaction = TransactionDB(
            id=str(uuid4()),
            client_id=client.id,
            provider_id=provider.id,
            service_id=service.id,
            amount=amount,
            status=status,
            created_at=created_at,
            completed_at=(
                created_at + timedelta(hours=completion_hours)
                if completion_hours is not None else None
            ),
        )
        db.add(transaction)
        db.commit()
        return transaction
    return _make


@pytest.fixture
def parties(make_user, make_service):
    """A low-risk client/provider pair and the provider's service."""
    client = make_user(username="client", trust_score=500, verification_tier=3, reputation_score=20)
    provider = make_user(
        username="provider", trust_score=500, verification_tier=3,
        reputation_score=20, payout_account="acct_provider",
    )
    service = make_service(provider)
    return client, provider, service
