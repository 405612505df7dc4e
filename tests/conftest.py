"""Shared test fixtures and configuration."""

import os
import pytest
from datetime import date, datetime
from typing import Dict, Any

# Set up test environment variables before importing modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMATCH_REFERENCE_SECRET", "test-reference-secret")

from paymatch.config import ReconciliationSettings
from paymatch.database import (
    Base,
    ObligationRepository,
    create_async_engine,
    get_async_session_factory,
)
from paymatch.reconciliation import (
    ReconciliationService,
    ReferenceCodec,
    TransactionCandidate,
)


@pytest.fixture
def settings() -> ReconciliationSettings:
    """Return deterministic reconciliation settings."""
    return ReconciliationSettings(
        reference_secret="test-reference-secret",
        tenant_id="test-school",
        reference_prefix="PAYREF",
    )


@pytest.fixture
def codec(settings) -> ReferenceCodec:
    """Return a reference codec bound to the test settings."""
    return ReferenceCodec.from_settings(settings)


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = get_async_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def service(db_session, settings) -> ReconciliationService:
    """Create a reconciliation service on the test session."""
    return ReconciliationService(db_session, settings)


@pytest.fixture
async def item(service):
    """Create a school fees payment item of 22000 minor units."""
    return await service.create_item(
        title="School fees",
        expected_amount=22000,
        created_by="bursar",
        currency="ngn",
    )


@pytest.fixture
async def obligation(db_session, item):
    """Create the std_001 obligation with the fixed reference REF-AAA."""
    return await ObligationRepository(db_session).create(
        item, "std_001", "REF-AAA", student_name="Ada Obi",
    )


@pytest.fixture
def paid_at() -> datetime:
    """Return a fixed payment timestamp."""
    return datetime(2024, 1, 15, 10, 30)


@pytest.fixture
def make_candidate(paid_at):
    """Return a factory for transaction candidates with sensible defaults."""
    def factory(**overrides) -> TransactionCandidate:
        values: Dict[str, Any] = {
            "source": "statement_upload",
            "reference": "REF-AAA",
            "amount": 22000,
            "paid_at": paid_at,
            "payer_name": "std_001",
        }
        values.update(overrides)
        return TransactionCandidate(**values)
    return factory


@pytest.fixture
def paystack_payload() -> Dict[str, Any]:
    """Return a Paystack charge.success webhook payload."""
    return {
        "event": "charge.success",
        "data": {
            "id": 302961,
            "reference": "T123456789",
            "amount": 2200000,
            "paid_at": "2024-01-15T10:30:00.000Z",
            "metadata": {
                "payment_reference": "REF-AAA",
                "student_id": "std_001",
                "payment_item_id": "item-1",
            },
            "customer": {
                "first_name": "Ada",
                "last_name": "Obi",
                "email": "ada@example.com",
            },
        },
    }


@pytest.fixture
def due_date() -> date:
    """Return the default due date used by dated items."""
    return date(2024, 1, 31)
