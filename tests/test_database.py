"""Tests for database models, constraints and session helpers."""

import pytest
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError

from paymatch.database import (
    DatabaseManager,
    EventRepository,
    MatchDecision,
    MatchRepository,
    ObligationRepository,
    ObligationStatus,
    PaymentItem,
    PaymentItemRepository,
    PaymentObligation,
    PaymentTransaction,
    ReasonCode,
    TransactionRepository,
    close_db,
    get_async_session_factory,
    get_database_url,
    get_db_context,
    init_db,
    normalize_reason_codes,
)
from paymatch.exceptions import AuditImmutabilityError, InvalidReasonCodeError


async def create_transaction(session, **overrides) -> PaymentTransaction:
    values = {
        "source": "statement_upload",
        "reference": "REF-AAA",
        "normalized_reference": "ref-aaa",
        "amount": 22000,
        "payer_name": "std_001",
        "normalized_payer_name": "std_001",
        "paid_at": datetime(2024, 1, 15, 10, 30),
        "paid_date": date(2024, 1, 15),
        "checksum": "a" * 64,
        "content_key": "a" * 64,
    }
    values.update(overrides)
    return await TransactionRepository(session).create(**values)


class TestReasonCodes:
    """Tests for the closed reason vocabulary."""

    def test_normalize_reason_codes(self):
        """Test codes are validated, lower-cased and de-duplicated in order."""
        codes = normalize_reason_codes(["AMOUNT_MATCH", ReasonCode.PAYER_HINT_MATCH, " amount_match "])

        assert codes == ["amount_match", "payer_hint_match"]
        assert normalize_reason_codes(None) == []

    def test_unknown_code_rejected(self):
        """Test codes outside the vocabulary raise."""
        with pytest.raises(InvalidReasonCodeError) as exc_info:
            normalize_reason_codes(["exact_reference", "close_enough"])

        assert exc_info.value.value == "close_enough"
        assert exc_info.value.code == "INVALID_REASON_CODE"

    def test_reasons_property_validates(self):
        """Test assigning reasons on a model validates them."""
        transaction = PaymentTransaction()
        transaction.reasons = [ReasonCode.EXACT_REFERENCE]

        assert transaction.reasons == ["exact_reference"]
        assert transaction.reasons_json == '["exact_reference"]'
        with pytest.raises(InvalidReasonCodeError):
            transaction.reasons = ["bogus"]


class TestObligationModel:
    """Tests for obligation balance helpers."""

    @pytest.mark.parametrize("paid,status", [
        (0, ObligationStatus.UNPAID.value),
        (100, ObligationStatus.PARTIALLY_PAID.value),
        (21999, ObligationStatus.PAID.value),
        (30000, ObligationStatus.PAID.value),
    ])
    def test_compute_status(self, paid, status):
        """Test status derives from the paid total within tolerance."""
        obligation = PaymentObligation(expected_amount=22000, amount_paid_total=paid)

        assert obligation.compute_status(tolerance=1) == status

    def test_outstanding_never_negative(self):
        """Test overpaid obligations have nothing outstanding."""
        assert PaymentObligation(expected_amount=22000, amount_paid_total=30000).outstanding_amount == 0
        assert PaymentObligation(expected_amount=22000, amount_paid_total=2000).outstanding_amount == 20000

    async def test_credit(self, db_session, obligation):
        """Test crediting updates the running total and status."""
        await ObligationRepository(db_session).credit(obligation, 10000, tolerance=1)

        assert obligation.amount_paid_total == 10000
        assert obligation.status == ObligationStatus.PARTIALLY_PAID.value

    async def test_credits_from_two_sessions_both_land(self, db_engine):
        """Test a session holding a stale total still adds to the committed one."""
        factory = get_async_session_factory(db_engine)
        async with factory() as setup:
            item = await PaymentItemRepository(setup).create(
                title="School fees", expected_amount=22000, created_by="bursar",
            )
            obligation_id = (await ObligationRepository(setup).create(item, "std_001", "REF-AAA")).id
            await setup.commit()

        async with factory() as first, factory() as second:
            stale = await ObligationRepository(second).get_by_id(obligation_id)
            await second.commit()

            current = await ObligationRepository(first).get_by_id(obligation_id)
            await ObligationRepository(first).credit(current, 12000, tolerance=1)
            await first.commit()

            await ObligationRepository(second).credit(stale, 10000, tolerance=1)
            await second.commit()

            assert stale.amount_paid_total == 22000
            assert stale.status == ObligationStatus.PAID.value

        async with factory() as check:
            stored = await ObligationRepository(check).get_by_id(obligation_id)
            assert stored.amount_paid_total == 22000

    async def test_locked_read_refreshes_session_copy(self, db_engine):
        """Test a for-update read replaces a stale total already in the session."""
        factory = get_async_session_factory(db_engine)
        async with factory() as setup:
            item = await PaymentItemRepository(setup).create(
                title="School fees", expected_amount=22000, created_by="bursar",
            )
            obligation_id = (await ObligationRepository(setup).create(item, "std_001", "REF-AAA")).id
            await setup.commit()

        async with factory() as first, factory() as second:
            stale = await ObligationRepository(second).get_by_id(obligation_id)
            await second.commit()

            current = await ObligationRepository(first).get_by_id(obligation_id)
            await ObligationRepository(first).credit(current, 15000, tolerance=1)
            await first.commit()

            locked = await ObligationRepository(second).get_by_id(obligation_id, for_update=True)

            assert locked is stale
            assert locked.amount_paid_total == 15000

    def test_item_availability(self):
        """Test the availability window."""
        item = PaymentItem(
            available_from=datetime(2024, 1, 1),
            available_until=datetime(2024, 1, 31),
        )

        assert item.is_available(datetime(2024, 1, 15))
        assert not item.is_available(datetime(2024, 2, 1))
        assert not item.is_available(datetime(2023, 12, 31))


class TestConstraints:
    """Tests for storage-level uniqueness."""

    async def test_one_obligation_per_item_and_student(self, db_session, item, obligation):
        """Test a student has at most one obligation per item."""
        with pytest.raises(IntegrityError):
            async with db_session.begin_nested():
                await ObligationRepository(db_session).create(item, "std_001", "REF-OTHER")

    async def test_reference_is_unique(self, db_session, item, obligation):
        """Test payment references are globally unique."""
        with pytest.raises(IntegrityError):
            async with db_session.begin_nested():
                await ObligationRepository(db_session).create(item, "std_002", "REF-AAA")

    async def test_source_event_is_unique(self, db_session):
        """Test one transaction per (source, source_event_id)."""
        await create_transaction(db_session, source_event_id="evt-1")

        with pytest.raises(IntegrityError):
            async with db_session.begin_nested():
                await create_transaction(db_session, source_event_id="evt-1", content_key="b" * 64)

    async def test_duplicates_share_checksum_not_content_key(self, db_session):
        """Test many rows may share a checksum while only one holds the content key."""
        primary = await create_transaction(db_session)
        await create_transaction(db_session, content_key=None, duplicate_of_id=primary.id)
        await create_transaction(db_session, content_key=None, duplicate_of_id=primary.id)

        with pytest.raises(IntegrityError):
            async with db_session.begin_nested():
                await create_transaction(db_session)

        assert (await TransactionRepository(db_session).get_primary_by_checksum("a" * 64)).id == primary.id

    async def test_one_approved_match_per_transaction(self, db_session, item, obligation):
        """Test a transaction can be approved onto only one obligation."""
        other = await ObligationRepository(db_session).create(item, "std_002", "REF-BBB")
        transaction = await create_transaction(db_session)
        matches = MatchRepository(db_session)
        await matches.create(transaction.id, obligation.id, 1.0, [], decision=MatchDecision.APPROVED.value)

        with pytest.raises(IntegrityError):
            async with db_session.begin_nested():
                await matches.create(transaction.id, other.id, 0.5, [], decision=MatchDecision.APPROVED.value)

        pending = await matches.create(transaction.id, other.id, 0.5, [])
        assert pending.decision == MatchDecision.PENDING.value


class TestAuditEvents:
    """Tests for append-only audit events."""

    async def test_events_cannot_be_updated(self, db_session):
        """Test modifying a stored event is refused."""
        event = await EventRepository(db_session).record(actor="system", action="ingest", details={"a": 1})
        event.actor = "mallory"

        with pytest.raises(AuditImmutabilityError):
            await db_session.flush()

    async def test_events_cannot_be_deleted(self, db_session):
        """Test deleting a stored event is refused."""
        event = await EventRepository(db_session).record(actor="system", action="ingest")
        await db_session.delete(event)

        with pytest.raises(AuditImmutabilityError):
            await db_session.flush()

    async def test_event_to_dict(self, db_session):
        """Test events serialize their details."""
        event = await EventRepository(db_session).record(
            actor="bursar", action="reject", previous_status="needs_review", new_status="rejected",
            details={"note": "wrong student"},
        )

        data = event.to_dict()
        assert data["actor"] == "bursar"
        assert data["details"] == {"note": "wrong student"}
        assert data["created_at"] is not None


class TestSessionHelpers:
    """Tests for URL handling and session lifecycles."""

    @pytest.mark.parametrize("url,expected", [
        ("postgres://u:p@db/pay", "postgresql+asyncpg://u:p@db/pay"),
        ("postgresql://u:p@db/pay", "postgresql+asyncpg://u:p@db/pay"),
        ("sqlite+aiosqlite:///tmp.db", "sqlite+aiosqlite:///tmp.db"),
    ])
    def test_database_url_rewrite(self, monkeypatch, url, expected):
        """Test sync driver URLs are rewritten to async ones."""
        monkeypatch.setenv("DATABASE_URL", url)

        assert get_database_url() == expected

    def test_database_url_default(self, monkeypatch):
        """Test a local SQLite file is the default."""
        monkeypatch.delenv("DATABASE_URL", raising=False)

        assert get_database_url().startswith("sqlite+aiosqlite:///")

    async def test_db_context_commits(self):
        """Test the global unit-of-work context commits on success."""
        await init_db("sqlite+aiosqlite:///:memory:")
        try:
            async with get_db_context() as db:
                item = await PaymentItemRepository(db).create(
                    title="School fees", expected_amount=22000, created_by="bursar",
                )
                item_id = item.id

            async with get_db_context() as db:
                assert await PaymentItemRepository(db).get_by_id(item_id) is not None
        finally:
            await close_db()

        with pytest.raises(RuntimeError):
            get_async_session_factory()

    async def test_db_context_rolls_back(self):
        """Test the unit-of-work context rolls back on error."""
        await init_db("sqlite+aiosqlite:///:memory:")
        try:
            with pytest.raises(RuntimeError):
                async with get_db_context() as db:
                    await PaymentItemRepository(db).create(
                        title="School fees", expected_amount=22000, created_by="bursar",
                    )
                    raise RuntimeError("boom")

            async with get_db_context() as db:
                assert await PaymentItemRepository(db).list_by_owner("bursar") == []
        finally:
            await close_db()

    async def test_database_manager(self):
        """Test the explicit lifecycle manager."""
        manager = DatabaseManager(database_url="sqlite+aiosqlite:///:memory:")
        await manager.initialize()
        try:
            async with manager.session() as session:
                item = await PaymentItemRepository(session).create(
                    title="Bus fare", expected_amount=5000, created_by="bursar",
                )
            async with manager.session() as session:
                found = await PaymentItemRepository(session).get_by_id(item.id)
                assert found.title == "Bus fare"
        finally:
            await manager.shutdown()
