"""Tests for exactly-once admission through the ingestion gate."""

import pytest
from datetime import datetime

from paymatch.database import (
    EventAction,
    EventRepository,
    ExceptionRepository,
    MatchDecision,
    MatchRepository,
    ObligationRepository,
    ObligationStatus,
    ReasonCode,
    TransactionRepository,
    TransactionStatus,
)
from paymatch.exceptions import MalformedCandidateError, TransientIngestionError
from paymatch.reconciliation import TransactionCandidate


class TestValidation:
    """Tests for candidate validation."""

    @pytest.mark.parametrize("overrides,field", [
        ({"amount": None}, "amount"),
        ({"amount": 0}, "amount"),
        ({"amount": -500}, "amount"),
        ({"paid_at": None}, "paid_at"),
        ({"source": "  "}, "source"),
    ])
    async def test_malformed_candidate_is_not_persisted(self, service, obligation, make_candidate, overrides, field):
        """Test malformed candidates raise before anything is written."""
        with pytest.raises(MalformedCandidateError) as exc_info:
            await service.admit(make_candidate(**overrides))

        assert exc_info.value.field == field
        assert exc_info.value.code == "MALFORMED_CANDIDATE"
        assert await service.transactions.count_by_status() == {}
        assert obligation.amount_paid_total == 0

    def test_from_row_aliases(self):
        """Test statement rows map loosely-named keys onto a candidate."""
        candidate = TransactionCandidate.from_row({
            "txn_ref": "REF-AAA",
            "amount_major": "220.00",
            "date": "15/01/2024",
            "name": "Ada Obi",
            "student_id": "std_001",
            "event_id": "row-7",
        })

        assert candidate.source == "statement_upload"
        assert candidate.reference == "REF-AAA"
        assert candidate.amount == 22000
        assert candidate.paid_at == datetime(2024, 1, 15)
        assert candidate.payer_name == "Ada Obi"
        assert candidate.student_hint == "std_001"
        assert candidate.source_event_id == "row-7"
        assert candidate.raw_payload["txn_ref"] == "REF-AAA"

    def test_from_row_leaves_unreadable_fields_empty(self):
        """Test unreadable amounts and dates stay None for the gate to reject."""
        candidate = TransactionCandidate.from_row({"amount": "lots", "paid_at": "soon"})

        assert candidate.amount is None
        assert candidate.paid_at is None


class TestAdmission:
    """Tests for admission outcomes."""

    async def test_exact_reference_is_auto_approved(self, service, db_session, obligation, make_candidate):
        """Test a payment quoting the obligation reference is approved and credited."""
        result = await service.admit(make_candidate())

        assert result.status == TransactionStatus.APPROVED
        assert result.confidence == 1.0
        assert result.reasons == [ReasonCode.EXACT_REFERENCE]
        assert result.matched_obligation_id == obligation.id
        assert obligation.amount_paid_total == 22000
        assert obligation.status == ObligationStatus.PAID.value

        matches = await MatchRepository(db_session).list_by_transaction(result.transaction_id)
        assert len(matches) == 1
        assert matches[0].decision == MatchDecision.APPROVED.value
        assert matches[0].decided_by == "system"

    async def test_weak_evidence_goes_to_review(self, service, db_session, item, obligation, make_candidate):
        """Test item and payer hints alone route the payment to review."""
        result = await service.admit(make_candidate(
            reference="UNKNOWN", amount=1000, item_hint=item.id,
        ))

        assert result.status == TransactionStatus.NEEDS_REVIEW
        assert result.confidence == 0.40
        assert result.reasons == [ReasonCode.ITEM_HINT_MATCH, ReasonCode.PAYER_HINT_MATCH]
        assert result.matched_obligation_id is None
        assert obligation.amount_paid_total == 0

        exception = await ExceptionRepository(db_session).get_open_by_transaction(result.transaction_id)
        assert exception is not None
        match = await MatchRepository(db_session).get_by_id(exception.match_id)
        assert match.obligation_id == obligation.id
        assert match.decision == MatchDecision.PENDING.value

    async def test_weak_evidence_ignores_classmate_with_similar_id(
        self, service, db_session, item, obligation, make_candidate
    ):
        """Test a payer id names one student even when a classmate's id is one digit off."""
        classmate = await ObligationRepository(db_session).create(
            item, "std_002", "REF-000", student_name="Bola Ade",
        )

        result = await service.admit(make_candidate(
            reference="UNKNOWN", amount=1000, item_hint=item.id,
        ))

        assert result.status == TransactionStatus.NEEDS_REVIEW
        assert result.reasons == [ReasonCode.ITEM_HINT_MATCH, ReasonCode.PAYER_HINT_MATCH]
        candidates = await MatchRepository(db_session).list_by_transaction(result.transaction_id)
        assert [m.obligation_id for m in candidates] == [obligation.id]
        assert classmate.id not in {m.obligation_id for m in candidates}

        rows = await service.list_exceptions(student_id="std_001")
        assert [row.transaction_id for row in rows] == [result.transaction_id]
        assert rows[0].student_id == "std_001"

    async def test_no_candidate_is_unmatched(self, service, obligation, make_candidate):
        """Test a payment with no plausible obligation is unmatched."""
        result = await service.admit(make_candidate(
            reference="ZZZ", amount=999, payer_name="Nobody Here",
        ))

        assert result.status == TransactionStatus.UNMATCHED
        assert result.confidence == 0.0
        assert result.reasons == [ReasonCode.NO_CANDIDATE]

    async def test_reference_inside_narration(self, service, obligation, make_candidate):
        """Test a stored reference embedded in bank narration is found and scored partial."""
        result = await service.admit(make_candidate(
            reference="TRF/REF-AAA/SCHOOL", amount=5000, payer_name="Parent",
        ))

        assert result.status == TransactionStatus.NEEDS_REVIEW
        assert ReasonCode.REFERENCE_PARTIAL_MATCH in result.reasons

    async def test_retry_reference_is_auto_approved(self, service, item, codec, make_candidate):
        """Test a gateway echoing a later reference attempt still auto-approves."""
        obligation = await service.ensure_obligation(item.id, "std_002")

        result = await service.admit(make_candidate(
            reference=codec.generate(item.id, "std_002", 3).lower(),
            payer_name="Someone Else",
        ))

        assert result.status == TransactionStatus.APPROVED
        assert result.matched_obligation_id == obligation.id

    async def test_overpayment_routes_to_review(self, service, obligation, make_candidate):
        """Test an exact reference that would overpay is held for review."""
        await service.admit(make_candidate())

        second = await service.admit(make_candidate(paid_at=datetime(2024, 2, 1, 9, 0)))

        assert second.status == TransactionStatus.NEEDS_REVIEW
        assert ReasonCode.OVERPAYMENT in second.reasons
        assert ReasonCode.EXACT_REFERENCE in second.reasons
        assert obligation.amount_paid_total == 22000

    async def test_instalments_accumulate(self, service, obligation, make_candidate):
        """Test partial payments move the obligation from partially paid to paid."""
        await service.admit(make_candidate(amount=10000))
        assert obligation.status == ObligationStatus.PARTIALLY_PAID.value

        await service.admit(make_candidate(amount=12000, paid_at=datetime(2024, 2, 1, 9, 0)))

        assert obligation.amount_paid_total == 22000
        assert obligation.status == ObligationStatus.PAID.value

    async def test_ingest_event_recorded(self, service, db_session, obligation, make_candidate):
        """Test admission and auto-approval each write one audit event."""
        result = await service.admit(make_candidate(source_event_id="evt-1"))

        events = await EventRepository(db_session).list_by_transaction(result.transaction_id)
        actions = {event.action for event in events}

        assert len(events) == 2
        assert actions == {EventAction.INGEST.value, EventAction.AUTO_APPROVE.value}
        ingest = next(e for e in events if e.action == EventAction.INGEST.value)
        assert ingest.actor == "system"
        assert ingest.new_status == TransactionStatus.INGESTED.value
        assert ingest.details["source_event_id"] == "evt-1"


class TestIdempotency:
    """Tests for event idempotency and content de-duplication."""

    async def test_same_event_is_idempotent(self, service, obligation, make_candidate):
        """Test re-delivering an event returns the original transaction."""
        first = await service.admit(make_candidate(source_event_id="evt-1"))
        again = await service.admit(make_candidate(source_event_id="evt-1", amount=5))

        assert again.idempotent
        assert again.transaction_id == first.transaction_id
        assert again.status == TransactionStatus.APPROVED
        assert await service.transactions.count_by_status() == {"approved": 1}
        assert obligation.amount_paid_total == 22000

    async def test_same_event_id_on_other_source_is_distinct(self, service, obligation, make_candidate):
        """Test event ids are scoped to their source."""
        first = await service.admit(make_candidate(source_event_id="evt-1"))
        other = await service.admit(make_candidate(source="bank_feed", source_event_id="evt-1"))

        assert other.transaction_id != first.transaction_id
        assert not other.idempotent

    async def test_content_duplicate(self, service, db_session, obligation, make_candidate):
        """Test a re-uploaded statement row becomes a linked duplicate, never credited."""
        first = await service.admit(make_candidate())
        duplicate = await service.admit(make_candidate(reference=" ref-aaa", payer_name="STD_001"))

        assert duplicate.status == TransactionStatus.DUPLICATE
        assert duplicate.duplicate_of_id == first.transaction_id
        assert duplicate.reasons == [ReasonCode.DUPLICATE_TRANSACTION]
        assert obligation.amount_paid_total == 22000

        row = await TransactionRepository(db_session).get_by_id(duplicate.transaction_id)
        assert row.content_key is None
        assert row.checksum == (await TransactionRepository(db_session).get_by_id(first.transaction_id)).checksum
        assert await MatchRepository(db_session).list_by_transaction(duplicate.transaction_id) == []

    async def test_new_event_with_duplicate_content(self, service, obligation, make_candidate):
        """Test a distinct event id carrying identical content is still a duplicate."""
        first = await service.admit(make_candidate(source_event_id="evt-1"))
        second = await service.admit(make_candidate(source_event_id="evt-2"))

        assert not second.idempotent
        assert second.status == TransactionStatus.DUPLICATE
        assert second.duplicate_of_id == first.transaction_id


class TestConcurrentAdmission:
    """Tests for the uniqueness-conflict retry path."""

    async def test_conflicting_event_insert_becomes_idempotent(self, service, obligation, make_candidate, monkeypatch):
        """Test an insert losing the event-id race re-reads and returns the winner."""
        first = await service.admit(make_candidate(source_event_id="evt-1"))
        lookup = service.gate._find_existing
        calls = []

        async def stale_lookup(*args):
            calls.append(args)
            if len(calls) == 1:
                return None, None
            return await lookup(*args)

        monkeypatch.setattr(service.gate, "_find_existing", stale_lookup)

        again = await service.admit(make_candidate(source_event_id="evt-1"))

        assert len(calls) == 2
        assert again.idempotent
        assert again.transaction_id == first.transaction_id
        assert await service.transactions.count_by_status() == {"approved": 1}

    async def test_conflicting_content_insert_becomes_duplicate(self, service, obligation, make_candidate, monkeypatch):
        """Test an insert losing the checksum race is recorded as a duplicate."""
        first = await service.admit(make_candidate())
        lookup = service.gate._find_existing
        calls = []

        async def stale_lookup(*args):
            calls.append(args)
            if len(calls) == 1:
                return None, None
            return await lookup(*args)

        monkeypatch.setattr(service.gate, "_find_existing", stale_lookup)

        second = await service.admit(make_candidate())

        assert second.status == TransactionStatus.DUPLICATE
        assert second.duplicate_of_id == first.transaction_id
        assert obligation.amount_paid_total == 22000

    async def test_persistent_conflict_raises(self, service, obligation, make_candidate, monkeypatch):
        """Test a conflict that survives the retry surfaces as a transient error."""
        await service.admit(make_candidate(source_event_id="evt-1"))

        async def always_stale(*args):
            return None, None

        monkeypatch.setattr(service.gate, "_find_existing", always_stale)

        with pytest.raises(TransientIngestionError) as exc_info:
            await service.admit(make_candidate(source_event_id="evt-1"))

        assert exc_info.value.code == "TRANSIENT_INGESTION_FAILURE"
        assert await service.transactions.count_by_status() == {"approved": 1}
