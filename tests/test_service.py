"""Tests for the reconciliation service facade."""

import csv
import io
import json
import pytest
from datetime import datetime

from paymatch.database import EventAction, ObligationRepository, TransactionStatus
from paymatch.exceptions import NotFoundError
from paymatch.reconciliation import ReconciliationSummary, ResolutionAction


class TestObligations:
    """Tests for item and obligation setup."""

    async def test_create_item_rejects_non_positive_amount(self, service):
        """Test items must expect a positive amount."""
        with pytest.raises(ValueError):
            await service.create_item("Free lunch", 0, created_by="bursar")

    async def test_ensure_obligation_generates_reference(self, service, item, codec):
        """Test a new obligation gets the first generated reference."""
        obligation = await service.ensure_obligation(item.id, "std_002", student_name="Bola Ade")

        assert obligation.payment_reference == codec.generate(item.id, "std_002")
        assert obligation.expected_amount == 22000
        assert obligation.amount_paid_total == 0
        assert obligation.student_name == "Bola Ade"

    async def test_ensure_obligation_is_idempotent(self, service, item):
        """Test asking twice returns the same obligation."""
        first = await service.ensure_obligation(item.id, "std_002")
        second = await service.ensure_obligation(item.id, "std_002")

        assert first.id == second.id

    async def test_taken_reference_moves_to_next_attempt(self, service, db_session, item, codec):
        """Test a reference already used elsewhere falls through to the next attempt."""
        other_item = await service.create_item("Bus fare", 5000, created_by="bursar")
        await ObligationRepository(db_session).create(
            other_item, "std_x", codec.generate(item.id, "std_002"),
        )

        obligation = await service.ensure_obligation(item.id, "std_002")

        assert obligation.payment_reference == codec.generate(item.id, "std_002", 1)

    async def test_ensure_obligation_unknown_item(self, service):
        """Test obligations need an existing item."""
        with pytest.raises(NotFoundError):
            await service.ensure_obligation("no-such-item", "std_002")

    async def test_assign_item(self, service, item):
        """Test assigning an item to several students."""
        obligations = await service.assign_item(item.id, {"std_002": "Bola Ade", "std_003": None})

        assert [o.student_id for o in obligations] == ["std_002", "std_003"]
        assert len({o.payment_reference for o in obligations}) == 2


class TestRematch:
    """Tests for re-running matching on unmatched payments."""

    async def test_payment_before_obligation(self, service, item, codec, make_candidate):
        """Test a payment that arrives before its obligation is approved on rematch."""
        reference = codec.generate(item.id, "std_002")
        early = await service.admit(make_candidate(reference=reference, payer_name="Bola Ade"))
        assert early.status == TransactionStatus.UNMATCHED

        obligation = await service.ensure_obligation(item.id, "std_002")
        outcomes = await service.rematch_unmatched()

        assert outcomes == {"approved": 1}
        transaction = await service.transactions.get_by_id(early.transaction_id)
        assert transaction.status == TransactionStatus.APPROVED.value
        assert transaction.matched_obligation_id == obligation.id
        assert obligation.amount_paid_total == 22000

    async def test_nothing_to_rematch(self, service):
        """Test rematch with no unmatched payments."""
        assert await service.rematch_unmatched() == {}


class TestReadModels:
    """Tests for summary, history and reports."""

    @pytest.fixture
    async def mixed(self, service, item, obligation, make_candidate):
        approved = await service.admit(make_candidate())
        review = await service.admit(make_candidate(reference="UNKNOWN", amount=1000, item_hint=item.id))
        unmatched = await service.admit(make_candidate(reference="ZZZ", amount=999, payer_name="Nobody Here"))
        duplicate = await service.admit(make_candidate())
        return approved, review, unmatched, duplicate

    async def test_summary_counts(self, service, mixed):
        """Test the summary is an aggregate over transaction status."""
        summary = await service.summary()

        assert summary.total == 4
        assert summary.approved == 1
        assert summary.needs_review == 1
        assert summary.unmatched == 1
        assert summary.duplicate == 1
        assert summary.ingested == 0
        assert summary.open_items == 2
        assert summary.to_dict()["approval_rate"] == "25.00%"

    async def test_summary_follows_resolution(self, service, mixed):
        """Test resolutions are reflected without separate bookkeeping."""
        _, review, _, _ = mixed
        await service.resolve(review.transaction_id, ResolutionAction.REQUEST_STUDENT_CONFIRMATION, "bursar")

        summary = await service.summary()

        assert summary.needs_review == 0
        assert summary.needs_student_confirmation == 1

    async def test_empty_summary(self, service):
        """Test an empty database summarizes to zeros."""
        summary = await service.summary()

        assert summary.total == 0
        assert summary.to_dict()["approval_rate"] == "N/A"

    async def test_history(self, service, mixed):
        """Test the audit trail of a reviewed transaction."""
        _, review, _, _ = mixed
        await service.resolve(review.transaction_id, ResolutionAction.REJECT, "bursar")

        events = await service.history(review.transaction_id)

        assert {e.action for e in events} == {
            EventAction.INGEST.value,
            EventAction.ROUTE_TO_REVIEW.value,
            EventAction.REJECT.value,
        }
        reject = next(e for e in events if e.action == EventAction.REJECT.value)
        assert reject.actor == "bursar"
        assert reject.previous_status == TransactionStatus.NEEDS_REVIEW.value
        assert reject.new_status == TransactionStatus.REJECTED.value

    async def test_json_report(self, service, mixed):
        """Test the JSON report combines summary and queue rows."""
        report = json.loads(service.generate_report(
            summary=await service.summary(),
            exceptions=await service.list_exceptions(),
        ))

        assert report["summary"]["total"] == 4
        assert len(report["exceptions"]) == 1
        assert report["exceptions"][0]["student_id"] == "std_001"

    async def test_csv_report(self, service, mixed):
        """Test the CSV report lists queue rows."""
        output = service.generate_report(exceptions=await service.list_exceptions(), format="csv")

        rows = list(csv.DictReader(io.StringIO(output)))
        assert len(rows) == 1
        assert rows[0]["reasons"] == "item_hint_match;payer_hint_match"
        assert rows[0]["confidence"] == "0.40"

    async def test_text_reports(self, service, mixed):
        """Test the text formats render the summary."""
        summary = await service.summary()
        rows = await service.list_exceptions()

        text = service.generate_report(summary=summary, exceptions=rows, format="text")
        detailed = service.generate_report(summary=summary, exceptions=rows, format="detailed_text")

        assert "RECONCILIATION SUMMARY" in text
        assert "Needs Review: 1" in text
        assert "REVIEW QUEUE" in detailed
        assert "REF-AAA" in detailed

    async def test_unsupported_format(self, service):
        """Test unknown formats are rejected."""
        with pytest.raises(ValueError):
            service.generate_report(summary=ReconciliationSummary(), format="xml")


class TestSummaryModel:
    """Tests for the summary read model."""

    def test_from_counts(self):
        """Test grouped counts map onto status fields and sum into the total."""
        summary = ReconciliationSummary.from_counts({"approved": 3, "rejected": 1})

        assert summary.total == 4
        assert summary.approved == 3
        assert summary.rejected == 1
        assert summary.unmatched == 0
        assert isinstance(summary.generated_at, datetime)
