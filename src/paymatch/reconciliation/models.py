"""Models for payment reconciliation."""

import enum
from datetime import date, datetime
from typing import Optional, Dict, Any, List, Mapping

from pydantic import BaseModel, Field

from ..database.models import (
    PaymentTransaction,
    ReasonCode,
    TransactionStatus,
    utcnow,
)
from .normalization import parse_major_amount, parse_timestamp

DEFAULT_SOURCE = "statement_upload"


def _first(row: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None and str(value).strip() != "":
            return value
    return None


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class TransactionCandidate(BaseModel):
    """An already-parsed payment report awaiting admission.

    Amount and paid_at are optional here so that incomplete rows reach the
    ingestion gate and are rejected there with a typed error.
    """
    source: str = Field(default=DEFAULT_SOURCE, description="statement_upload or a gateway name")
    source_event_id: Optional[str] = Field(None, description="Source-assigned event id, if any")
    reference: str = Field(default="", description="Raw reference text as reported")
    amount: Optional[int] = Field(None, description="Amount in minor units")
    paid_at: Optional[datetime] = Field(None, description="Payment time")
    payer_name: str = Field(default="", description="Payer name as reported")
    student_hint: Optional[str] = Field(None, description="Student identifier supplied by the source")
    item_hint: Optional[str] = Field(None, description="Payment item identifier supplied by the source")
    raw_payload: Optional[Dict[str, Any]] = Field(None, description="Original payload for audit")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TransactionCandidate":
        """Build a candidate from a loosely-typed parsed statement row.

        Recognized keys: ``source``, ``source_event_id``/``event_id``,
        ``reference``/``txn_ref``, ``amount`` (minor units) or
        ``amount_major`` (decimal string), ``paid_at``/``date``,
        ``payer_name``/``name``, ``student_hint``/``student_id``,
        ``item_hint``/``payment_item_id``.

        Args:
            row: Mapping produced by an upstream statement parser.

        Returns:
            TransactionCandidate with unreadable amount or date left as None.
        """
        amount = _first(row, "amount")
        if amount is not None and not isinstance(amount, bool):
            try:
                amount = int(amount)
            except (TypeError, ValueError):
                amount = None
        else:
            amount = None
        if amount is None:
            amount = parse_major_amount(_first(row, "amount_major"))

        return cls(
            source=str(_first(row, "source") or DEFAULT_SOURCE),
            source_event_id=_optional_text(_first(row, "source_event_id", "event_id")),
            reference=str(_first(row, "reference", "txn_ref") or ""),
            amount=amount,
            paid_at=parse_timestamp(_first(row, "paid_at", "date")),
            payer_name=str(_first(row, "payer_name", "name") or ""),
            student_hint=_optional_text(_first(row, "student_hint", "student_id")),
            item_hint=_optional_text(_first(row, "item_hint", "payment_item_id")),
            raw_payload=dict(row),
        )


class AdmitResult(BaseModel):
    """Outcome of admitting one candidate."""
    transaction_id: str = Field(..., description="Persisted transaction id")
    status: TransactionStatus = Field(..., description="Transaction status after admission")
    idempotent: bool = Field(default=False, description="True when the event had already been admitted")
    duplicate_of_id: Optional[str] = Field(None, description="Primary transaction for content duplicates")
    matched_obligation_id: Optional[str] = Field(None)
    confidence: float = Field(default=0.0)
    reasons: List[ReasonCode] = Field(default_factory=list)

    @classmethod
    def from_transaction(cls, transaction: PaymentTransaction, idempotent: bool = False) -> "AdmitResult":
        return cls(
            transaction_id=transaction.id,
            status=TransactionStatus(transaction.status),
            idempotent=idempotent,
            duplicate_of_id=transaction.duplicate_of_id,
            matched_obligation_id=transaction.matched_obligation_id,
            confidence=transaction.confidence or 0.0,
            reasons=transaction.reasons,
        )


class MatchCandidate(BaseModel):
    """A scored pairing between a transaction and one obligation."""
    obligation_id: str = Field(..., description="Candidate obligation id")
    score: float = Field(..., ge=0.0, le=1.0, description="Confidence with two decimals")
    reasons: List[ReasonCode] = Field(default_factory=list)
    due_date: Optional[date] = Field(None, description="Obligation due date, used for ordering")
    payment_reference: str = Field("", description="Obligation reference, the final ordering key")


class OutcomeKind(str, enum.Enum):
    """What the decision policy should do with a scored candidate set."""
    AUTO_APPROVE = "auto_approve"
    REVIEW = "review"
    NO_CANDIDATE = "no_candidate"


class MatchOutcome(BaseModel):
    """Classification of a ranked candidate list."""
    kind: OutcomeKind
    best: Optional[MatchCandidate] = None
    candidates: List[MatchCandidate] = Field(default_factory=list)
    ambiguous: bool = False


class ResolutionAction(str, enum.Enum):
    """Manual actions available on the review queue."""
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_STUDENT_CONFIRMATION = "request_student_confirmation"
    MERGE_DUPLICATES = "merge_duplicates"


class ResolutionOutcome(str, enum.Enum):
    """Per-transaction outcome of a bulk resolution."""
    APPLIED = "applied"
    NOOP = "noop"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    ERROR = "error"


class ResolutionResult(BaseModel):
    """Result of a single manual resolution."""
    transaction_id: str
    action: ResolutionAction
    applied: bool = Field(..., description="False when the action already held")
    status: TransactionStatus
    matched_obligation_id: Optional[str] = None
    reasons: List[ReasonCode] = Field(default_factory=list)

    @classmethod
    def from_transaction(
        cls,
        transaction: PaymentTransaction,
        action: ResolutionAction,
        applied: bool,
    ) -> "ResolutionResult":
        return cls(
            transaction_id=transaction.id,
            action=action,
            applied=applied,
            status=TransactionStatus(transaction.status),
            matched_obligation_id=transaction.matched_obligation_id,
            reasons=transaction.reasons,
        )


class BulkResolutionItem(BaseModel):
    transaction_id: str = Field(..., description="Resolved transaction id, or the requested id when not found")
    exception_id: Optional[str] = Field(None, description="Set when the id was given as an exception id")
    outcome: ResolutionOutcome
    status: Optional[TransactionStatus] = None
    error: Optional[str] = None


class BulkResolutionReport(BaseModel):
    """Per-id outcomes of a bulk resolution."""
    action: ResolutionAction
    actor: str
    items: List[BulkResolutionItem] = Field(default_factory=list)
    truncated: bool = Field(default=False, description="True when ids beyond the batch cap were dropped")

    def count(self, outcome: ResolutionOutcome) -> int:
        return sum(1 for item in self.items if item.outcome == outcome)

    @property
    def applied(self) -> int:
        return self.count(ResolutionOutcome.APPLIED)

    @property
    def noop(self) -> int:
        return self.count(ResolutionOutcome.NOOP)

    @property
    def conflicts(self) -> int:
        return self.count(ResolutionOutcome.CONFLICT)

    @property
    def not_found(self) -> int:
        return self.count(ResolutionOutcome.NOT_FOUND)

    @property
    def errors(self) -> int:
        return self.count(ResolutionOutcome.ERROR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "actor": self.actor,
            "truncated": self.truncated,
            "statistics": {
                "requested": len(self.items),
                "applied": self.applied,
                "noop": self.noop,
                "conflict": self.conflicts,
                "not_found": self.not_found,
                "error": self.errors,
            },
            "items": [item.model_dump(mode="json") for item in self.items],
        }


class ExceptionRow(BaseModel):
    """One review queue entry with its transaction and candidate match."""
    exception_id: str
    exception_status: str
    assignee: Optional[str] = None
    transaction_id: str
    transaction_status: TransactionStatus
    source: str
    reference: str
    amount: int
    payer_name: str
    paid_at: datetime
    match_id: str
    obligation_id: str
    student_id: str
    payment_item_id: str
    payment_reference: str
    expected_amount: int
    confidence: float
    reasons: List[ReasonCode] = Field(default_factory=list, description="Transaction reason codes")
    match_reasons: List[ReasonCode] = Field(default_factory=list)
    created_at: datetime


class ReconciliationSummary(BaseModel):
    """Transaction counts by status, computed on read."""
    total: int = 0
    ingested: int = 0
    approved: int = 0
    needs_review: int = 0
    unmatched: int = 0
    duplicate: int = 0
    rejected: int = 0
    needs_student_confirmation: int = 0
    generated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_counts(cls, counts: Mapping[str, int]) -> "ReconciliationSummary":
        values = {status.value: int(counts.get(status.value, 0)) for status in TransactionStatus}
        return cls(total=sum(int(c) for c in counts.values()), **values)

    @property
    def open_items(self) -> int:
        return self.needs_review + self.unmatched + self.needs_student_confirmation

    def to_dict(self) -> Dict[str, Any]:
        """Return the summary as a plain dictionary."""
        return {
            "total": self.total,
            "ingested": self.ingested,
            "approved": self.approved,
            "needs_review": self.needs_review,
            "unmatched": self.unmatched,
            "duplicate": self.duplicate,
            "rejected": self.rejected,
            "needs_student_confirmation": self.needs_student_confirmation,
            "approval_rate": (
                f"{(self.approved / self.total * 100):.2f}%"
                if self.total > 0 else "N/A"
            ),
            "generated_at": self.generated_at.isoformat(),
        }
