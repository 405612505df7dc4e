"""SQLAlchemy models for reconciliation persistence."""

import uuid
import json
import enum
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any, List, Iterable

from sqlalchemy import (
    String,
    Integer,
    Float,
    Date,
    DateTime,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..exceptions import AuditImmutabilityError, InvalidReasonCodeError


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the storage convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class ObligationStatus(str, enum.Enum):
    """Lifecycle of a student's payment obligation."""
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class TransactionStatus(str, enum.Enum):
    """Lifecycle of a reported payment transaction."""
    INGESTED = "ingested"
    APPROVED = "approved"
    NEEDS_REVIEW = "needs_review"
    UNMATCHED = "unmatched"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    NEEDS_STUDENT_CONFIRMATION = "needs_student_confirmation"


class MatchDecision(str, enum.Enum):
    """Decision recorded on a transaction/obligation pairing."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExceptionStatus(str, enum.Enum):
    """Status of a human review item."""
    OPEN = "open"
    RESOLVED = "resolved"


class ReasonCode(str, enum.Enum):
    """Closed vocabulary of match and resolution reasons."""
    EXACT_REFERENCE = "exact_reference"
    REFERENCE_PARTIAL_MATCH = "reference_partial_match"
    AMOUNT_MATCH = "amount_match"
    PAYER_HINT_MATCH = "payer_hint_match"
    ITEM_HINT_MATCH = "item_hint_match"
    STUDENT_HINT_MATCH = "student_hint_match"
    DATE_PROXIMITY_MATCH = "date_proximity_match"
    AMBIGUOUS_CANDIDATE = "ambiguous_candidate"
    NO_CANDIDATE = "no_candidate"
    DUPLICATE_TRANSACTION = "duplicate_transaction"
    OVERPAYMENT = "overpayment"
    MANUAL_APPROVED = "manual_approved"
    MANUAL_REJECTED = "manual_rejected"
    NEEDS_STUDENT_CONFIRMATION = "needs_student_confirmation"


class EventAction(str, enum.Enum):
    """Actions recorded in the reconciliation audit trail."""
    INGEST = "ingest"
    AUTO_APPROVE = "auto_approve"
    ROUTE_TO_REVIEW = "route_to_review"
    MARK_UNMATCHED = "mark_unmatched"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_STUDENT_CONFIRMATION = "request_student_confirmation"
    MERGE = "merge"
    ASSIGN = "assign"


def normalize_reason_codes(values: Optional[Iterable[Any]]) -> List[str]:
    """Validate reason codes against ReasonCode, dropping repeats but keeping order.

    Raises:
        InvalidReasonCodeError: If any value is not a known reason code.
    """
    codes: List[str] = []
    for value in values or []:
        raw = value.value if isinstance(value, ReasonCode) else str(value).strip().lower()
        try:
            code = ReasonCode(raw).value
        except ValueError:
            raise InvalidReasonCodeError(raw) from None
        if code not in codes:
            codes.append(code)
    return codes


class _JsonReasonsMixin:
    """Reason codes stored as a JSON array in ``reasons_json``."""

    @property
    def reasons(self) -> List[str]:
        """Get reason codes as a list."""
        if self.reasons_json:
            return json.loads(self.reasons_json)
        return []

    @reasons.setter
    def reasons(self, value: Optional[Iterable[Any]]) -> None:
        """Set reason codes, validating them against the closed vocabulary."""
        self.reasons_json = json.dumps(normalize_reason_codes(value))


class PaymentItem(Base):
    """A billable item students are expected to pay for."""
    __tablename__ = "payment_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expected_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Availability window
    available_from: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    available_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_payment_items_created_by", "created_by"),
    )

    def is_available(self, at: Optional[datetime] = None) -> bool:
        """Check whether the item is open for payment at the given time."""
        moment = at or utcnow()
        if self.available_from and moment < self.available_from:
            return False
        if self.available_until and moment > self.available_until:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert payment item to dictionary representation."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "expected_amount": self.expected_amount,
            "currency": self.currency,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "available_from": self.available_from.isoformat() if self.available_from else None,
            "available_until": self.available_until.isoformat() if self.available_until else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class PaymentObligation(Base):
    """One student's expected payment for one payment item."""
    __tablename__ = "payment_obligations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    payment_item_id: Mapped[str] = mapped_column(String(36), ForeignKey("payment_items.id"), nullable=False)
    student_id: Mapped[str] = mapped_column(String(255), nullable=False)
    student_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    expected_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    payment_reference: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    amount_paid_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=ObligationStatus.UNPAID.value)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("payment_item_id", "student_id", name="uq_payment_obligations_item_student"),
        Index("ix_payment_obligations_student_id", "student_id"),
        Index("ix_payment_obligations_status", "status"),
    )

    @property
    def outstanding_amount(self) -> int:
        """Amount still owed, never negative."""
        return max(0, self.expected_amount - (self.amount_paid_total or 0))

    def compute_status(self, tolerance: int = 0) -> str:
        """Derive the obligation status from the running paid total."""
        paid = self.amount_paid_total or 0
        if paid >= self.expected_amount - tolerance:
            return ObligationStatus.PAID.value
        if paid > 0:
            return ObligationStatus.PARTIALLY_PAID.value
        return ObligationStatus.UNPAID.value

    def to_dict(self) -> Dict[str, Any]:
        """Convert obligation to dictionary representation."""
        return {
            "id": self.id,
            "payment_item_id": self.payment_item_id,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "expected_amount": self.expected_amount,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "payment_reference": self.payment_reference,
            "amount_paid_total": self.amount_paid_total,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class PaymentTransaction(_JsonReasonsMixin, Base):
    """One externally reported payment event."""
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    source: Mapped[str] = mapped_column(String(40), nullable=False)
    # NULL for legacy statement rows without an event id
    source_event_id: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)

    reference: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    normalized_reference: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    payer_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    normalized_payer_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    paid_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Structural hints supplied by the source
    student_hint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    item_hint: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    checksum: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Equal to checksum on the primary row, NULL on duplicates
    content_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    duplicate_of_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("payment_transactions.id"), nullable=True
    )
    raw_payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(40), nullable=False, default=TransactionStatus.INGESTED.value)
    matched_obligation_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("payment_obligations.id"), nullable=True
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reasons_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "source_event_id", name="uq_payment_transactions_source_event"),
        Index("ix_payment_transactions_status", "status"),
        Index("ix_payment_transactions_created_at", "created_at"),
        Index("ix_payment_transactions_matched_obligation_id", "matched_obligation_id"),
    )

    @property
    def raw_payload(self) -> Optional[Dict[str, Any]]:
        """Get raw source payload as dictionary."""
        if self.raw_payload_json:
            return json.loads(self.raw_payload_json)
        return None

    @raw_payload.setter
    def raw_payload(self, value: Optional[Dict[str, Any]]) -> None:
        """Set raw source payload from dictionary."""
        if value is not None:
            self.raw_payload_json = json.dumps(value, default=str)
        else:
            self.raw_payload_json = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert transaction to dictionary representation."""
        return {
            "id": self.id,
            "source": self.source,
            "source_event_id": self.source_event_id,
            "reference": self.reference,
            "amount": self.amount,
            "payer_name": self.payer_name,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "student_hint": self.student_hint,
            "item_hint": self.item_hint,
            "checksum": self.checksum,
            "duplicate_of_id": self.duplicate_of_id,
            "status": self.status,
            "matched_obligation_id": self.matched_obligation_id,
            "confidence": self.confidence,
            "reasons": self.reasons,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }


class PaymentMatch(_JsonReasonsMixin, Base):
    """A candidate pairing between a transaction and an obligation."""
    __tablename__ = "payment_matches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payment_transactions.id"), nullable=False, index=True
    )
    obligation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payment_obligations.id"), nullable=False, index=True
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reasons_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decision: Mapped[str] = mapped_column(String(20), nullable=False, default=MatchDecision.PENDING.value)
    decided_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("transaction_id", "obligation_id", name="uq_payment_matches_transaction_obligation"),
        # At most one approved match per transaction
        Index(
            "uq_payment_matches_one_approved",
            "transaction_id",
            unique=True,
            sqlite_where=text("decision = 'approved'"),
            postgresql_where=text("decision = 'approved'"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert match to dictionary representation."""
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "obligation_id": self.obligation_id,
            "confidence": self.confidence,
            "reasons": self.reasons,
            "decision": self.decision,
            "decided_by": self.decided_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ReconciliationException(Base):
    """A human review item wrapping a match that needs judgment."""
    __tablename__ = "reconciliation_exceptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    match_id: Mapped[str] = mapped_column(String(36), ForeignKey("payment_matches.id"), nullable=False, unique=True)
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("payment_transactions.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ExceptionStatus.OPEN.value)
    assignee: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_reconciliation_exceptions_status", "status"),
        Index("ix_reconciliation_exceptions_assignee", "assignee"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary representation."""
        return {
            "id": self.id,
            "match_id": self.match_id,
            "transaction_id": self.transaction_id,
            "status": self.status,
            "assignee": self.assignee,
            "resolution": self.resolution,
            "resolved_by": self.resolved_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


class ReconciliationEvent(Base):
    """Append-only audit entry for reconciliation state changes."""
    __tablename__ = "reconciliation_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("payment_transactions.id"), nullable=True, index=True
    )
    match_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("payment_matches.id"), nullable=True)
    exception_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("reconciliation_exceptions.id"), nullable=True
    )
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_reconciliation_events_action", "action"),
        Index("ix_reconciliation_events_created_at", "created_at"),
    )

    @property
    def details(self) -> Optional[Dict[str, Any]]:
        """Get event details as dictionary."""
        if self.details_json:
            return json.loads(self.details_json)
        return None

    @details.setter
    def details(self, value: Optional[Dict[str, Any]]) -> None:
        """Set event details from dictionary."""
        if value is not None:
            self.details_json = json.dumps(value, default=str)
        else:
            self.details_json = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary representation."""
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "match_id": self.match_id,
            "exception_id": self.exception_id,
            "actor": self.actor,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@event.listens_for(ReconciliationEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise AuditImmutabilityError(f"Reconciliation event {target.id} is immutable")


@event.listens_for(ReconciliationEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise AuditImmutabilityError(f"Reconciliation event {target.id} cannot be deleted")
