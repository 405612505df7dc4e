"""Ingestion gate: validation, de-duplication and exactly-once admission."""

import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import ReconciliationSettings
from ..database import (
    EventAction,
    EventRepository,
    PaymentTransaction,
    ReasonCode,
    TransactionRepository,
    TransactionStatus,
)
from ..exceptions import MalformedCandidateError, TransientIngestionError
from .matcher import MatchingEngine
from .models import AdmitResult, TransactionCandidate
from .normalization import (
    build_checksum,
    normalize_payer_name,
    normalize_reference,
    normalize_source,
    parse_timestamp,
)
from .policy import DecisionPolicy, SYSTEM_ACTOR
from .references import ReferenceCodec

logger = logging.getLogger(__name__)

MAX_EVENT_ID_LENGTH = 160
MAX_TEXT_LENGTH = 255
# One retry after a uniqueness conflict
MAX_INSERT_ATTEMPTS = 2


class IngestionGate:
    """Admits transaction candidates exactly once.

    Idempotency lives in two storage constraints: (source, source_event_id)
    and the primary checksum key. A losing concurrent insert hits one of them
    inside a SAVEPOINT, re-reads, and turns into an idempotent or duplicate
    result.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: ReconciliationSettings,
        codec: ReferenceCodec,
    ):
        """Initialize the gate.

        Args:
            session: Async database session; the caller commits.
            settings: Reconciliation settings.
            codec: Reference codec shared with matching.
        """
        self.session = session
        self.settings = settings
        self.transactions = TransactionRepository(session)
        self.events = EventRepository(session)
        self.engine = MatchingEngine(session, settings, codec)
        self.policy = DecisionPolicy(session, settings, codec)

    @staticmethod
    def validate(candidate: TransactionCandidate) -> None:
        """Reject candidates that cannot be admitted.

        Raises:
            MalformedCandidateError: If source, amount or paid_at is missing
                or the amount is not positive.
        """
        if not normalize_source(candidate.source):
            raise MalformedCandidateError("source", "source is required")
        if candidate.amount is None:
            raise MalformedCandidateError("amount", "amount is required")
        if candidate.amount <= 0:
            raise MalformedCandidateError("amount", f"amount must be positive, got {candidate.amount}")
        if candidate.paid_at is None:
            raise MalformedCandidateError("paid_at", "payment date is required")

    async def _find_existing(
        self,
        source: str,
        source_event_id: Optional[str],
        checksum: str,
    ) -> Tuple[Optional[PaymentTransaction], Optional[PaymentTransaction]]:
        """Return (same_event, content_primary); at most one is looked up when the first hits."""
        if source_event_id:
            same_event = await self.transactions.get_by_source_event(source, source_event_id)
            if same_event is not None:
                return same_event, None
        return None, await self.transactions.get_primary_by_checksum(checksum)

    async def admit(self, candidate: TransactionCandidate) -> AdmitResult:
        """Admit one candidate and decide it in the current unit of work.

        Args:
            candidate: Parsed payment report.

        Returns:
            AdmitResult with the persisted transaction's outcome.

        Raises:
            MalformedCandidateError: Before anything is persisted.
            TransientIngestionError: If a uniqueness conflict survives the retry.
        """
        self.validate(candidate)

        source = normalize_source(candidate.source)
        source_event_id = (candidate.source_event_id or "").strip()[:MAX_EVENT_ID_LENGTH] or None
        paid_at = parse_timestamp(candidate.paid_at)
        checksum = build_checksum(
            candidate.reference, candidate.amount, paid_at, candidate.payer_name, source,
        )

        for attempt in range(MAX_INSERT_ATTEMPTS):
            same_event, primary = await self._find_existing(source, source_event_id, checksum)
            if same_event is not None:
                logger.info(
                    f"Event {source}/{source_event_id} already admitted as transaction {same_event.id}"
                )
                return AdmitResult.from_transaction(same_event, idempotent=True)

            try:
                async with self.session.begin_nested():
                    transaction = await self._insert(candidate, source, source_event_id, paid_at, checksum, primary)
            except IntegrityError as e:
                logger.warning(
                    f"Uniqueness conflict admitting {source}/{source_event_id or checksum[:12]} "
                    f"(attempt {attempt + 1}): {e.orig}"
                )
                continue

            if primary is not None:
                logger.info(f"Transaction {transaction.id} duplicates primary {primary.id}")
                return AdmitResult.from_transaction(transaction)

            candidates = await self.engine.match(transaction)
            await self.policy.decide(transaction, candidates)
            return AdmitResult.from_transaction(transaction)

        raise TransientIngestionError(source, checksum)

    async def _insert(
        self,
        candidate: TransactionCandidate,
        source: str,
        source_event_id: Optional[str],
        paid_at: datetime,
        checksum: str,
        primary: Optional[PaymentTransaction],
    ) -> PaymentTransaction:
        is_duplicate = primary is not None
        status = TransactionStatus.DUPLICATE if is_duplicate else TransactionStatus.INGESTED
        transaction = await self.transactions.create(
            source=source,
            source_event_id=source_event_id,
            reference=candidate.reference.strip()[:120],
            normalized_reference=normalize_reference(candidate.reference),
            amount=candidate.amount,
            payer_name=candidate.payer_name.strip()[:MAX_TEXT_LENGTH],
            normalized_payer_name=normalize_payer_name(candidate.payer_name)[:MAX_TEXT_LENGTH],
            paid_at=paid_at,
            paid_date=paid_at.date(),
            student_hint=candidate.student_hint[:MAX_TEXT_LENGTH] if candidate.student_hint else None,
            item_hint=candidate.item_hint[:36] if candidate.item_hint else None,
            checksum=checksum,
            content_key=None if is_duplicate else checksum,
            duplicate_of_id=primary.id if is_duplicate else None,
            status=status.value,
            confidence=0.0,
            reasons=[ReasonCode.DUPLICATE_TRANSACTION] if is_duplicate else [],
            raw_payload=candidate.raw_payload,
        )
        await self.events.record(
            actor=SYSTEM_ACTOR,
            action=EventAction.INGEST.value,
            transaction_id=transaction.id,
            new_status=transaction.status,
            details={
                "source": source,
                "source_event_id": source_event_id,
                "checksum": checksum,
                "duplicate_of_id": transaction.duplicate_of_id,
            },
        )
        return transaction
