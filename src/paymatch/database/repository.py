"""Repository layer for reconciliation persistence operations."""

import logging
from datetime import date, datetime
from typing import Optional, Dict, Any, List, Iterable, Tuple

from sqlalchemy import select, update, and_, or_, func, literal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlalchemy.orm.attributes import set_committed_value

from .models import (
    PaymentItem,
    PaymentObligation,
    PaymentTransaction,
    PaymentMatch,
    ReconciliationException,
    ReconciliationEvent,
    ObligationStatus,
    TransactionStatus,
    MatchDecision,
    ExceptionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class PaymentItemRepository:
    """Repository for PaymentItem CRUD operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        title: str,
        expected_amount: int,
        created_by: str,
        currency: str = "NGN",
        description: Optional[str] = None,
        due_date: Optional[date] = None,
        available_from: Optional[datetime] = None,
        available_until: Optional[datetime] = None,
    ) -> PaymentItem:
        """Create a new payment item.

        Args:
            title: Display title.
            expected_amount: Amount due in minor units.
            created_by: Owner of the item.
            currency: Three-letter currency code.
            description: Optional free text.
            due_date: Optional due date.
            available_from: Optional start of the payment window.
            available_until: Optional end of the payment window.

        Returns:
            Created PaymentItem instance.
        """
        item = PaymentItem(
            title=title,
            expected_amount=expected_amount,
            created_by=created_by,
            currency=currency.upper(),
            description=description,
            due_date=due_date,
            available_from=available_from,
            available_until=available_until,
        )
        self.session.add(item)
        await self.session.flush()

        logger.info(f"Created payment item {item.id} ({title}) for {expected_amount} {item.currency}")
        return item

    async def get_by_id(self, item_id: str) -> Optional[PaymentItem]:
        result = await self.session.execute(
            select(PaymentItem).where(PaymentItem.id == item_id)
        )
        return result.scalar_one_or_none()

    async def list_by_owner(self, created_by: str) -> List[PaymentItem]:
        result = await self.session.execute(
            select(PaymentItem)
            .where(PaymentItem.created_by == created_by)
            .order_by(PaymentItem.created_at.desc())
        )
        return list(result.scalars().all())


class ObligationRepository:
    """Repository for PaymentObligation queries and ledger updates."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        item: PaymentItem,
        student_id: str,
        payment_reference: str,
        student_name: Optional[str] = None,
    ) -> PaymentObligation:
        """Create an obligation for a student on a payment item.

        Args:
            item: The billable item.
            student_id: Student identifier.
            payment_reference: Deterministic reference for this obligation.
            student_name: Optional display name used for payer matching.

        Returns:
            Created PaymentObligation instance.
        """
        obligation = PaymentObligation(
            payment_item_id=item.id,
            student_id=student_id,
            student_name=student_name,
            expected_amount=item.expected_amount,
            due_date=item.due_date,
            payment_reference=payment_reference,
            amount_paid_total=0,
            status=ObligationStatus.UNPAID.value,
        )
        self.session.add(obligation)
        await self.session.flush()

        logger.info(
            f"Created obligation {obligation.id} for student {student_id} "
            f"on item {item.id} with reference {payment_reference}"
        )
        return obligation

    async def get_by_id(self, obligation_id: str, for_update: bool = False) -> Optional[PaymentObligation]:
        """Get an obligation by id.

        Args:
            obligation_id: Obligation id.
            for_update: Lock the row and refresh any copy already in the
                session, so balance checks see the committed total.
        """
        query = select(PaymentObligation).where(PaymentObligation.id == obligation_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_item_student(self, item_id: str, student_id: str) -> Optional[PaymentObligation]:
        result = await self.session.execute(
            select(PaymentObligation).where(
                and_(
                    PaymentObligation.payment_item_id == item_id,
                    PaymentObligation.student_id == student_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> Optional[PaymentObligation]:
        """Get an obligation by its stored reference, case-insensitively."""
        result = await self.session.execute(
            select(PaymentObligation).where(
                func.upper(PaymentObligation.payment_reference) == reference.strip().upper()
            )
        )
        return result.scalars().first()

    async def list_by_reference_stem(self, stem: str) -> List[PaymentObligation]:
        """List obligations whose reference starts with the given stem.

        Every attempt of a generated reference shares the same stem, so this is
        the reverse-lookup entry point for gateway-echoed retry references.
        """
        result = await self.session.execute(
            select(PaymentObligation).where(
                func.upper(PaymentObligation.payment_reference).startswith(stem.upper(), autoescape=True)
            )
        )
        return list(result.scalars().all())

    async def list_referenced_in(self, text_value: str) -> List[PaymentObligation]:
        """List obligations whose reference appears inside free text."""
        if not text_value:
            return []
        result = await self.session.execute(
            select(PaymentObligation).where(
                literal(text_value.upper()).contains(func.upper(PaymentObligation.payment_reference))
            )
        )
        return list(result.scalars().all())

    async def list_by_students(self, student_ids: Iterable[str]) -> List[PaymentObligation]:
        """List obligations for any of the given students, case-insensitively."""
        ids = list({s.strip().lower() for s in student_ids if s and s.strip()})
        if not ids:
            return []
        result = await self.session.execute(
            select(PaymentObligation).where(func.lower(PaymentObligation.student_id).in_(ids))
        )
        return list(result.scalars().all())

    async def list_by_item(self, item_id: str) -> List[PaymentObligation]:
        result = await self.session.execute(
            select(PaymentObligation).where(PaymentObligation.payment_item_id == item_id)
        )
        return list(result.scalars().all())

    async def list_open_by_amount(self, amount: int, tolerance: int = 0) -> List[PaymentObligation]:
        """List unpaid or partially paid obligations whose expected or outstanding amount matches."""
        low, high = amount - tolerance, amount + tolerance
        outstanding = PaymentObligation.expected_amount - PaymentObligation.amount_paid_total
        result = await self.session.execute(
            select(PaymentObligation).where(
                and_(
                    PaymentObligation.status != ObligationStatus.PAID.value,
                    or_(
                        PaymentObligation.expected_amount.between(low, high),
                        outstanding.between(low, high),
                    ),
                )
            )
        )
        return list(result.scalars().all())

    async def list_open_student_identities(self) -> List[Tuple[str, Optional[str]]]:
        """Distinct (student_id, student_name) pairs with open obligations."""
        result = await self.session.execute(
            select(PaymentObligation.student_id, PaymentObligation.student_name)
            .where(PaymentObligation.status != ObligationStatus.PAID.value)
            .distinct()
        )
        return [(row[0], row[1]) for row in result.all()]

    async def credit(self, obligation: PaymentObligation, amount: int, tolerance: int = 0) -> PaymentObligation:
        """Add a payment to the obligation's running total and recompute its status.

        The increment runs in SQL so concurrent credits onto the same
        obligation all land, whatever total this session last read.

        Args:
            obligation: Obligation to credit.
            amount: Amount in minor units.
            tolerance: Amount tolerance used for the paid threshold.

        Returns:
            Updated PaymentObligation instance.
        """
        previous_status = obligation.status
        result = await self.session.execute(
            update(PaymentObligation)
            .where(PaymentObligation.id == obligation.id)
            .values(amount_paid_total=PaymentObligation.amount_paid_total + amount)
            .returning(PaymentObligation.amount_paid_total)
            .execution_options(synchronize_session=False)
        )
        set_committed_value(obligation, "amount_paid_total", result.scalar_one())
        obligation.status = obligation.compute_status(tolerance)
        obligation.updated_at = utcnow()
        await self.session.flush()

        logger.info(
            f"Credited {amount} to obligation {obligation.id}: "
            f"{obligation.amount_paid_total}/{obligation.expected_amount} "
            f"({previous_status} -> {obligation.status})"
        )
        return obligation


class TransactionRepository:
    """Repository for PaymentTransaction operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields: Any) -> PaymentTransaction:
        """Insert a transaction row and flush so uniqueness is checked immediately.

        Raises:
            sqlalchemy.exc.IntegrityError: On (source, source_event_id) or
                content_key conflicts.
        """
        reasons = fields.pop("reasons", None)
        raw_payload = fields.pop("raw_payload", None)
        transaction = PaymentTransaction(**fields)
        transaction.reasons = reasons or []
        if raw_payload is not None:
            transaction.raw_payload = raw_payload

        self.session.add(transaction)
        await self.session.flush()

        logger.debug(
            f"Inserted transaction {transaction.id} from {transaction.source} "
            f"with status {transaction.status}"
        )
        return transaction

    async def get_by_id(self, transaction_id: str) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_by_source_event(self, source: str, source_event_id: str) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction).where(
                and_(
                    PaymentTransaction.source == source,
                    PaymentTransaction.source_event_id == source_event_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_primary_by_checksum(self, checksum: str) -> Optional[PaymentTransaction]:
        """Get the first non-duplicate transaction carrying this checksum."""
        result = await self.session.execute(
            select(PaymentTransaction).where(PaymentTransaction.content_key == checksum)
        )
        return result.scalar_one_or_none()

    async def list_by_status(
        self,
        status: str,
        limit: int = 100,
        offset: int = 0,
    ) -> List[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.status == status)
            .order_by(PaymentTransaction.created_at, PaymentTransaction.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        """Aggregate transaction counts grouped by status."""
        result = await self.session.execute(
            select(PaymentTransaction.status, func.count(PaymentTransaction.id))
            .group_by(PaymentTransaction.status)
        )
        return {status: int(count) for status, count in result.all()}

    async def update_outcome(
        self,
        transaction: PaymentTransaction,
        status: str,
        confidence: Optional[float] = None,
        reasons: Optional[List[str]] = None,
        matched_obligation_id: Optional[str] = None,
        reviewed: bool = False,
    ) -> PaymentTransaction:
        """Update the mutable outcome fields of a transaction.

        Identifying fields are never touched here.
        """
        transaction.status = status
        if confidence is not None:
            transaction.confidence = confidence
        if reasons is not None:
            transaction.reasons = reasons
        if matched_obligation_id is not None:
            transaction.matched_obligation_id = matched_obligation_id
        if reviewed:
            transaction.reviewed_at = utcnow()
        transaction.updated_at = utcnow()
        await self.session.flush()
        return transaction


class MatchRepository:
    """Repository for PaymentMatch operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        transaction_id: str,
        obligation_id: str,
        confidence: float,
        reasons: List[str],
        decision: str = MatchDecision.PENDING.value,
        decided_by: Optional[str] = None,
    ) -> PaymentMatch:
        match = PaymentMatch(
            transaction_id=transaction_id,
            obligation_id=obligation_id,
            confidence=confidence,
            decision=decision,
            decided_by=decided_by,
        )
        match.reasons = reasons
        self.session.add(match)
        await self.session.flush()
        return match

    async def get_by_id(self, match_id: str) -> Optional[PaymentMatch]:
        result = await self.session.execute(
            select(PaymentMatch).where(PaymentMatch.id == match_id)
        )
        return result.scalar_one_or_none()

    async def list_by_transaction(self, transaction_id: str) -> List[PaymentMatch]:
        """List matches for a transaction, best confidence first."""
        result = await self.session.execute(
            select(PaymentMatch)
            .where(PaymentMatch.transaction_id == transaction_id)
            .order_by(PaymentMatch.confidence.desc(), PaymentMatch.created_at, PaymentMatch.id)
        )
        return list(result.scalars().all())

    async def get_approved(self, transaction_id: str) -> Optional[PaymentMatch]:
        result = await self.session.execute(
            select(PaymentMatch).where(
                and_(
                    PaymentMatch.transaction_id == transaction_id,
                    PaymentMatch.decision == MatchDecision.APPROVED.value,
                )
            )
        )
        return result.scalar_one_or_none()

    async def set_decision(self, match: PaymentMatch, decision: str, decided_by: str) -> PaymentMatch:
        match.decision = decision
        match.decided_by = decided_by
        match.updated_at = utcnow()
        await self.session.flush()
        return match


class ExceptionRepository:
    """Repository for the reconciliation review queue."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, match: PaymentMatch) -> ReconciliationException:
        exception = ReconciliationException(
            match_id=match.id,
            transaction_id=match.transaction_id,
            status=ExceptionStatus.OPEN.value,
        )
        self.session.add(exception)
        await self.session.flush()

        logger.info(f"Opened exception {exception.id} for transaction {match.transaction_id}")
        return exception

    async def get_by_id(self, exception_id: str) -> Optional[ReconciliationException]:
        result = await self.session.execute(
            select(ReconciliationException).where(ReconciliationException.id == exception_id)
        )
        return result.scalar_one_or_none()

    async def get_open_by_transaction(self, transaction_id: str) -> Optional[ReconciliationException]:
        result = await self.session.execute(
            select(ReconciliationException).where(
                and_(
                    ReconciliationException.transaction_id == transaction_id,
                    ReconciliationException.status == ExceptionStatus.OPEN.value,
                )
            )
        )
        return result.scalars().first()

    async def list_rows(
        self,
        status: Optional[str] = ExceptionStatus.OPEN.value,
        assignee: Optional[str] = None,
        student_id: Optional[str] = None,
        reason: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Tuple[ReconciliationException, PaymentMatch, PaymentTransaction, PaymentObligation]]:
        """List queue rows joined with their match, transaction and obligation.

        Args:
            status: Exception status filter; None for all.
            assignee: Assignee filter.
            student_id: Student owning any candidate obligation of the transaction.
            reason: Reason code that must appear on the transaction.
            limit: Maximum number of results.
            offset: Offset for pagination.

        Returns:
            List of (exception, match, transaction, obligation) tuples, oldest first.
        """
        query = (
            select(ReconciliationException, PaymentMatch, PaymentTransaction, PaymentObligation)
            .join(PaymentMatch, PaymentMatch.id == ReconciliationException.match_id)
            .join(PaymentTransaction, PaymentTransaction.id == ReconciliationException.transaction_id)
            .join(PaymentObligation, PaymentObligation.id == PaymentMatch.obligation_id)
        )
        conditions = []
        if status:
            conditions.append(ReconciliationException.status == status)
        if assignee:
            conditions.append(ReconciliationException.assignee == assignee)
        if student_id:
            # any candidate of the transaction, not only the exception's best match
            candidate = aliased(PaymentMatch)
            candidate_obligation = aliased(PaymentObligation)
            conditions.append(
                select(candidate.id)
                .join(candidate_obligation, candidate_obligation.id == candidate.obligation_id)
                .where(
                    and_(
                        candidate.transaction_id == ReconciliationException.transaction_id,
                        candidate_obligation.student_id == student_id,
                    )
                )
                .exists()
            )
        if reason:
            # reasons_json is a JSON array of quoted codes
            conditions.append(PaymentTransaction.reasons_json.contains(f'"{reason}"', autoescape=True))
        if conditions:
            query = query.where(and_(*conditions))

        result = await self.session.execute(
            query
            .order_by(ReconciliationException.created_at, ReconciliationException.id)
            .limit(limit)
            .offset(offset)
        )
        return [tuple(row) for row in result.all()]

    async def assign(self, exception: ReconciliationException, assignee: Optional[str]) -> ReconciliationException:
        exception.assignee = assignee
        exception.updated_at = utcnow()
        await self.session.flush()
        return exception

    async def resolve(
        self,
        exception: ReconciliationException,
        resolution: str,
        resolved_by: str,
    ) -> ReconciliationException:
        exception.status = ExceptionStatus.RESOLVED.value
        exception.resolution = resolution
        exception.resolved_by = resolved_by
        exception.resolved_at = utcnow()
        exception.updated_at = exception.resolved_at
        await self.session.flush()

        logger.info(f"Resolved exception {exception.id} as {resolution} by {resolved_by}")
        return exception


class EventRepository:
    """Append-only repository for reconciliation audit events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        actor: str,
        action: str,
        transaction_id: Optional[str] = None,
        match_id: Optional[str] = None,
        exception_id: Optional[str] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationEvent:
        """Append an audit event.

        Args:
            actor: Who performed the action ("system" for automatic decisions).
            action: EventAction value.
            transaction_id: Affected transaction.
            match_id: Affected match.
            exception_id: Affected exception.
            previous_status: Transaction status before the action.
            new_status: Transaction status after the action.
            details: Additional structured context.

        Returns:
            Created ReconciliationEvent instance.
        """
        audit_event = ReconciliationEvent(
            actor=actor,
            action=action,
            transaction_id=transaction_id,
            match_id=match_id,
            exception_id=exception_id,
            previous_status=previous_status,
            new_status=new_status,
        )
        if details:
            audit_event.details = details

        self.session.add(audit_event)
        await self.session.flush()

        logger.debug(
            f"Recorded {action} by {actor} on transaction {transaction_id}: "
            f"{previous_status} -> {new_status}"
        )
        return audit_event

    async def list_by_transaction(self, transaction_id: str) -> List[ReconciliationEvent]:
        result = await self.session.execute(
            select(ReconciliationEvent)
            .where(ReconciliationEvent.transaction_id == transaction_id)
            .order_by(ReconciliationEvent.created_at, ReconciliationEvent.id)
        )
        return list(result.scalars().all())

    async def list_by_action(self, action: str) -> List[ReconciliationEvent]:
        result = await self.session.execute(
            select(ReconciliationEvent)
            .where(ReconciliationEvent.action == action)
            .order_by(ReconciliationEvent.created_at, ReconciliationEvent.id)
        )
        return list(result.scalars().all())
