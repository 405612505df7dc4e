"""Service layer for reconciliation operations."""

import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import ReconciliationSettings, get_settings
from ..database import (
    EventRepository,
    ObligationRepository,
    PaymentItem,
    PaymentItemRepository,
    PaymentObligation,
    ReconciliationEvent,
    TransactionRepository,
    TransactionStatus,
)
from ..exceptions import NotFoundError, ReconciliationError
from .ingestion import IngestionGate
from .matcher import MatchingEngine
from .models import (
    AdmitResult,
    BulkResolutionReport,
    ExceptionRow,
    ReconciliationSummary,
    ResolutionAction,
    ResolutionResult,
    TransactionCandidate,
)
from .policy import DecisionPolicy
from .queue import ExceptionQueue
from .references import ReferenceCodec
from .report import ReportGenerator

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Facade over the reconciliation components for one unit of work.

    The service never commits. Callers wrap it in ``get_db_context()`` or
    ``DatabaseManager.session()`` so admission, matching and the decision
    write land in one database transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[ReconciliationSettings] = None,
    ):
        """Initialize the reconciliation service.

        Args:
            session: Async database session.
            settings: Optional settings. Loaded from the environment if not provided.
        """
        self.session = session
        self.settings = settings or get_settings()
        self.codec = ReferenceCodec.from_settings(self.settings)
        self.items = PaymentItemRepository(session)
        self.obligations = ObligationRepository(session)
        self.transactions = TransactionRepository(session)
        self.events = EventRepository(session)
        self.gate = IngestionGate(session, self.settings, self.codec)
        self.engine = MatchingEngine(session, self.settings, self.codec)
        self.policy = DecisionPolicy(session, self.settings, self.codec)
        self.queue = ExceptionQueue(session, self.settings, self.codec)

    # Items and obligations

    async def create_item(
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
        if expected_amount <= 0:
            raise ValueError(f"expected_amount must be positive, got {expected_amount}")
        return await self.items.create(
            title=title,
            expected_amount=expected_amount,
            created_by=created_by,
            currency=currency,
            description=description,
            due_date=due_date,
            available_from=available_from,
            available_until=available_until,
        )

    async def ensure_obligation(
        self,
        item_id: str,
        student_id: str,
        student_name: Optional[str] = None,
    ) -> PaymentObligation:
        """Return the student's obligation for an item, creating it on first use.

        The reference is the first generated attempt that is not already taken.
        A concurrent creation of the same (item, student) is absorbed by
        re-reading after the uniqueness conflict.

        Args:
            item_id: Payment item id.
            student_id: Student identifier.
            student_name: Optional display name for payer matching.

        Returns:
            PaymentObligation instance.

        Raises:
            NotFoundError: If the item does not exist.
            ReconciliationError: If every reference attempt is taken.
        """
        existing = await self.obligations.get_by_item_student(item_id, student_id)
        if existing is not None:
            return existing

        item = await self.items.get_by_id(item_id)
        if item is None:
            raise NotFoundError("PaymentItem", item_id)

        for reference in self.codec.generate_candidates(
            item.id, student_id, self.settings.max_reference_attempts
        ):
            try:
                async with self.session.begin_nested():
                    return await self.obligations.create(item, student_id, reference, student_name)
            except IntegrityError:
                existing = await self.obligations.get_by_item_student(item_id, student_id)
                if existing is not None:
                    return existing
                logger.warning(f"Reference {reference} already taken; trying next attempt")

        raise ReconciliationError(
            f"No free payment reference for student {student_id} on item {item_id}"
        )

    async def assign_item(
        self,
        item_id: str,
        students: Dict[str, Optional[str]],
    ) -> List[PaymentObligation]:
        """Ensure obligations for many students; ``students`` maps id to display name."""
        return [
            await self.ensure_obligation(item_id, student_id, student_name)
            for student_id, student_name in students.items()
        ]

    # Ingestion

    async def admit(self, candidate: TransactionCandidate) -> AdmitResult:
        """Admit one candidate. See IngestionGate.admit."""
        return await self.gate.admit(candidate)

    async def rematch_unmatched(self, limit: int = 100) -> Dict[str, int]:
        """Re-run matching for unmatched transactions, e.g. after new obligations exist.

        Returns:
            Count of transactions per resulting status.
        """
        outcomes: Dict[str, int] = {}
        pending = await self.transactions.list_by_status(TransactionStatus.UNMATCHED.value, limit=limit)
        for transaction in pending:
            candidates = await self.engine.match(transaction)
            status = await self.policy.decide(transaction, candidates)
            outcomes[status] = outcomes.get(status, 0) + 1

        logger.info(f"Re-matched {len(pending)} unmatched transactions: {outcomes}")
        return outcomes

    # Review queue

    async def list_exceptions(self, **filters) -> List[ExceptionRow]:
        return await self.queue.list_exceptions(**filters)

    async def resolve(
        self,
        transaction_id: str,
        action: ResolutionAction,
        actor: str,
        obligation_id: Optional[str] = None,
    ) -> ResolutionResult:
        return await self.queue.resolve(transaction_id, action, actor, obligation_id)

    async def bulk_resolve(
        self,
        ids: Iterable[str],
        action: ResolutionAction,
        actor: str,
    ) -> BulkResolutionReport:
        """Apply one action to many exception or transaction ids. See ExceptionQueue.bulk_resolve."""
        return await self.queue.bulk_resolve(ids, action, actor)

    # Read models

    async def summary(self) -> ReconciliationSummary:
        """Transaction counts by status from a single grouped query."""
        return ReconciliationSummary.from_counts(await self.transactions.count_by_status())

    async def history(self, transaction_id: str) -> List[ReconciliationEvent]:
        """Audit events for one transaction, oldest first."""
        return await self.events.list_by_transaction(transaction_id)

    def generate_report(
        self,
        summary: Optional[ReconciliationSummary] = None,
        exceptions: Optional[List[ExceptionRow]] = None,
        bulk: Optional[BulkResolutionReport] = None,
        format: str = "json",
    ) -> str:
        """Render read models in one of the supported formats.

        Args:
            summary: Summary to include.
            exceptions: Queue rows to include.
            bulk: Bulk resolution report to include.
            format: Output format ('json', 'csv', 'text', 'detailed_text').

        Returns:
            Formatted report string.
        """
        generator = ReportGenerator(summary=summary, exceptions=exceptions, bulk=bulk)

        if format == "json":
            return generator.to_json()
        elif format == "csv":
            return generator.to_csv()
        elif format == "text":
            return generator.to_summary_text()
        elif format == "detailed_text":
            return generator.to_detailed_text()
        else:
            raise ValueError(f"Unsupported report format: {format}")
