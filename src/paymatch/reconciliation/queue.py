"""Review queue: listing, assignment and single or bulk resolution."""

import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import ReconciliationSettings
from ..database import (
    EventAction,
    EventRepository,
    ExceptionRepository,
    ExceptionStatus,
    PaymentTransaction,
    ReconciliationException,
    TransactionRepository,
    TransactionStatus,
    normalize_reason_codes,
)
from ..exceptions import NotFoundError, ReconciliationError, ResolutionConflictError
from .models import (
    BulkResolutionItem,
    BulkResolutionReport,
    ExceptionRow,
    ResolutionAction,
    ResolutionOutcome,
    ResolutionResult,
)
from .policy import DecisionPolicy
from .references import ReferenceCodec

logger = logging.getLogger(__name__)

MAX_BULK_IDS = 200

RESOLVED_STATUSES = frozenset({
    TransactionStatus.APPROVED.value,
    TransactionStatus.REJECTED.value,
})


def dedupe_ids(requested: Iterable[str], limit: int = MAX_BULK_IDS) -> List[str]:
    """De-duplicate ids preserving first occurrence, dropping blanks."""
    ids: List[str] = []
    seen = set()
    for raw in requested:
        value = str(raw or "").strip()
        if not value or value in seen:
            continue
        seen.add(value)
        ids.append(value)
        if len(ids) >= limit:
            break
    return ids


class ExceptionQueue:
    """Human review queue over reconciliation exceptions."""

    def __init__(
        self,
        session: AsyncSession,
        settings: ReconciliationSettings,
        codec: ReferenceCodec,
    ):
        self.session = session
        self.settings = settings
        self.policy = DecisionPolicy(session, settings, codec)
        self.exceptions = ExceptionRepository(session)
        self.transactions = TransactionRepository(session)
        self.events = EventRepository(session)

    async def list_exceptions(
        self,
        status: Optional[str] = ExceptionStatus.OPEN.value,
        assignee: Optional[str] = None,
        student_id: Optional[str] = None,
        reason: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ExceptionRow]:
        """List queue rows, oldest first.

        Args:
            status: "open", "resolved", or None for both.
            assignee: Only rows assigned to this reviewer.
            student_id: Only rows with a candidate obligation of this student.
            reason: Only rows whose transaction carries this reason code.
            limit: Maximum number of rows.
            offset: Pagination offset.

        Returns:
            List of ExceptionRow.

        Raises:
            InvalidReasonCodeError: If reason is not a known reason code.
        """
        if status is not None:
            status = ExceptionStatus(status).value
        if reason is not None:
            reason = normalize_reason_codes([reason])[0]

        rows = await self.exceptions.list_rows(
            status=status,
            assignee=assignee,
            student_id=student_id,
            reason=reason,
            limit=limit,
            offset=offset,
        )
        return [
            ExceptionRow(
                exception_id=exception.id,
                exception_status=exception.status,
                assignee=exception.assignee,
                transaction_id=transaction.id,
                transaction_status=TransactionStatus(transaction.status),
                source=transaction.source,
                reference=transaction.reference,
                amount=transaction.amount,
                payer_name=transaction.payer_name,
                paid_at=transaction.paid_at,
                match_id=match.id,
                obligation_id=obligation.id,
                student_id=obligation.student_id,
                payment_item_id=obligation.payment_item_id,
                payment_reference=obligation.payment_reference,
                expected_amount=obligation.expected_amount,
                confidence=match.confidence,
                reasons=transaction.reasons,
                match_reasons=match.reasons,
                created_at=exception.created_at,
            )
            for exception, match, transaction, obligation in rows
        ]

    async def assign(self, exception_id: str, assignee: Optional[str], actor: str) -> ReconciliationException:
        """Assign an exception to a reviewer, or unassign with None.

        Raises:
            NotFoundError: If the exception does not exist.
        """
        exception = await self.exceptions.get_by_id(exception_id)
        if exception is None:
            raise NotFoundError("Exception", exception_id)

        previous = exception.assignee
        await self.exceptions.assign(exception, assignee)
        await self.events.record(
            actor=actor,
            action=EventAction.ASSIGN.value,
            transaction_id=exception.transaction_id,
            match_id=exception.match_id,
            exception_id=exception.id,
            details={"assignee": assignee, "previous_assignee": previous},
        )
        logger.info(f"Exception {exception.id} assigned to {assignee} by {actor}")
        return exception

    async def resolve(
        self,
        transaction_id: str,
        action: ResolutionAction,
        actor: str,
        obligation_id: Optional[str] = None,
    ) -> ResolutionResult:
        """Apply one manual action to one transaction.

        Raises:
            NotFoundError: If the transaction or target obligation does not exist.
            ResolutionConflictError: If the action is invalid for the current state.
        """
        action = ResolutionAction(action)
        transaction = await self.transactions.get_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return await self.policy.apply(transaction, action, actor, obligation_id)

    async def _locate(
        self, requested_id: str
    ) -> Tuple[Optional[PaymentTransaction], Optional[ReconciliationException]]:
        """Resolve an exception id or a transaction id to its transaction."""
        exception = await self.exceptions.get_by_id(requested_id)
        if exception is not None:
            return await self.transactions.get_by_id(exception.transaction_id), exception
        return await self.transactions.get_by_id(requested_id), None

    async def bulk_resolve(
        self,
        ids: Iterable[str],
        action: ResolutionAction,
        actor: str,
    ) -> BulkResolutionReport:
        """Apply one action to many queue items, each in its own SAVEPOINT.

        Ids may name exceptions or transactions. Items already approved or
        rejected, for instance by another reviewer, are reported as no-ops. A
        failure on one id rolls back only that id's savepoint and is
        reported; it never aborts the batch.

        Args:
            ids: Exception or transaction ids; de-duplicated and capped at 200.
            action: Action to apply.
            actor: Reviewer performing the batch.

        Returns:
            BulkResolutionReport with one item per processed transaction.
        """
        action = ResolutionAction(action)
        requested = list(ids)
        batch = dedupe_ids(requested)
        truncated = len(dedupe_ids(requested, limit=len(requested) + 1)) > len(batch)
        if truncated:
            logger.warning(f"Bulk {action.value} by {actor} capped at {MAX_BULK_IDS} ids")

        report = BulkResolutionReport(action=action, actor=actor, truncated=truncated)
        seen = set()
        for requested_id in batch:
            transaction, exception = await self._locate(requested_id)
            if transaction is None:
                report.items.append(BulkResolutionItem(
                    transaction_id=requested_id,
                    outcome=ResolutionOutcome.NOT_FOUND,
                    error=f"no exception or transaction {requested_id}",
                ))
                continue
            if transaction.id in seen:
                continue
            seen.add(transaction.id)

            item = BulkResolutionItem(
                transaction_id=transaction.id,
                exception_id=exception.id if exception is not None else None,
                outcome=ResolutionOutcome.NOOP,
            )
            if transaction.status in RESOLVED_STATUSES or (
                exception is not None and exception.status == ExceptionStatus.RESOLVED.value
            ):
                item.status = TransactionStatus(transaction.status)
                report.items.append(item)
                continue

            try:
                async with self.session.begin_nested():
                    result = await self.policy.apply(transaction, action, actor)
            except NotFoundError as e:
                item.outcome = ResolutionOutcome.NOT_FOUND
                item.error = str(e)
            except ResolutionConflictError as e:
                item.outcome = ResolutionOutcome.CONFLICT
                item.error = e.reason
            except ReconciliationError as e:
                logger.error(f"Bulk {action.value} failed for transaction {transaction.id}: {e.code}: {e}")
                item.outcome = ResolutionOutcome.ERROR
                item.error = f"{e.code}: {e}"
            else:
                item.outcome = ResolutionOutcome.APPLIED if result.applied else ResolutionOutcome.NOOP
                item.status = result.status
            report.items.append(item)

        logger.info(
            f"Bulk {action.value} by {actor}: {report.applied} applied, {report.noop} noop, "
            f"{report.conflicts} conflict, {report.not_found} not found, {report.errors} error"
        )
        return report
