"""Decision and transition policy for reconciled transactions.

Automatic decisions (actor ``system``)::

    ingested|unmatched --> approved        exactly one auto-approvable candidate
    ingested|unmatched --> needs_review    candidates exist but need judgment
    ingested           --> unmatched       no relevant candidate

Manual transitions::

    needs_review|needs_student_confirmation|unmatched --> approved | rejected
    needs_review|unmatched --> needs_student_confirmation
    duplicate --> duplicate (merge: linked to the primary's obligation, never credited)

Every status change writes exactly one ReconciliationEvent.
"""

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import ReconciliationSettings
from ..database import (
    EventAction,
    EventRepository,
    ExceptionRepository,
    MatchDecision,
    MatchRepository,
    ObligationRepository,
    PaymentMatch,
    PaymentObligation,
    PaymentTransaction,
    ReasonCode,
    TransactionRepository,
    TransactionStatus,
    normalize_reason_codes,
)
from ..exceptions import NotFoundError, ResolutionConflictError
from .matcher import MatchScorer
from .models import MatchCandidate, OutcomeKind, ResolutionAction, ResolutionResult
from .references import ReferenceCodec

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

DECIDABLE_STATUSES = frozenset({
    TransactionStatus.INGESTED.value,
    TransactionStatus.UNMATCHED.value,
})
REVIEWABLE_STATUSES = frozenset({
    TransactionStatus.NEEDS_REVIEW.value,
    TransactionStatus.NEEDS_STUDENT_CONFIRMATION.value,
    TransactionStatus.UNMATCHED.value,
})


class DecisionPolicy:
    """Applies automatic decisions and manual transitions to transactions."""

    def __init__(
        self,
        session: AsyncSession,
        settings: ReconciliationSettings,
        codec: ReferenceCodec,
    ):
        """Initialize the policy.

        Args:
            session: Async database session; the caller owns the transaction.
            settings: Reconciliation settings.
            codec: Reference codec shared with the matcher.
        """
        self.session = session
        self.settings = settings
        self.scorer = MatchScorer(settings, codec)
        self.transactions = TransactionRepository(session)
        self.obligations = ObligationRepository(session)
        self.matches = MatchRepository(session)
        self.exceptions = ExceptionRepository(session)
        self.events = EventRepository(session)

    def _would_overpay(self, obligation: PaymentObligation, amount: int) -> bool:
        limit = obligation.expected_amount + self.settings.amount_tolerance
        return (obligation.amount_paid_total or 0) + amount > limit

    async def _get_obligation(self, obligation_id: str) -> PaymentObligation:
        obligation = await self.obligations.get_by_id(obligation_id, for_update=True)
        if obligation is None:
            raise NotFoundError("Obligation", obligation_id)
        return obligation

    # Automatic decisions

    async def decide(self, transaction: PaymentTransaction, candidates: List[MatchCandidate]) -> str:
        """Decide the outcome of a freshly admitted or unmatched transaction.

        Args:
            transaction: Transaction to decide.
            candidates: Ranked candidates from the matching engine.

        Returns:
            The transaction status after the decision. Transactions in any
            status other than ingested or unmatched are left unchanged.
        """
        if transaction.status not in DECIDABLE_STATUSES:
            return transaction.status

        outcome = self.scorer.classify(candidates)

        if outcome.kind == OutcomeKind.NO_CANDIDATE:
            return await self._mark_unmatched(transaction)

        if outcome.kind == OutcomeKind.AUTO_APPROVE:
            obligation = await self._get_obligation(outcome.best.obligation_id)
            if not self._would_overpay(obligation, transaction.amount):
                return await self._auto_approve(transaction, outcome.best, obligation)
            logger.warning(
                f"Transaction {transaction.id} would overpay obligation {obligation.id} "
                f"({obligation.amount_paid_total} + {transaction.amount} > {obligation.expected_amount}); "
                f"routing to review"
            )
            return await self._route_to_review(transaction, outcome.candidates, extra=[ReasonCode.OVERPAYMENT])

        extra = [ReasonCode.AMBIGUOUS_CANDIDATE] if outcome.ambiguous else []
        return await self._route_to_review(transaction, outcome.candidates, extra=extra)

    async def _mark_unmatched(self, transaction: PaymentTransaction) -> str:
        previous = transaction.status
        await self.transactions.update_outcome(
            transaction,
            TransactionStatus.UNMATCHED.value,
            confidence=0.0,
            reasons=[ReasonCode.NO_CANDIDATE],
        )
        if previous != TransactionStatus.UNMATCHED.value:
            await self.events.record(
                actor=SYSTEM_ACTOR,
                action=EventAction.MARK_UNMATCHED.value,
                transaction_id=transaction.id,
                previous_status=previous,
                new_status=transaction.status,
            )
        logger.info(f"Transaction {transaction.id} has no candidate; marked unmatched")
        return transaction.status

    async def _auto_approve(
        self,
        transaction: PaymentTransaction,
        best: MatchCandidate,
        obligation: PaymentObligation,
    ) -> str:
        previous = transaction.status
        match = await self.matches.create(
            transaction_id=transaction.id,
            obligation_id=obligation.id,
            confidence=best.score,
            reasons=best.reasons,
            decision=MatchDecision.APPROVED.value,
            decided_by=SYSTEM_ACTOR,
        )
        await self.obligations.credit(obligation, transaction.amount, self.settings.amount_tolerance)
        await self.transactions.update_outcome(
            transaction,
            TransactionStatus.APPROVED.value,
            confidence=best.score,
            reasons=best.reasons,
            matched_obligation_id=obligation.id,
        )
        await self.events.record(
            actor=SYSTEM_ACTOR,
            action=EventAction.AUTO_APPROVE.value,
            transaction_id=transaction.id,
            match_id=match.id,
            previous_status=previous,
            new_status=transaction.status,
            details={"obligation_id": obligation.id, "amount": transaction.amount},
        )
        logger.info(
            f"Auto-approved transaction {transaction.id} onto obligation {obligation.id} "
            f"(confidence {best.score})"
        )
        return transaction.status

    async def _route_to_review(
        self,
        transaction: PaymentTransaction,
        candidates: List[MatchCandidate],
        extra: Optional[List[ReasonCode]] = None,
    ) -> str:
        previous = transaction.status
        best = candidates[0]
        best_match: Optional[PaymentMatch] = None
        for candidate in candidates:
            match = await self.matches.create(
                transaction_id=transaction.id,
                obligation_id=candidate.obligation_id,
                confidence=candidate.score,
                reasons=candidate.reasons,
            )
            if best_match is None:
                best_match = match
        exception = await self.exceptions.create(best_match)

        await self.transactions.update_outcome(
            transaction,
            TransactionStatus.NEEDS_REVIEW.value,
            confidence=best.score,
            reasons=list(best.reasons) + list(extra or []),
        )
        await self.events.record(
            actor=SYSTEM_ACTOR,
            action=EventAction.ROUTE_TO_REVIEW.value,
            transaction_id=transaction.id,
            match_id=best_match.id,
            exception_id=exception.id,
            previous_status=previous,
            new_status=transaction.status,
            details={"candidates": len(candidates), "best_obligation_id": best.obligation_id},
        )
        logger.info(
            f"Transaction {transaction.id} needs review: {len(candidates)} candidate(s), "
            f"best {best.score} on obligation {best.obligation_id}"
        )
        return transaction.status

    # Manual transitions

    async def _close_exception(self, transaction: PaymentTransaction, action: ResolutionAction, actor: str):
        exception = await self.exceptions.get_open_by_transaction(transaction.id)
        if exception is not None:
            await self.exceptions.resolve(exception, action.value, actor)
        return exception

    async def approve(
        self,
        transaction: PaymentTransaction,
        actor: str,
        obligation_id: Optional[str] = None,
    ) -> ResolutionResult:
        """Manually approve a transaction onto an obligation.

        Args:
            transaction: Transaction under review.
            actor: Reviewer performing the approval.
            obligation_id: Target obligation. Defaults to the best pending
                candidate; required for unmatched transactions.

        Returns:
            ResolutionResult; ``applied`` is False when already approved onto
            the same obligation.

        Raises:
            ResolutionConflictError: If the transaction cannot be approved.
            NotFoundError: If the target obligation does not exist.
        """
        action = ResolutionAction.APPROVE
        status = transaction.status

        if status == TransactionStatus.APPROVED.value:
            if obligation_id is None or obligation_id == transaction.matched_obligation_id:
                return ResolutionResult.from_transaction(transaction, action, applied=False)
            raise ResolutionConflictError(
                transaction.id, action.value,
                f"already approved onto obligation {transaction.matched_obligation_id}",
            )
        if status not in REVIEWABLE_STATUSES:
            raise ResolutionConflictError(transaction.id, action.value, f"status is {status}")
        if status == TransactionStatus.UNMATCHED.value and obligation_id is None:
            raise ResolutionConflictError(
                transaction.id, action.value, "unmatched transactions need an explicit obligation",
            )

        matches = await self.matches.list_by_transaction(transaction.id)
        target = None
        if obligation_id is None:
            target = next((m for m in matches if m.decision == MatchDecision.PENDING.value), None)
            if target is None:
                raise ResolutionConflictError(transaction.id, action.value, "no pending candidate")
        else:
            target = next((m for m in matches if m.obligation_id == obligation_id), None)

        obligation = await self._get_obligation(target.obligation_id if target else obligation_id)
        if target is None:
            scored = self.scorer.score(transaction, obligation)
            target = await self.matches.create(
                transaction_id=transaction.id,
                obligation_id=obligation.id,
                confidence=scored.score if scored else 0.0,
                reasons=scored.reasons if scored else [],
            )
            matches.append(target)

        reasons = list(transaction.reasons) + [ReasonCode.MANUAL_APPROVED]
        if self._would_overpay(obligation, transaction.amount):
            logger.warning(
                f"Manual approval of transaction {transaction.id} by {actor} overpays "
                f"obligation {obligation.id}"
            )
            reasons.append(ReasonCode.OVERPAYMENT)

        for match in matches:
            if match.id == target.id:
                await self.matches.set_decision(match, MatchDecision.APPROVED.value, actor)
            elif match.decision == MatchDecision.PENDING.value:
                await self.matches.set_decision(match, MatchDecision.REJECTED.value, actor)

        await self.obligations.credit(obligation, transaction.amount, self.settings.amount_tolerance)
        await self.transactions.update_outcome(
            transaction,
            TransactionStatus.APPROVED.value,
            confidence=target.confidence,
            reasons=normalize_reason_codes(reasons),
            matched_obligation_id=obligation.id,
            reviewed=True,
        )
        exception = await self._close_exception(transaction, action, actor)
        await self.events.record(
            actor=actor,
            action=EventAction.APPROVE.value,
            transaction_id=transaction.id,
            match_id=target.id,
            exception_id=exception.id if exception else None,
            previous_status=status,
            new_status=transaction.status,
            details={"obligation_id": obligation.id, "amount": transaction.amount},
        )
        logger.info(f"Transaction {transaction.id} approved by {actor} onto obligation {obligation.id}")
        return ResolutionResult.from_transaction(transaction, action, applied=True)

    async def reject(self, transaction: PaymentTransaction, actor: str) -> ResolutionResult:
        """Manually reject a transaction. No ledger effect.

        Raises:
            ResolutionConflictError: If the transaction is approved, duplicate
                or not yet decided.
        """
        action = ResolutionAction.REJECT
        status = transaction.status
        if status == TransactionStatus.REJECTED.value:
            return ResolutionResult.from_transaction(transaction, action, applied=False)
        if status not in REVIEWABLE_STATUSES:
            raise ResolutionConflictError(transaction.id, action.value, f"status is {status}")

        for match in await self.matches.list_by_transaction(transaction.id):
            if match.decision == MatchDecision.PENDING.value:
                await self.matches.set_decision(match, MatchDecision.REJECTED.value, actor)

        await self.transactions.update_outcome(
            transaction,
            TransactionStatus.REJECTED.value,
            reasons=normalize_reason_codes(list(transaction.reasons) + [ReasonCode.MANUAL_REJECTED]),
            reviewed=True,
        )
        exception = await self._close_exception(transaction, action, actor)
        await self.events.record(
            actor=actor,
            action=EventAction.REJECT.value,
            transaction_id=transaction.id,
            exception_id=exception.id if exception else None,
            previous_status=status,
            new_status=transaction.status,
        )
        logger.info(f"Transaction {transaction.id} rejected by {actor}")
        return ResolutionResult.from_transaction(transaction, action, applied=True)

    async def request_student_confirmation(self, transaction: PaymentTransaction, actor: str) -> ResolutionResult:
        """Park a transaction until the student confirms it. The exception stays open."""
        action = ResolutionAction.REQUEST_STUDENT_CONFIRMATION
        status = transaction.status
        if status == TransactionStatus.NEEDS_STUDENT_CONFIRMATION.value:
            return ResolutionResult.from_transaction(transaction, action, applied=False)
        if status not in (TransactionStatus.NEEDS_REVIEW.value, TransactionStatus.UNMATCHED.value):
            raise ResolutionConflictError(transaction.id, action.value, f"status is {status}")

        await self.transactions.update_outcome(
            transaction,
            TransactionStatus.NEEDS_STUDENT_CONFIRMATION.value,
            reasons=normalize_reason_codes(
                list(transaction.reasons) + [ReasonCode.NEEDS_STUDENT_CONFIRMATION]
            ),
        )
        exception = await self.exceptions.get_open_by_transaction(transaction.id)
        await self.events.record(
            actor=actor,
            action=EventAction.REQUEST_STUDENT_CONFIRMATION.value,
            transaction_id=transaction.id,
            exception_id=exception.id if exception else None,
            previous_status=status,
            new_status=transaction.status,
        )
        logger.info(f"Transaction {transaction.id} awaiting student confirmation (requested by {actor})")
        return ResolutionResult.from_transaction(transaction, action, applied=True)

    async def merge_duplicate(self, transaction: PaymentTransaction, actor: str) -> ResolutionResult:
        """Link a duplicate to its primary's obligation without crediting it.

        Raises:
            ResolutionConflictError: If the transaction is not a duplicate, its
                primary is unmatched, or the amounts disagree.
        """
        action = ResolutionAction.MERGE_DUPLICATES
        if transaction.status != TransactionStatus.DUPLICATE.value or not transaction.duplicate_of_id:
            raise ResolutionConflictError(transaction.id, action.value, f"status is {transaction.status}")

        primary = await self.transactions.get_by_id(transaction.duplicate_of_id)
        if primary is None:
            raise NotFoundError("Transaction", transaction.duplicate_of_id)
        if not primary.matched_obligation_id:
            raise ResolutionConflictError(
                transaction.id, action.value, f"primary {primary.id} has no matched obligation",
            )
        if primary.amount != transaction.amount:
            raise ResolutionConflictError(
                transaction.id, action.value,
                f"amount {transaction.amount} differs from primary amount {primary.amount}",
            )
        if transaction.matched_obligation_id == primary.matched_obligation_id:
            return ResolutionResult.from_transaction(transaction, action, applied=False)

        await self.transactions.update_outcome(
            transaction,
            transaction.status,
            matched_obligation_id=primary.matched_obligation_id,
            reviewed=True,
        )
        await self.events.record(
            actor=actor,
            action=EventAction.MERGE.value,
            transaction_id=transaction.id,
            previous_status=transaction.status,
            new_status=transaction.status,
            details={"primary_id": primary.id, "obligation_id": primary.matched_obligation_id},
        )
        logger.info(
            f"Duplicate {transaction.id} merged onto primary {primary.id} "
            f"(obligation {primary.matched_obligation_id}) by {actor}"
        )
        return ResolutionResult.from_transaction(transaction, action, applied=True)

    async def apply(
        self,
        transaction: PaymentTransaction,
        action: ResolutionAction,
        actor: str,
        obligation_id: Optional[str] = None,
    ) -> ResolutionResult:
        """Dispatch a manual action to its transition."""
        if action == ResolutionAction.APPROVE:
            return await self.approve(transaction, actor, obligation_id)
        if action == ResolutionAction.REJECT:
            return await self.reject(transaction, actor)
        if action == ResolutionAction.REQUEST_STUDENT_CONFIRMATION:
            return await self.request_student_confirmation(transaction, actor)
        return await self.merge_duplicate(transaction, actor)
