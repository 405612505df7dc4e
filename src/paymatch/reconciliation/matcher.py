"""Matching engine for pairing transactions with obligations."""

import logging
from datetime import date
from typing import Dict, List, Optional

from rapidfuzz import fuzz, utils
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import ReconciliationSettings
from ..database import ObligationRepository, PaymentObligation, PaymentTransaction, ReasonCode
from .models import MatchCandidate, MatchOutcome, OutcomeKind
from .normalization import normalize_identifier, normalize_reference
from .references import ReferenceCodec

logger = logging.getLogger(__name__)

# Weights in hundredths so sums stay exact
WEIGHT_AMOUNT = 35
WEIGHT_STUDENT_HINT = 30
WEIGHT_REFERENCE_PARTIAL = 30
WEIGHT_ITEM_HINT = 20
WEIGHT_PAYER_HINT = 20
WEIGHT_DATE_PROXIMITY = 10
FULL_SCORE = 100

PARTIAL_REFERENCE_RATIO = 90
MIN_PARTIAL_REFERENCE_LENGTH = 6


def payer_matches_student(
    payer: str,
    student_id: Optional[str],
    student_name: Optional[str],
    threshold: int,
) -> bool:
    """Whether payer text names this student.

    Student ids must match exactly once normalized; similar ids such as
    std_001 and std_002 belong to different students. Display names are
    compared fuzzily, ignoring token order.
    """
    if not payer:
        return False
    if student_id and normalize_identifier(payer) == normalize_identifier(student_id):
        return True
    return bool(student_name) and (
        fuzz.token_sort_ratio(payer, student_name, processor=utils.default_process) >= threshold
    )


class MatchScorer:
    """Pure, deterministic scoring of transaction/obligation pairs."""

    def __init__(self, settings: ReconciliationSettings, codec: ReferenceCodec):
        """Initialize the scorer.

        Args:
            settings: Thresholds, tolerance and similarity settings.
            codec: Reference codec used to recognize retry references.
        """
        self.settings = settings
        self.codec = codec

    def _is_exact_reference(self, reference: str, obligation: PaymentObligation) -> bool:
        if not reference:
            return False
        if reference == normalize_reference(obligation.payment_reference):
            return True
        return self.codec.matches(
            reference,
            obligation.payment_item_id,
            obligation.student_id,
            self.settings.max_reference_attempts,
        )

    def _is_partial_reference(self, reference: str, obligation: PaymentObligation) -> bool:
        if len(reference) < MIN_PARTIAL_REFERENCE_LENGTH:
            return False
        stored = normalize_reference(obligation.payment_reference)
        if stored in reference or reference in stored:
            return True
        parsed = self.codec.parse(reference)
        if parsed is not None and stored.upper().startswith(parsed.stem):
            return True
        return fuzz.partial_ratio(reference, stored) >= PARTIAL_REFERENCE_RATIO

    def _payer_matches(self, payer: str, obligation: PaymentObligation) -> bool:
        return payer_matches_student(
            payer, obligation.student_id, obligation.student_name, self.settings.payer_similarity,
        )

    def _amount_matches(self, amount: int, obligation: PaymentObligation) -> bool:
        tolerance = self.settings.amount_tolerance
        if abs(amount - obligation.expected_amount) <= tolerance:
            return True
        outstanding = obligation.outstanding_amount
        return outstanding > 0 and abs(amount - outstanding) <= tolerance

    def _date_points(self, paid_date: Optional[date], due_date: Optional[date]) -> int:
        if paid_date is None or due_date is None:
            return 0
        window = self.settings.date_window_days
        distance = abs((paid_date - due_date).days)
        if distance >= window:
            return 0
        return (WEIGHT_DATE_PROXIMITY * (window - distance) + window // 2) // window

    def score(self, transaction: PaymentTransaction, obligation: PaymentObligation) -> Optional[MatchCandidate]:
        """Score one pairing.

        Returns:
            MatchCandidate, or None when the score is below the relevance floor.
        """
        reference = normalize_reference(transaction.reference)
        if self._is_exact_reference(reference, obligation):
            return MatchCandidate(
                obligation_id=obligation.id,
                score=1.0,
                reasons=[ReasonCode.EXACT_REFERENCE],
                due_date=obligation.due_date,
                payment_reference=obligation.payment_reference,
            )

        points = 0
        reasons: List[ReasonCode] = []
        if self._amount_matches(transaction.amount, obligation):
            points += WEIGHT_AMOUNT
            reasons.append(ReasonCode.AMOUNT_MATCH)
        if transaction.student_hint and (
            normalize_identifier(transaction.student_hint) == normalize_identifier(obligation.student_id)
        ):
            points += WEIGHT_STUDENT_HINT
            reasons.append(ReasonCode.STUDENT_HINT_MATCH)
        if self._is_partial_reference(reference, obligation):
            points += WEIGHT_REFERENCE_PARTIAL
            reasons.append(ReasonCode.REFERENCE_PARTIAL_MATCH)
        if transaction.item_hint and transaction.item_hint == obligation.payment_item_id:
            points += WEIGHT_ITEM_HINT
            reasons.append(ReasonCode.ITEM_HINT_MATCH)
        if self._payer_matches(transaction.normalized_payer_name, obligation):
            points += WEIGHT_PAYER_HINT
            reasons.append(ReasonCode.PAYER_HINT_MATCH)
        date_points = self._date_points(transaction.paid_date, obligation.due_date)
        if date_points:
            points += date_points
            reasons.append(ReasonCode.DATE_PROXIMITY_MATCH)

        points = min(points, FULL_SCORE)
        if points < round(self.settings.min_relevance * 100):
            return None
        return MatchCandidate(
            obligation_id=obligation.id,
            score=points / 100,
            reasons=reasons,
            due_date=obligation.due_date,
            payment_reference=obligation.payment_reference,
        )

    def rank(self, candidates: List[MatchCandidate]) -> List[MatchCandidate]:
        """Order by confidence desc, then due date, then payment reference."""
        return sorted(
            candidates,
            key=lambda c: (-c.score, c.due_date or date.max, c.payment_reference, c.obligation_id),
        )

    def classify(self, candidates: List[MatchCandidate]) -> MatchOutcome:
        """Decide whether a ranked candidate list is auto-approvable.

        Args:
            candidates: Candidates ordered as returned by rank().

        Returns:
            MatchOutcome describing no_candidate, auto_approve or review.
        """
        if not candidates:
            return MatchOutcome(kind=OutcomeKind.NO_CANDIDATE)

        best = candidates[0]
        ambiguous = False
        if len(candidates) > 1:
            gap = round(best.score * 100) - round(candidates[1].score * 100)
            ambiguous = gap <= round(self.settings.ambiguity_delta * 100)

        eligible = [c for c in candidates if self._auto_approvable(c)]
        if len(eligible) == 1 and eligible[0] is best:
            return MatchOutcome(kind=OutcomeKind.AUTO_APPROVE, best=best, candidates=candidates)
        return MatchOutcome(
            kind=OutcomeKind.REVIEW,
            best=best,
            candidates=candidates,
            ambiguous=ambiguous,
        )

    def _auto_approvable(self, candidate: MatchCandidate) -> bool:
        if round(candidate.score * 100) < round(self.settings.auto_approve_floor * 100):
            return False
        if self.settings.require_exact_reference:
            return ReasonCode.EXACT_REFERENCE in candidate.reasons
        return True


class MatchingEngine:
    """Gathers candidate obligations from storage and scores them."""

    def __init__(
        self,
        session: AsyncSession,
        settings: ReconciliationSettings,
        codec: ReferenceCodec,
    ):
        self.session = session
        self.settings = settings
        self.codec = codec
        self.scorer = MatchScorer(settings, codec)
        self.obligations = ObligationRepository(session)

    async def _payer_students(self, payer: str) -> List[str]:
        if not payer:
            return []
        threshold = self.settings.payer_similarity
        return [
            student_id
            for student_id, student_name in await self.obligations.list_open_student_identities()
            if payer_matches_student(payer, student_id, student_name, threshold)
        ]

    async def gather(self, transaction: PaymentTransaction) -> Dict[str, PaymentObligation]:
        """Collect plausible obligations for a transaction, keyed by id."""
        found: Dict[str, PaymentObligation] = {}

        def add(obligations):
            for obligation in obligations:
                found.setdefault(obligation.id, obligation)

        reference = transaction.reference.strip()
        if reference:
            exact = await self.obligations.get_by_reference(reference)
            if exact is not None:
                add([exact])
            parsed = self.codec.parse(reference)
            if parsed is not None:
                add(await self.obligations.list_by_reference_stem(parsed.stem))
            if len(reference) >= MIN_PARTIAL_REFERENCE_LENGTH:
                add(await self.obligations.list_referenced_in(reference))

        if transaction.student_hint:
            add(await self.obligations.list_by_students([transaction.student_hint]))
        if transaction.item_hint:
            add(await self.obligations.list_by_item(transaction.item_hint))

        add(await self.obligations.list_open_by_amount(transaction.amount, self.settings.amount_tolerance))

        payer_students = await self._payer_students(transaction.normalized_payer_name)
        if payer_students:
            add(await self.obligations.list_by_students(payer_students))

        return found

    async def match(self, transaction: PaymentTransaction) -> List[MatchCandidate]:
        """Score every gathered obligation and keep the relevant ones.

        Returns:
            Candidates ordered by confidence desc, due date, payment reference,
            capped at the configured candidate limit.
        """
        gathered = await self.gather(transaction)
        scored = []
        for obligation in gathered.values():
            candidate = self.scorer.score(transaction, obligation)
            if candidate is not None:
                scored.append(candidate)
        ranked = self.scorer.rank(scored)

        logger.debug(
            f"Transaction {transaction.id}: {len(gathered)} gathered, "
            f"{len(ranked)} relevant, best "
            f"{ranked[0].score if ranked else 'none'}"
        )
        return ranked[:self.settings.max_candidates]
