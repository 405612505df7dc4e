"""Reconciliation module for student payments.

This module reconciles incoming payment evidence (statement rows, gateway
events) against expected student payment obligations.

Features:
- Deterministic keyed payment references with retry attempts
- Exactly-once ingestion with content-level duplicate detection
- Deterministic confidence scoring with a closed reason vocabulary
- Automatic approval, review routing and manual resolution with audit events
- Review queue with filters, assignment and bulk actions
"""

from .models import (
    TransactionCandidate,
    AdmitResult,
    MatchCandidate,
    MatchOutcome,
    OutcomeKind,
    ResolutionAction,
    ResolutionOutcome,
    ResolutionResult,
    BulkResolutionItem,
    BulkResolutionReport,
    ExceptionRow,
    ReconciliationSummary,
)
from .references import ReferenceCodec, ParsedReference
from .ingestion import IngestionGate
from .matcher import MatchScorer, MatchingEngine
from .policy import DecisionPolicy
from .queue import ExceptionQueue
from .gateway import normalize_paystack_event, verify_paystack_signature
from .service import ReconciliationService
from .report import ReportGenerator

__all__ = [
    # Models
    "TransactionCandidate",
    "AdmitResult",
    "MatchCandidate",
    "MatchOutcome",
    "OutcomeKind",
    "ResolutionAction",
    "ResolutionOutcome",
    "ResolutionResult",
    "BulkResolutionItem",
    "BulkResolutionReport",
    "ExceptionRow",
    "ReconciliationSummary",
    # Core Components
    "ReferenceCodec",
    "ParsedReference",
    "IngestionGate",
    "MatchScorer",
    "MatchingEngine",
    "DecisionPolicy",
    "ExceptionQueue",
    "ReconciliationService",
    "ReportGenerator",
    # Gateway
    "normalize_paystack_event",
    "verify_paystack_signature",
]
