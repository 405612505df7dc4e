"""Database module for reconciliation persistence."""

from .models import (
    Base,
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
    ReasonCode,
    EventAction,
    normalize_reason_codes,
    utcnow,
)
from .session import (
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
    get_db_context,
    DatabaseManager,
)
from .repository import (
    PaymentItemRepository,
    ObligationRepository,
    TransactionRepository,
    MatchRepository,
    ExceptionRepository,
    EventRepository,
)

__all__ = [
    # Models
    "Base",
    "PaymentItem",
    "PaymentObligation",
    "PaymentTransaction",
    "PaymentMatch",
    "ReconciliationException",
    "ReconciliationEvent",
    "ObligationStatus",
    "TransactionStatus",
    "MatchDecision",
    "ExceptionStatus",
    "ReasonCode",
    "EventAction",
    "normalize_reason_codes",
    "utcnow",
    # Session management
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    "get_db_context",
    "DatabaseManager",
    # Repositories
    "PaymentItemRepository",
    "ObligationRepository",
    "TransactionRepository",
    "MatchRepository",
    "ExceptionRepository",
    "EventRepository",
]
