# paymatch package
__version__ = "0.1.0"

from .config import ReconciliationSettings, get_settings
from .exceptions import (
    ReconciliationError,
    MalformedCandidateError,
    InvalidReasonCodeError,
    TransientIngestionError,
    ResolutionConflictError,
    NotFoundError,
    AuditImmutabilityError,
)
from .database import (
    PaymentItem,
    PaymentObligation,
    PaymentTransaction,
    PaymentMatch,
    ReconciliationException,
    ReconciliationEvent,
    TransactionStatus,
    ReasonCode,
    init_db,
    close_db,
    get_db_context,
)

# Reconciliation exports
from .reconciliation import (
    ReconciliationService,
    ReconciliationSummary,
    TransactionCandidate,
    AdmitResult,
    ResolutionAction,
    ReferenceCodec,
    ReportGenerator,
    normalize_paystack_event,
    verify_paystack_signature,
)
