"""Typed exceptions for the reconciliation engine.

Every exception carries a machine-readable ``code`` class attribute so
callers can branch on type and code instead of parsing messages.

    ReconciliationError
    +-- MalformedCandidateError      MALFORMED_CANDIDATE
    +-- InvalidReasonCodeError       INVALID_REASON_CODE
    +-- TransientIngestionError      TRANSIENT_INGESTION_FAILURE
    +-- ResolutionConflictError      RESOLUTION_CONFLICT
    +-- NotFoundError                NOT_FOUND
    +-- AuditImmutabilityError       AUDIT_IMMUTABLE
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base exception for all reconciliation errors."""

    code: str = "RECONCILIATION_ERROR"


class MalformedCandidateError(ReconciliationError, ValueError):
    """A transaction candidate is missing required fields and was not admitted."""

    code: str = "MALFORMED_CANDIDATE"

    def __init__(self, field: str, detail: Optional[str] = None):
        self.field = field
        message = f"Malformed transaction candidate: {field}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InvalidReasonCodeError(ReconciliationError, ValueError):
    """A reason code outside the closed reason vocabulary."""

    code: str = "INVALID_REASON_CODE"

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Unknown reason code: {value!r}")


class TransientIngestionError(ReconciliationError):
    """A uniqueness conflict persisted after the duplicate re-check."""

    code: str = "TRANSIENT_INGESTION_FAILURE"

    def __init__(self, source: str, checksum: str):
        self.source = source
        self.checksum = checksum
        super().__init__(
            f"Could not admit transaction from {source} (checksum {checksum[:12]}): "
            f"concurrent write conflict did not resolve"
        )


class ResolutionConflictError(ReconciliationError):
    """A manual action is not valid for the transaction's current state."""

    code: str = "RESOLUTION_CONFLICT"

    def __init__(self, transaction_id: str, action: str, reason: str):
        self.transaction_id = transaction_id
        self.action = action
        self.reason = reason
        super().__init__(f"Cannot {action} transaction {transaction_id}: {reason}")


class NotFoundError(ReconciliationError):
    """A referenced record does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class AuditImmutabilityError(ReconciliationError):
    """Code attempted to modify or delete an append-only audit event."""

    code: str = "AUDIT_IMMUTABLE"
