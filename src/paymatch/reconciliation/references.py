"""Deterministic payment reference generation and parsing.

A reference looks like ``PAYREF-0042-JDOE2024-9F1C0A7B3E5D21`` for the first
attempt and gains a digest-derived suffix on retries
(``PAYREF-0042-JDOE2024-9F1C0A7B3E5D21-9F1C0``). Every attempt for the same
obligation shares the ``PREFIX-ITEM-STUDENT-`` stem, which is what reverse
lookup keys on.
"""

import hashlib
import hmac
import re
from typing import List, Optional

from pydantic import BaseModel, Field

from ..config import ReconciliationSettings

MAX_REFERENCE_LENGTH = 120
MIN_ATTEMPTS = 1
MAX_ATTEMPTS = 12
DIGEST_LENGTH = 14

_NON_ALNUM = re.compile(r"[^A-Z0-9]")
_REFERENCE_PATTERN = re.compile(
    r"^(?P<prefix>[A-Z0-9]{1,10})-(?P<item>[A-Z0-9]{1,12})-(?P<student>[A-Z0-9]{1,8})"
    r"-(?P<digest>[0-9A-F]{14})(?:-(?P<suffix>[0-9A-F]{5,8}))?$"
)


def _alnum_upper(value: object) -> str:
    return _NON_ALNUM.sub("", str(value or "").strip().upper())


def clamp_attempts(max_attempts: object) -> int:
    """Clamp a requested attempt count to [1, 12]; unparseable input means 1."""
    try:
        attempts = int(max_attempts)
    except (TypeError, ValueError):
        return MIN_ATTEMPTS
    return max(MIN_ATTEMPTS, min(MAX_ATTEMPTS, attempts))


class ParsedReference(BaseModel):
    """The components of a generated reference."""
    prefix: str = Field(..., description="Reference prefix")
    item_token: str = Field(..., description="Item token")
    student_token: str = Field(..., description="Student token")
    digest: str = Field(..., description="Keyed digest of the first attempt")
    suffix: Optional[str] = Field(None, description="Retry suffix, absent on attempt 0")

    @property
    def stem(self) -> str:
        """Attempt-independent prefix shared by every reference of one obligation."""
        return f"{self.prefix}-{self.item_token}-{self.student_token}-"

    @property
    def is_retry(self) -> bool:
        return self.suffix is not None


class ReferenceCodec:
    """Keyed, deterministic reference codec.

    The digest is an HMAC over the tenant, the item and student tokens and the
    attempt number, so references cannot be forged without the secret and two
    tenants never collide.
    """

    def __init__(self, secret: str, tenant_id: str = "default-school", prefix: str = "PAYREF"):
        """Initialize the codec.

        Args:
            secret: HMAC key.
            tenant_id: Tenant scope mixed into every digest.
            prefix: Human-legible prefix; reduced to [A-Z0-9] and 10 chars.
        """
        if not secret:
            raise ValueError("Reference secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.tenant_id = str(tenant_id or "default-school")
        self.prefix = _alnum_upper(prefix)[:10] or "PAYREF"

    @classmethod
    def from_settings(cls, settings: ReconciliationSettings) -> "ReferenceCodec":
        return cls(
            secret=settings.reference_secret,
            tenant_id=settings.tenant_id,
            prefix=settings.reference_prefix,
        )

    @staticmethod
    def item_token(item_id: object) -> str:
        token = _alnum_upper(item_id)
        if token.isdigit():
            return str(int(token)).zfill(4)
        return token[:8] or "0000"

    @staticmethod
    def student_token(student_id: object) -> str:
        return _alnum_upper(student_id)[:8] or "STUDENT"

    def _digest(self, item_id: object, student_id: object, attempt: int) -> str:
        message = f"{self.tenant_id}|{_alnum_upper(item_id)}:{_alnum_upper(student_id)}|{attempt}"
        mac = hmac.new(self._secret, message.encode("utf-8"), hashlib.sha256)
        return mac.hexdigest()[:DIGEST_LENGTH].upper()

    def generate(self, item_id: object, student_id: object, attempt: int = 0) -> str:
        """Generate the reference for one obligation and attempt.

        Args:
            item_id: Payment item identifier.
            student_id: Student identifier.
            attempt: Attempt number, 0 for the canonical reference.

        Returns:
            Reference string of at most 120 characters.
        """
        attempt = max(0, int(attempt or 0))
        digest = self._digest(item_id, student_id, attempt)
        reference = f"{self.prefix}-{self.item_token(item_id)}-{self.student_token(student_id)}-{digest}"
        if attempt:
            reference = f"{reference}-{digest[:min(4 + attempt, 8)]}"
        return reference[:MAX_REFERENCE_LENGTH]

    def generate_candidates(self, item_id: object, student_id: object, max_attempts: object = 8) -> List[str]:
        """All references for attempts ``0 .. n-1`` with ``n`` clamped to [1, 12]."""
        return [
            self.generate(item_id, student_id, attempt)
            for attempt in range(clamp_attempts(max_attempts))
        ]

    def parse(self, reference: Optional[str]) -> Optional[ParsedReference]:
        """Split a reference into its components.

        Returns:
            ParsedReference, or None if the text is not shaped like a
            generated reference or its suffix disagrees with its digest.
        """
        text = str(reference or "").strip().upper()
        if not text or len(text) > MAX_REFERENCE_LENGTH:
            return None
        found = _REFERENCE_PATTERN.match(text)
        if not found:
            return None
        digest, suffix = found.group("digest"), found.group("suffix")
        if suffix and not digest.startswith(suffix):
            # suffixes are taken from the same attempt's digest
            return None
        return ParsedReference(
            prefix=found.group("prefix"),
            item_token=found.group("item"),
            student_token=found.group("student"),
            digest=digest,
            suffix=suffix,
        )

    def matches(
        self,
        reference: Optional[str],
        item_id: object,
        student_id: object,
        max_attempts: object = 8,
    ) -> bool:
        """Check whether a reference was generated for this item and student."""
        text = str(reference or "").strip().upper()
        if not text:
            return False
        return text in self.generate_candidates(item_id, student_id, max_attempts)
