"""Paystack payload normalization and webhook signature verification.

The engine never talks to the gateway. An external receiver verifies the
webhook signature with verify_paystack_signature() and hands the parsed
payload to normalize_paystack_event() to obtain a TransactionCandidate.
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Mapping, Optional, Union

from ..database import utcnow
from ..exceptions import MalformedCandidateError
from .models import TransactionCandidate
from .normalization import parse_timestamp

logger = logging.getLogger(__name__)

PAYSTACK_SOURCE = "paystack"
CHARGE_SUCCESS = "charge.success"
UNKNOWN_PAYER = "unknown payer"


def verify_paystack_signature(
    raw_body: Union[bytes, str],
    signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """Check an ``x-paystack-signature`` header against the raw request body.

    Args:
        raw_body: Exact request body bytes.
        signature: Hex HMAC-SHA512 from the header.
        secret: Paystack secret key.

    Returns:
        True only if the signature is present and matches.
    """
    provided = str(signature or "").strip().lower()
    key = str(secret or "").strip()
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    if not provided or not key or not raw_body:
        return False
    expected = hmac.new(key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, provided)


def parse_metadata(raw: Any) -> Dict[str, Any]:
    """Paystack metadata arrives as an object or a JSON-encoded string."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring metadata that is not valid JSON")
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def extract_payer_name(data: Mapping[str, Any], metadata: Mapping[str, Any]) -> str:
    """Customer full name, then customer name, student metadata, email."""
    customer = data.get("customer") if isinstance(data.get("customer"), Mapping) else {}
    full = " ".join(
        part for part in (
            str(customer.get("first_name") or "").strip(),
            str(customer.get("last_name") or "").strip(),
        ) if part
    )
    for value in (
        full,
        customer.get("name"),
        metadata.get("student_name"),
        metadata.get("student_id"),
        metadata.get("student"),
        customer.get("email"),
    ):
        text = str(value or "").strip()
        if text:
            return text
    return UNKNOWN_PAYER


def build_source_event_id(payload: Mapping[str, Any], data: Mapping[str, Any]) -> str:
    """``paystack-<event>-<id>`` using the first stable identifier available."""
    event_name = str(payload.get("event") or CHARGE_SUCCESS).strip().lower()
    token = payload.get("id") or payload.get("event_id") or data.get("id") or data.get("reference")
    if not token:
        encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        token = hashlib.sha256(encoded).hexdigest()[:40]
    return f"paystack-{event_name}-{str(token).strip()[:120]}"[:160]


def normalize_paystack_event(
    payload: Mapping[str, Any],
    source: str = PAYSTACK_SOURCE,
) -> Optional[TransactionCandidate]:
    """Convert a verified Paystack event into a transaction candidate.

    Args:
        payload: Parsed webhook or verify response body.
        source: Source name recorded on the transaction.

    Returns:
        TransactionCandidate, or None for events other than charge.success.

    Raises:
        MalformedCandidateError: If the payload has no transaction reference.
    """
    event_name = str(payload.get("event") or CHARGE_SUCCESS).strip().lower()
    if event_name != CHARGE_SUCCESS:
        logger.info(f"Ignoring Paystack event {event_name}")
        return None

    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}
    metadata = parse_metadata(data.get("metadata"))

    gateway_reference = str(data.get("reference") or "").strip()[:120]
    if not gateway_reference:
        raise MalformedCandidateError("reference", "Paystack payload has no transaction reference")

    amount = data.get("amount")
    try:
        # Paystack reports kobo, already minor units
        amount = int(amount) if amount is not None else None
    except (TypeError, ValueError):
        amount = None

    paid_at = parse_timestamp(
        data.get("paid_at") or data.get("paidAt") or data.get("created_at") or data.get("transaction_date")
    ) or utcnow()

    reference = str(metadata.get("payment_reference") or gateway_reference).strip()[:120]
    student_hint = str(metadata.get("student_id") or metadata.get("student") or "").strip() or None
    item_hint = str(metadata.get("payment_item_id") or "").strip() or None

    return TransactionCandidate(
        source=source,
        source_event_id=build_source_event_id(payload, data),
        reference=reference,
        amount=amount,
        paid_at=paid_at,
        payer_name=extract_payer_name(data, metadata),
        student_hint=student_hint,
        item_hint=item_hint,
        raw_payload=dict(payload),
    )
