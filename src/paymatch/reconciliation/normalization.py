"""Normalization helpers for untrusted payment evidence.

Statement rows and gateway payloads disagree on whitespace, case, date
layout and amount units. Everything that feeds the checksum or the matcher
goes through these helpers first so equal payments normalize equally.
"""

import hashlib
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

MAX_REFERENCE_LENGTH = 120
MAX_SOURCE_LENGTH = 40

_WHITESPACE = re.compile(r"\s+")
_YEAR_FIRST = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_DAY_FIRST = re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$")
_AMOUNT_NOISE = re.compile(r"[,\s_]|^[A-Za-z$€£₦]+")

DateLike = Union[str, date, datetime, None]


def normalize_whitespace(value: object) -> str:
    return _WHITESPACE.sub(" ", str(value or "")).strip()


def normalize_payer_name(value: object) -> str:
    """Collapse whitespace and lower-case a payer name."""
    return normalize_whitespace(value).lower()


def normalize_reference(value: object) -> str:
    """Trim and lower-case a reference, capped at 120 characters."""
    return str(value or "").strip().lower()[:MAX_REFERENCE_LENGTH]


def normalize_identifier(value: object) -> str:
    return str(value or "").strip().lower()


def normalize_source(value: object) -> str:
    return str(value or "").strip().lower()[:MAX_SOURCE_LENGTH]


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_date_token(value: DateLike) -> Optional[date]:
    """Parse a calendar date from the layouts seen in bank statements.

    Accepts ``YYYY-MM-DD``, ``YYYY.MM.DD``, ``YYYY/MM/DD``, ``DD-MM-YYYY``
    (and the same with ``.`` or ``/``), ISO-8601 timestamps, and
    ``date``/``datetime`` objects.

    Returns:
        The date, or None if the value cannot be read as a date.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value).date()
    if isinstance(value, date):
        return value

    token = str(value).strip()
    if not token:
        return None

    dashed = token.replace(".", "-").replace("/", "-")
    for pattern, order in ((_YEAR_FIRST, (0, 1, 2)), (_DAY_FIRST, (2, 1, 0))):
        found = pattern.match(dashed)
        if found:
            parts = found.groups()
            year, month, day = (int(parts[i]) for i in order)
            if year <= 1900:
                return None
            try:
                return date(year, month, day)
            except ValueError:
                return None

    parsed = _parse_iso(token)
    return parsed.date() if parsed else None


def _parse_iso(token: str) -> Optional[datetime]:
    iso = token[:-1] + "+00:00" if token.endswith(("Z", "z")) else token
    try:
        return to_naive_utc(datetime.fromisoformat(iso))
    except ValueError:
        return None


def parse_timestamp(value: DateLike) -> Optional[datetime]:
    """Parse a payment timestamp into a naive UTC datetime.

    ISO-8601 strings (a trailing ``Z`` included) keep their time of day; bare
    dates in any layout accepted by parse_date_token become midnight.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    token = str(value).strip()
    if not token:
        return None
    parsed = _parse_iso(token)
    if parsed is not None:
        return parsed

    if "T" in token or ":" in token:
        return None
    day = parse_date_token(token)
    if day is None:
        return None
    return datetime(day.year, day.month, day.day)


def parse_major_amount(value: object) -> Optional[int]:
    """Convert a major-unit amount (``"22,000.00"``, ``220.5``) to minor units.

    Returns:
        Positive amount in minor units, or None when unreadable or not positive.
    """
    if value is None or isinstance(value, bool):
        return None
    text = _AMOUNT_NOISE.sub("", str(value).strip())
    if not text:
        return None
    try:
        major = Decimal(text)
    except InvalidOperation:
        return None
    if not major.is_finite() or major <= 0:
        return None
    return int((major * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_major_amount(minor: int) -> str:
    """Render minor units as a major-unit string with two decimals."""
    return str((Decimal(int(minor)) / 100).quantize(Decimal("0.01")))


def amounts_match(left: Optional[int], right: Optional[int], tolerance: int = 0) -> bool:
    if left is None or right is None:
        return False
    return abs(int(left) - int(right)) <= tolerance


def build_checksum(
    reference: object,
    amount: int,
    paid_date: DateLike,
    payer_name: object,
    source: object,
) -> str:
    """Content checksum used for duplicate detection across sources.

    SHA-256 over ``reference|amount|YYYY-MM-DD|payer|source`` after
    normalization, with the amount in major units and two decimals.
    """
    day = parse_date_token(paid_date)
    if day is None:
        raise ValueError(f"Cannot build checksum without a paid date: {paid_date!r}")
    key = "|".join([
        normalize_reference(reference),
        format_major_amount(amount),
        day.isoformat(),
        normalize_payer_name(payer_name),
        normalize_source(source),
    ])
    return hashlib.sha256(key.encode("utf-8")).hexdigest()
