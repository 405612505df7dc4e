"""Environment-driven settings for the reconciliation engine."""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


class ReconciliationSettings(BaseModel):
    """Tunable reconciliation policy and reference generation settings.

    Amounts are minor units. Confidence thresholds are in [0, 1].
    """
    reference_secret: str = Field(default="paymatch-dev-secret", description="Key for reference digests")
    tenant_id: str = Field(default="default-school", description="Tenant scope mixed into reference digests")
    reference_prefix: str = Field(default="PAYREF", description="Human-legible reference prefix")
    max_reference_attempts: int = Field(default=8, ge=1, le=12)
    amount_tolerance: int = Field(default=1, ge=0, description="Amount tolerance in minor units")
    auto_approve_floor: float = Field(default=1.0, ge=0.0, le=1.0)
    require_exact_reference: bool = Field(
        default=True,
        description="Auto-approve only candidates carrying exact_reference",
    )
    min_relevance: float = Field(default=0.30, ge=0.0, le=1.0)
    ambiguity_delta: float = Field(default=0.05, ge=0.0, le=1.0)
    date_window_days: int = Field(default=30, ge=1)
    payer_similarity: int = Field(default=85, ge=0, le=100, description="rapidfuzz score threshold")
    max_candidates: int = Field(default=5, ge=1, le=50, description="Candidates kept per transaction")
    gateway_source: str = Field(default="paystack")

    @classmethod
    def from_env(cls, **overrides) -> "ReconciliationSettings":
        """Build settings from PAYMATCH_* environment variables.

        Args:
            **overrides: Explicit values that win over the environment.

        Returns:
            ReconciliationSettings instance.
        """
        values = {}
        string_vars = {
            "reference_secret": "PAYMATCH_REFERENCE_SECRET",
            "tenant_id": "PAYMATCH_TENANT_ID",
            "reference_prefix": "PAYMATCH_REFERENCE_PREFIX",
            "gateway_source": "PAYMATCH_GATEWAY_SOURCE",
        }
        numeric_vars = {
            "max_reference_attempts": "PAYMATCH_MAX_REFERENCE_ATTEMPTS",
            "amount_tolerance": "PAYMATCH_AMOUNT_TOLERANCE",
            "auto_approve_floor": "PAYMATCH_AUTO_APPROVE_FLOOR",
            "min_relevance": "PAYMATCH_MIN_RELEVANCE",
            "ambiguity_delta": "PAYMATCH_AMBIGUITY_DELTA",
            "date_window_days": "PAYMATCH_DATE_WINDOW_DAYS",
            "payer_similarity": "PAYMATCH_PAYER_SIMILARITY",
            "max_candidates": "PAYMATCH_MAX_CANDIDATES",
        }
        for field_name, env_name in {**string_vars, **numeric_vars}.items():
            raw = os.getenv(env_name)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()
        values["require_exact_reference"] = _env_bool("PAYMATCH_REQUIRE_EXACT_REFERENCE", True)
        values.update(overrides)

        if "reference_secret" not in values:
            logger.warning("PAYMATCH_REFERENCE_SECRET is not set; using the development secret")
        return cls(**values)


_settings: Optional[ReconciliationSettings] = None


def get_settings() -> ReconciliationSettings:
    """Return process-wide settings, loading them from the environment once."""
    global _settings
    if _settings is None:
        _settings = ReconciliationSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
