"""Tests for Paystack payload normalization and signature checks."""

import hashlib
import hmac
import json
import pytest
from datetime import datetime

from paymatch.database import TransactionStatus
from paymatch.exceptions import MalformedCandidateError
from paymatch.reconciliation import normalize_paystack_event, verify_paystack_signature
from paymatch.reconciliation.gateway import extract_payer_name, parse_metadata


class TestSignature:
    """Tests for webhook signature verification."""

    def sign(self, body: bytes, secret: str) -> str:
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()

    def test_valid_signature(self):
        """Test a correct HMAC-SHA512 signature is accepted."""
        body = b'{"event":"charge.success"}'

        assert verify_paystack_signature(body, self.sign(body, "sk_test"), "sk_test")
        assert verify_paystack_signature(body.decode(), self.sign(body, "sk_test").upper(), "sk_test")

    @pytest.mark.parametrize("signature,secret", [
        ("deadbeef", "sk_test"),
        (None, "sk_test"),
        ("", "sk_test"),
        ("whatever", None),
    ])
    def test_invalid_signature(self, signature, secret):
        """Test missing or wrong signatures are refused."""
        assert not verify_paystack_signature(b"{}", signature, secret)

    def test_tampered_body(self):
        """Test a signature does not carry over to a modified body."""
        signature = self.sign(b'{"amount":100}', "sk_test")

        assert not verify_paystack_signature(b'{"amount":900}', signature, "sk_test")


class TestNormalizeEvent:
    """Tests for normalize_paystack_event."""

    def test_charge_success(self, paystack_payload):
        """Test a successful charge becomes a candidate in minor units."""
        candidate = normalize_paystack_event(paystack_payload)

        assert candidate.source == "paystack"
        assert candidate.source_event_id == "paystack-charge.success-302961"
        assert candidate.reference == "REF-AAA"
        assert candidate.amount == 2200000
        assert candidate.paid_at == datetime(2024, 1, 15, 10, 30)
        assert candidate.payer_name == "Ada Obi"
        assert candidate.student_hint == "std_001"
        assert candidate.item_hint == "item-1"
        assert candidate.raw_payload == paystack_payload

    def test_other_events_ignored(self, paystack_payload):
        """Test non-charge events produce no candidate."""
        paystack_payload["event"] = "transfer.success"

        assert normalize_paystack_event(paystack_payload) is None

    def test_gateway_reference_fallback(self, paystack_payload):
        """Test the gateway reference is used when metadata has none."""
        paystack_payload["data"]["metadata"] = {}

        candidate = normalize_paystack_event(paystack_payload)

        assert candidate.reference == "T123456789"
        assert candidate.student_hint is None

    def test_missing_reference(self, paystack_payload):
        """Test payloads without a reference are malformed."""
        del paystack_payload["data"]["reference"]

        with pytest.raises(MalformedCandidateError) as exc_info:
            normalize_paystack_event(paystack_payload)

        assert exc_info.value.field == "reference"

    def test_event_id_falls_back_to_reference(self, paystack_payload):
        """Test the event id uses the reference when the payload has no id."""
        del paystack_payload["data"]["id"]

        candidate = normalize_paystack_event(paystack_payload)

        assert candidate.source_event_id == "paystack-charge.success-T123456789"

    def test_metadata_json_string(self, paystack_payload):
        """Test metadata delivered as a JSON string is decoded."""
        paystack_payload["data"]["metadata"] = json.dumps({"payment_reference": "REF-BBB"})

        assert normalize_paystack_event(paystack_payload).reference == "REF-BBB"

    def test_parse_metadata_garbage(self):
        """Test undecodable metadata is ignored."""
        assert parse_metadata("{not json") == {}
        assert parse_metadata("[1, 2]") == {}
        assert parse_metadata(None) == {}

    def test_payer_name_fallbacks(self):
        """Test the payer name falls back through customer and metadata fields."""
        assert extract_payer_name({"customer": {"name": "Ada O."}}, {}) == "Ada O."
        assert extract_payer_name({}, {"student_id": "std_001"}) == "std_001"
        assert extract_payer_name({"customer": {"email": "ada@example.com"}}, {}) == "ada@example.com"
        assert extract_payer_name({}, {}) == "unknown payer"

    def test_unreadable_amount_is_rejected_at_admission(self, paystack_payload):
        """Test a non-numeric amount leaves the candidate without an amount."""
        paystack_payload["data"]["amount"] = "lots"

        assert normalize_paystack_event(paystack_payload).amount is None


class TestGatewayAdmission:
    """Tests for admitting gateway candidates end to end."""

    async def test_redelivered_webhook_is_idempotent(self, service, item, obligation, paystack_payload):
        """Test the same webhook delivered twice is admitted once."""
        paystack_payload["data"]["amount"] = 22000
        paystack_payload["data"]["metadata"]["payment_item_id"] = item.id

        first = await service.admit(normalize_paystack_event(paystack_payload))
        again = await service.admit(normalize_paystack_event(paystack_payload))

        assert first.status == TransactionStatus.APPROVED
        assert first.matched_obligation_id == obligation.id
        assert again.idempotent
        assert again.transaction_id == first.transaction_id
        assert obligation.amount_paid_total == 22000
