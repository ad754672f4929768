"""
Unit Tests for the Identifier Extractor

Tests:
- Amount extraction (labelled patterns, fallback, balance context)
- Reference priority (URL > label > bare) and suffix normalization
- Direction flags
- Timestamp parsing and UTC conversion
- Counterparty names
- Channel detection and hints
- Payment notification heuristic

Run with: pytest tests/test_identifier_extractor.py -v
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from reconciliation.channel_registry import (
    PaymentChannel, ChannelRegistry, ReferenceNormalizer, AccountSuffixNormalizer
)
from reconciliation.extraction.identifier_extractor import (
    IdentifierExtractor,
    compute_content_hash,
    looks_like_payment_notification,
)


PAYER_SMS = (
    "Dear Customer, You have transferred ETB 100.00 to Jane Doe. "
    "Receipt: https://apps.cbe.com.et/?id=FT123456799999999 Thank you for using CBE."
)
PAYEE_SMS = (
    "Dear Customer, your account 1000123456789 has been credited with ETB 100.00 "
    "from Jane Doe. Ref No FT1234567. Current balance ETB 5,100.00. CBE"
)


@pytest.fixture
def extractor():
    return IdentifierExtractor(registry=ChannelRegistry(), default_timezone="Africa/Addis_Ababa")


class TestAmountExtraction:
    """Amounts from labelled patterns and the numeric fallback."""

    def test_currency_before_number(self, extractor):
        assert extractor.extract_amount("You have sent ETB 1,250.50 to Abebe") == Decimal("1250.50")

    def test_number_before_currency(self, extractor):
        assert extractor.extract_amount("You paid 500 Birr for the merchant") == Decimal("500.00")

    def test_amount_label(self, extractor):
        assert extractor.extract_amount("Transfer done. Amount: 75.5") == Decimal("75.50")

    def test_balance_amount_is_skipped(self, extractor):
        text = "Balance ETB 5,000.00. You have sent ETB 250.00 to Abebe"
        assert extractor.extract_amount(text) == Decimal("250.00")

    def test_standalone_number_fallback(self, extractor):
        assert extractor.extract_amount("payment 320 done") == Decimal("320.00")

    def test_long_digit_runs_are_not_amounts(self, extractor):
        assert extractor.extract_amount("account 1000123456789 updated") is None

    def test_no_amount(self, extractor):
        result = extractor.extract("hello there, how are you")
        assert result.amount is None
        assert "amount_not_found" in result.warnings

    def test_empty_text_never_raises(self, extractor):
        result = extractor.extract("")
        assert result.amount is None
        assert result.warnings == ["empty_text"]


class TestReferenceExtraction:
    """Reference lookup order and channel normalization."""

    def test_url_reference_is_suffix_stripped(self, extractor):
        normalized, raw, source = extractor.extract_reference(PAYER_SMS, PaymentChannel.CBE_BANK)
        assert raw == "FT123456799999999"
        assert normalized == "FT1234567"
        assert source == "URL"

    def test_labelled_reference(self, extractor):
        normalized, raw, source = extractor.extract_reference(PAYEE_SMS, PaymentChannel.CBE_BANK)
        assert normalized == "FT1234567"
        assert source == "LABEL"

    def test_url_wins_over_label(self, extractor):
        text = "Ref No AB12345 https://bank.example/receipt?ref=ZX98765"
        normalized, _raw, source = extractor.extract_reference(text, PaymentChannel.AWASH_BANK)
        assert normalized == "ZX98765"
        assert source == "URL"

    def test_bare_reference(self, extractor):
        normalized, _raw, source = extractor.extract_reference("Payment of 300 Birr done. Code TX9A7B21 thanks")
        assert normalized == "TX9A7B21"
        assert source == "BARE"

    def test_no_reference(self, extractor):
        assert extractor.extract_reference("you sent 100 birr to abebe") is None

    def test_both_sides_normalize_to_same_code(self, extractor):
        payer = extractor.extract(PAYER_SMS)
        payee = extractor.extract(PAYEE_SMS)
        assert payer.reference_code == payee.reference_code == "FT1234567"
        assert payer.raw_reference_code == "FT123456799999999"


class TestReferenceNormalizers:
    """Per-channel normalizers."""

    def test_suffix_normalizer_keeps_numeric_codes(self):
        normalizer = AccountSuffixNormalizer(8)
        assert normalizer.normalize("1234567899999999") == "1234567899999999"

    def test_suffix_normalizer_needs_digit_in_head(self):
        normalizer = AccountSuffixNormalizer(8)
        assert normalizer.normalize("FT12345678") == "FT12345678"

    def test_suffix_normalizer_strips_eight_digits(self):
        normalizer = AccountSuffixNormalizer(8)
        assert normalizer.normalize("ft123456799999999") == "FT1234567"

    def test_normalizer_can_be_swapped(self):
        registry = ChannelRegistry()
        registry.set_normalizer(PaymentChannel.CBE_BANK, ReferenceNormalizer())
        assert registry.normalize_reference(PaymentChannel.CBE_BANK, "FT123456799999999") == "FT123456799999999"


class TestDirectionAndCounterparty:
    """Debit / credit flags and counterparty names."""

    def test_debit(self, extractor):
        assert extractor.extract_direction("You have sent 100 Birr") == (True, False, "DEBIT")

    def test_credit(self, extractor):
        assert extractor.extract_direction("You have received 100 Birr") == (False, True, "CREDIT")

    def test_first_keyword_decides(self, extractor):
        is_debit, is_credit, direction = extractor.extract_direction("You have received 100 Birr sent by Abebe")
        assert is_debit and is_credit
        assert direction == "CREDIT"

    def test_payee_name_on_debit(self, extractor):
        result = extractor.extract(PAYER_SMS)
        assert result.direction == "DEBIT"
        assert result.counterparty_name == "Jane Doe"

    def test_payer_name_on_credit(self, extractor):
        result = extractor.extract(PAYEE_SMS)
        assert result.direction == "CREDIT"
        assert result.counterparty_name == "Jane Doe"


class TestTimestampExtraction:
    """Timestamps are returned in UTC."""

    def test_local_timestamp_converted_to_utc(self, extractor):
        ts = extractor.extract_timestamp("You have sent 100 Birr on 19/10/2026 10:15")
        assert ts == datetime(2026, 10, 19, 7, 15, tzinfo=timezone.utc)

    def test_iso_timestamp(self, extractor):
        ts = extractor.extract_timestamp("Txn at 2026-10-19T07:15:00Z done")
        assert ts == datetime(2026, 10, 19, 7, 15, tzinfo=timezone.utc)

    def test_missing_timestamp(self, extractor):
        assert extractor.extract_timestamp("You have sent 100 Birr") is None


class TestChannelDetection:
    """Channel keywords and caller hints."""

    def test_detects_cbe(self, extractor):
        assert extractor.extract(PAYER_SMS).channel == PaymentChannel.CBE_BANK

    def test_cbe_birr_before_cbe(self, extractor):
        assert extractor.extract_channel("CBE Birr: you have sent 50 Birr") == PaymentChannel.CBE_BIRR

    def test_telebirr(self, extractor):
        assert extractor.extract_channel("telebirr: You have transferred ETB 20.00") == PaymentChannel.TELEBIRR

    def test_hint_wins(self, extractor):
        assert extractor.extract_channel("You have sent 100 Birr", channel_hint="telebirr") == PaymentChannel.TELEBIRR

    def test_unknown(self, extractor):
        assert extractor.extract_channel("You have sent 100 Birr") == PaymentChannel.UNKNOWN


class TestHelpers:
    """Content hash and detection heuristic."""

    def test_content_hash_ignores_whitespace(self):
        assert compute_content_hash("You sent  100\nBirr") == compute_content_hash("You sent 100 Birr")

    def test_content_hash_differs_for_different_text(self):
        assert compute_content_hash("You sent 100 Birr") != compute_content_hash("You sent 200 Birr")

    def test_looks_like_payment(self):
        assert looks_like_payment_notification(PAYER_SMS)
        assert looks_like_payment_notification("Dear Customer, Txn ID 12345 completed")

    def test_chat_text_is_not_payment(self):
        assert not looks_like_payment_notification("when does the next game start?")
        assert not looks_like_payment_notification("")
