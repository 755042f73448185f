"""
Unit tests for the decline classifier.
"""
import pytest

from billing_engine.services.decline_classifier import (
    CARD_FIX_CODES,
    MANUAL_INTERVENTION_CODES,
    NO_RETRY_CODES,
    Severity,
    UNKNOWN_DECLINE,
    classify,
    is_no_retry_code,
    normalize_code,
    terminal_status_for,
)


class TestClassify:
    """Static lookup by response code."""

    def test_insufficient_funds_is_low_severity_and_retryable(self):
        result = classify("51", "Insufficient funds")
        assert result.category == "insufficient_funds"
        assert result.severity is Severity.LOW
        assert result.retry_recommended is True

    def test_expired_card_requires_card_update(self):
        result = classify("54")
        assert result.category == "expired_card"
        assert result.severity is Severity.HIGH
        assert result.retry_recommended is False
        assert result.action_required == "update_card"

    @pytest.mark.parametrize("code", ["78", "85"])
    def test_manual_intervention_codes_are_not_retryable(self, code):
        assert classify(code).retry_recommended is False

    def test_do_not_honor_retries_with_variation(self):
        result = classify("05")
        assert result.category == "do_not_honor"
        assert result.action_required == "retry_with_variation"

    def test_unknown_code_falls_back_to_cautious_retry(self):
        assert classify("999", "Something odd") == UNKNOWN_DECLINE
        assert UNKNOWN_DECLINE.severity is Severity.MEDIUM
        assert UNKNOWN_DECLINE.retry_recommended is True
        assert UNKNOWN_DECLINE.action_required == "retry_with_caution"

    def test_missing_code_falls_back(self):
        assert classify(None) == UNKNOWN_DECLINE

    def test_text_hint_used_only_for_unknown_codes(self):
        assert classify("300", "Card Expired").category == "expired_card"
        # A known code wins over the text
        assert classify("51", "expired").category == "insufficient_funds"

    def test_single_digit_code_is_normalized(self):
        assert normalize_code("5") == "05"
        assert classify("5").category == "do_not_honor"

    def test_to_dict_uses_plain_values(self):
        assert classify("51").to_dict() == {
            "category": "insufficient_funds",
            "severity": "low",
            "retry_recommended": True,
            "action_required": "retry_later",
        }


class TestNoRetryList:
    """The hard no-retry list used by the retry scheduler."""

    def test_no_retry_list_covers_card_fix_and_manual_codes(self):
        assert NO_RETRY_CODES == CARD_FIX_CODES | MANUAL_INTERVENTION_CODES
        for code in ("14", "54", "78", "85"):
            assert is_no_retry_code(code)

    @pytest.mark.parametrize("code", ["05", "51", "61", "65", "999", None])
    def test_retryable_codes_are_not_listed(self, code):
        assert not is_no_retry_code(code)

    def test_no_retry_codes_are_never_recommended_for_retry(self):
        for code in NO_RETRY_CODES:
            assert classify(code).retry_recommended is False

    def test_terminal_status(self):
        assert terminal_status_for("54") == "past_due"
        assert terminal_status_for("85") == "canceled"
        assert terminal_status_for("51") == "past_due"
