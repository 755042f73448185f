"""
Statement descriptor policy.

Varies the descriptor across retries: issuers that soft-block a merchant
descriptor after a decline often let a differently worded one through.
"""
from typing import Optional

from billing_engine.core.config import MAX_DESCRIPTOR_LENGTH, BillingConfig
from billing_engine.core.exceptions import ValidationError

SOFT_BLOCK_CATEGORIES = frozenset({"do_not_honor", "activity_limit"})


def validate_base(descriptor: str) -> str:
    """Validate an operator-supplied descriptor base."""
    value = (descriptor or "").strip()
    if not value or len(value) > MAX_DESCRIPTOR_LENGTH:
        raise ValidationError(
            f"Descriptor must be {MAX_DESCRIPTOR_LENGTH} characters or less"
        )
    return value


class DescriptorPolicy:
    """Builds the statement descriptor for a charge attempt."""

    def __init__(self, config: BillingConfig):
        self.config = config

    @property
    def base(self) -> str:
        return self.config.descriptor_base

    def suffix_for(self, attempt: int, category: Optional[str] = None, card_brand: Optional[str] = None) -> str:
        """
        Pick the suffix for an attempt.

        Args:
            attempt: Retry attempt number (0 for the first charge)
            category: Decline category of the previous failure, if any
            card_brand: Reserved for per-brand variations

        Returns:
            Suffix text, empty when the base is used unchanged
        """
        suffixes = self.config.descriptor_suffixes

        if attempt >= self.config.max_retries - 1:
            return suffixes.get("final_retry", "")
        if category in SOFT_BLOCK_CATEGORIES:
            return suffixes.get("soft_block", "")
        if category == "insufficient_funds":
            return suffixes.get("insufficient_funds", "")
        return ""

    def compose(self, suffix: str) -> str:
        """Join base and suffix, trimming the base so the result fits 22 characters."""
        suffix = suffix[:MAX_DESCRIPTOR_LENGTH]
        room = MAX_DESCRIPTOR_LENGTH - len(suffix)
        return f"{self.base[:room].rstrip()}{suffix}"

    def build(self, attempt: int, category: Optional[str] = None, card_brand: Optional[str] = None) -> str:
        return self.compose(self.suffix_for(attempt, category, card_brand))
