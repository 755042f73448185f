"""
Decline classifier.

Maps a gateway processor response code (and, as a fallback, its free text)
to a decline category, a severity, a retry verdict and the follow-up action.

The NO_RETRY_CODES set is consulted by the retry scheduler independently of
the per-code verdict: hard card failures and fraud flags are never retried.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class Severity(Enum):
    """How serious a decline is for recovery purposes."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class DeclineClassification:
    """Result of classifying a gateway response."""

    category: str
    severity: Severity
    retry_recommended: bool
    action_required: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "severity": self.severity.value,
            "retry_recommended": self.retry_recommended,
            "action_required": self.action_required,
        }


def _entry(category: str, severity: Severity, retry: bool, action: str) -> DeclineClassification:
    return DeclineClassification(category, severity, retry, action)


DECLINE_TABLE: Dict[str, DeclineClassification] = {
    "01": _entry("approved", Severity.LOW, False, "none"),
    "05": _entry("do_not_honor", Severity.MEDIUM, True, "retry_with_variation"),
    "14": _entry("invalid_card", Severity.HIGH, False, "update_card"),
    "15": _entry("invalid_issuer", Severity.HIGH, False, "update_card"),
    "41": _entry("lost_card", Severity.HIGH, False, "update_card"),
    "43": _entry("stolen_card", Severity.HIGH, False, "update_card"),
    "51": _entry("insufficient_funds", Severity.LOW, True, "retry_later"),
    "54": _entry("expired_card", Severity.HIGH, False, "update_card"),
    "61": _entry("exceeds_limit", Severity.MEDIUM, True, "retry_smaller_amount"),
    "65": _entry("activity_limit", Severity.MEDIUM, True, "retry_later"),
    "78": _entry("card_not_activated", Severity.HIGH, False, "customer_contact"),
    "85": _entry("fraud_suspected", Severity.HIGH, False, "manual_review"),
    "93": _entry("transaction_not_permitted", Severity.HIGH, False, "manual_review"),
}

UNKNOWN_DECLINE = _entry("unknown", Severity.MEDIUM, True, "retry_with_caution")

# Card must be fixed before another attempt can succeed
CARD_FIX_CODES = frozenset({"14", "15", "41", "43", "54"})

# Needs a human; the subscription is closed
MANUAL_INTERVENTION_CODES = frozenset({"78", "85", "93"})

NO_RETRY_CODES = CARD_FIX_CODES | MANUAL_INTERVENTION_CODES

# Free-text hints for codes the table does not know
_TEXT_HINTS = (
    ("insufficient", DECLINE_TABLE["51"]),
    ("expired", DECLINE_TABLE["54"]),
    ("invalid", DECLINE_TABLE["14"]),
)


def normalize_code(response_code: Optional[str]) -> str:
    """Normalize processor codes so '5' and '05' look up the same entry."""
    code = (response_code or "").strip()
    if code.isdigit() and len(code) == 1:
        code = f"0{code}"
    return code


def classify(response_code: Optional[str], response_text: Optional[str] = None) -> DeclineClassification:
    """
    Classify a gateway response.

    Args:
        response_code: Processor response code (e.g. "51")
        response_text: Free-text response, used only for unknown codes

    Returns:
        DeclineClassification
    """
    code = normalize_code(response_code)
    if code in DECLINE_TABLE:
        return DECLINE_TABLE[code]

    text = (response_text or "").lower()
    for hint, classification in _TEXT_HINTS:
        if hint in text:
            logger.debug(f"Classified unknown code {code!r} from text hint '{hint}'")
            return classification

    return UNKNOWN_DECLINE


def is_no_retry_code(response_code: Optional[str]) -> bool:
    return normalize_code(response_code) in NO_RETRY_CODES


def terminal_status_for(response_code: Optional[str]) -> str:
    """
    Lifecycle status for a decline that will not be retried.

    Manual-intervention codes close the subscription; everything else
    (card-fix codes, exhausted retries) waits for a credential update.
    """
    if normalize_code(response_code) in MANUAL_INTERVENTION_CODES:
        return "canceled"
    return "past_due"
