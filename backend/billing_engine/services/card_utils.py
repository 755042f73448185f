"""
Card and calendar helpers shared by the billing services.

Only display-safe card fields (brand, BIN, last four, expiry) ever leave
these helpers.
"""
import re
from datetime import datetime
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

_NON_DIGITS = re.compile(r"\D")


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")


def card_brand_from_number(card_number: str) -> str:
    """Infer the card brand from a PAN or BIN prefix."""
    num = digits_only(card_number)

    if num.startswith("4"):
        return "visa"
    if len(num) >= 2 and "51" <= num[:2] <= "55":
        return "mastercard"
    if num[:2] in ("34", "37"):
        return "amex"
    if num.startswith("6"):
        return "discover"
    return "unknown"


def brand_from_bin(issuer_bin: Optional[str]) -> str:
    """Brand bucket used by analytics; unknown prefixes report as 'other'."""
    brand = card_brand_from_number(issuer_bin or "")
    return "other" if brand == "unknown" else brand


def parse_expiry(ccexp: str) -> Tuple[int, int]:
    """
    Parse an MMYY expiry string.

    Returns:
        (month, four-digit year)

    Raises:
        ValueError: If the value is not a valid MMYY expiry
    """
    value = digits_only(ccexp)
    if len(value) != 4:
        raise ValueError(f"Expiry must be MMYY, got {len(value)} digits")
    month = int(value[:2])
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid expiry month: {month}")
    return month, 2000 + int(value[2:])


def add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months; relativedelta clamps the day to the target month's length."""
    return dt + relativedelta(months=months)


def advance_by_interval(dt: datetime, interval: str) -> datetime:
    """Move a timestamp forward by one billing interval."""
    if interval == "monthly":
        return dt + relativedelta(months=1)
    if interval == "yearly":
        return dt + relativedelta(years=1)
    raise ValueError(f"Invalid billing interval: {interval}")
