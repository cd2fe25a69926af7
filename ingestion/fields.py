"""
Regex/heuristic extractors for statement metadata fields.

Everything here is a pure function over already-extracted text, so the
extractors double as the offline fallback when no AI or template signal
is available.
"""
from __future__ import annotations
import re
from datetime import date, datetime
from typing import List, Optional, Pattern, Tuple

from core.logger import get_logger
from models.schema import DEFAULT_CATEGORY, UNKNOWN, UNKNOWN_PERIOD

log = get_logger("ingestion/fields")


# Ordered: labelled patterns before generic ones
PERIOD_PATTERNS: List[Pattern] = [
    re.compile(r"Statement\s+Period[:\s]+(.+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"Period[:\s]+(.+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"From\s+(\d{1,2}/\d{1,2}/\d{2,4})\s+to\s+(\d{1,2}/\d{1,2}/\d{2,4})", re.IGNORECASE),
    re.compile(r"(\w+\s+\d{1,2},?\s+\d{4})\s+through\s+(\w+\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
]

_BALANCE_VALUE = r"[:\s]+(-?\$?\d[\d,]*(?:\.\d+)?)"

OPENING_BALANCE_PATTERNS: List[Pattern] = [
    re.compile(label + _BALANCE_VALUE, re.IGNORECASE)
    for label in (r"Beginning\s+Balance", r"Opening\s+Balance", r"Previous\s+Balance", r"Starting\s+Balance")
]

CLOSING_BALANCE_PATTERNS: List[Pattern] = [
    re.compile(label + _BALANCE_VALUE, re.IGNORECASE)
    for label in (r"Ending\s+Balance", r"Closing\s+Balance", r"Current\s+Balance", r"Final\s+Balance")
]

ACCOUNT_NUMBER_PATTERN = re.compile(
    r"(?:Account|Acct)(?:\s+(?:Number|No\.?))?[\s#:]+(\d[\d\-]*\d|\d)", re.IGNORECASE
)

# Full-format layouts tried before the month/day/year split fallback.
# Two-digit years are left to the fallback so the 50-year pivot applies.
DIRECT_DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%B %d %Y",
    "%d %b %Y",
    "%d %B %Y",
]

# Ordered keyword groups, first match wins
CATEGORY_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("Income", ("deposit", "salary", "payroll", "direct dep")),
    ("Food & Dining", ("grocery", "food", "restaurant", "dining")),
    ("Transportation", ("gas", "fuel", "transport", "uber", "lyft")),
    ("Cash & ATM", ("atm", "withdrawal")),
    ("Transfers", ("transfer",)),
    ("Fees & Charges", ("fee", "charge")),
    ("Bills & Utilities", ("payment", "bill", "utility", "electric", "water", "internet")),
    ("Shopping", ("shopping", "store", "amazon", "walmart", "target")),
    ("Healthcare", ("medical", "pharmacy", "doctor", "hospital")),
]

_CURRENCY_CODES = ("USD", "EUR", "GBP", "CAD", "AUD", "NZD", "JPY", "CNY", "INR", "BDT", "CHF", "SGD", "HKD", "MXN", "BRL", "ZAR")
_CURRENCY_CODE_RE = re.compile(r"\b(" + "|".join(_CURRENCY_CODES) + r")\b")

# Unambiguous symbols first; "$" is shared by many currencies and maps to USD last
_CURRENCY_SYMBOL_ORDER = [("€", "EUR"), ("£", "GBP"), ("₹", "INR"), ("¥", "JPY"), ("$", "USD")]


def _clean_number(raw: str) -> Optional[float]:
    """Strip currency symbols and thousands separators; None if not a number."""
    cleaned = re.sub(r"[\$,\s]", "", raw or "")
    try:
        return float(cleaned)
    except ValueError:
        return None


def extract_statement_period(text: str) -> str:
    """
    Return the statement period as ``"start - end"`` or ``"start"``.

    Patterns are tried in order and the first match wins; "Unknown Period"
    when nothing matches.
    """
    for pattern in PERIOD_PATTERNS:
        match = pattern.search(text or "")
        if not match:
            continue
        start = match.group(1).strip()
        end = match.group(2).strip() if pattern.groups >= 2 and match.group(2) else ""
        if not start:
            continue
        return f"{start} - {end}" if end else start
    return UNKNOWN_PERIOD


def _first_balance(text: str, patterns: List[Pattern]) -> Optional[float]:
    for pattern in patterns:
        match = pattern.search(text or "")
        if not match:
            continue
        value = _clean_number(match.group(1))
        if value is not None:
            return value
    return None


def extract_balances(text: str) -> Tuple[Optional[float], Optional[float]]:
    """
    Find the opening and closing balances.

    Each side is searched independently and is None when absent, never 0.
    """
    opening = _first_balance(text, OPENING_BALANCE_PATTERNS)
    closing = _first_balance(text, CLOSING_BALANCE_PATTERNS)
    log.debug(f"Extracted balances: opening={opening} closing={closing}")
    return opening, closing


def extract_account_number(text: str, pattern: Optional[Pattern] = None) -> str:
    """
    Account number from an ``Account``/``Acct`` label, or from a template's
    account pattern when one is given. "Unknown" when undetected.
    """
    regex = pattern or ACCOUNT_NUMBER_PATTERN
    match = regex.search(text or "")
    if not match:
        return UNKNOWN
    value = match.group(1) if regex.groups >= 1 else match.group(0)
    return (value or "").strip() or UNKNOWN


def detect_currency(text: str) -> str:
    """ISO-like currency code from explicit codes, then symbols; "Unknown" otherwise."""
    match = _CURRENCY_CODE_RE.search(text or "")
    if match:
        return match.group(1)
    for symbol, code in _CURRENCY_SYMBOL_ORDER:
        if symbol in (text or ""):
            return code
    return UNKNOWN


def _expand_year(year: int) -> int:
    if year < 100:
        return 2000 + year if year < 50 else 1900 + year
    return year


def normalize_date(raw: str) -> str:
    """
    Normalize a statement date to ISO ``YYYY-MM-DD``.

    Tries the direct formats first, then splits on "/" or "-" assuming
    month/day/year with the two-digit year pivot (``< 50`` is 20xx). If
    nothing parses the input comes back unchanged, which callers detect with
    ``is_iso_date``.
    """
    value = (raw or "").strip()
    if not value:
        return raw

    for fmt in DIRECT_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue

    parts = re.split(r"[/\-]", value)
    if len(parts) == 3 and all(p.strip().isdigit() for p in parts):
        month, day, year = (int(p) for p in parts)
        try:
            return date(_expand_year(year), month, day).isoformat()
        except ValueError:
            pass

    log.debug(f"Failed to normalize date: '{raw}'")
    return raw


def categorize_transaction(description: str) -> str:
    """
    Deterministic keyword categorizer used when no AI or template signal exists.

    >>> categorize_transaction("PAYROLL ACME CORP")
    'Income'
    """
    desc = (description or "").lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in desc for k in keywords):
            return category
    return DEFAULT_CATEGORY
