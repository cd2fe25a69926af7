"""
Transaction recognizer: turns line-oriented statement text into transactions.

Two strategies, tried in order:

1. Line patterns: one transaction per line, matched by a composite
   ``date description amount [balance]`` regex.
2. Windowed: only when (1) finds nothing in the whole document. A bare date
   token opens a candidate and the next lines are scanned for amounts.

Bank layouts are data: each row of ``BANK_PATTERNS`` is a ``BankPatternSet``
and the generic row is the default. Callers with their own layout knowledge
pass their own pattern set.
"""
from __future__ import annotations
import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Pattern, Tuple

from core.logger import get_logger
from ingestion.fields import categorize_transaction, normalize_date
from models.schema import UNKNOWN, Transaction, sort_by_date

log = get_logger("ingestion/recognizer")

# (category, confidence) per description, same order as the input
CategoryResult = Tuple[str, Optional[float]]
Categorizer = Callable[[List[str]], List[CategoryResult]]

DATE_TOKEN = r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}"
AMOUNT_TOKEN = r"-?\$?-?\d[\d,]*\.\d{2}"
BALANCE_TOKEN = r"\$?\d[\d,]*\.\d{2}"
LOOKAHEAD_LINES = 2


def build_line_pattern(date_token: str, amount_token: str = AMOUNT_TOKEN, balance_token: str = BALANCE_TOKEN) -> Pattern:
    """Composite single-line pattern with named groups date/description/amount/balance."""
    return re.compile(
        rf"^\s*(?P<date>{date_token})\s+(?P<description>.+?)\s+(?P<amount>{amount_token})"
        rf"(?:\s+(?P<balance>{balance_token}))?\s*$"
    )


@dataclass(frozen=True)
class BankPatternSet:
    """Regexes describing one statement layout."""
    name: str
    date_pattern: Pattern
    amount_pattern: Pattern
    line_pattern: Pattern


BANK_PATTERNS: Dict[str, BankPatternSet] = {
    "generic": BankPatternSet(
        name="Generic Bank",
        date_pattern=re.compile(DATE_TOKEN),
        amount_pattern=re.compile(rf"(?<![\w.]){AMOUNT_TOKEN}(?!\d)"),
        line_pattern=build_line_pattern(DATE_TOKEN),
    ),
}

DEFAULT_PATTERNS = BANK_PATTERNS["generic"]


@dataclass
class _Candidate:
    date: str
    description: str
    amount: float
    balance: Optional[float]


def parse_amount(raw: Optional[str]) -> Optional[float]:
    """Signed float from an amount token; None when it is not a finite number."""
    if not raw:
        return None
    cleaned = re.sub(r"[\$,\s]", "", raw)
    try:
        value = float(cleaned)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def heuristic_categorizer(descriptions: List[str]) -> List[CategoryResult]:
    return [(categorize_transaction(d), None) for d in descriptions]


def recognize_line_patterns(text: str, patterns: BankPatternSet = DEFAULT_PATTERNS) -> List[_Candidate]:
    """Primary strategy: one candidate per fully matching line."""
    candidates: List[_Candidate] = []
    skipped = 0

    for line in (text or "").splitlines():
        match = patterns.line_pattern.match(line)
        if not match:
            continue

        raw_date = (match.group("date") or "").strip()
        description = (match.group("description") or "").strip()
        raw_amount = match.group("amount")
        if not raw_date or not description or not raw_amount:
            skipped += 1
            continue

        amount = parse_amount(raw_amount)
        if amount is None:
            skipped += 1
            log.debug(f"Skipping line with unparseable amount: amount='{raw_amount}'")
            continue

        balance = parse_amount(match.groupdict().get("balance"))
        candidates.append(_Candidate(raw_date, description, amount, balance))

    log.debug(f"Line-pattern strategy: candidates={len(candidates)} skipped={skipped} patterns={patterns.name}")
    return candidates


def recognize_windowed(text: str, patterns: BankPatternSet = DEFAULT_PATTERNS) -> List[_Candidate]:
    """
    Alternative strategy for layouts that spread a transaction over lines.

    A line holding a date token opens a candidate; that line and up to
    LOOKAHEAD_LINES following lines are scanned for the first one carrying
    amount tokens (first token = amount, second = balance). Text of lines
    without amounts accumulates into the description. A following line that
    opens its own dated entry ends the window.
    """
    lines = (text or "").splitlines()
    candidates: List[_Candidate] = []

    for i, line in enumerate(lines):
        date_match = patterns.date_pattern.search(line)
        if not date_match:
            continue

        raw_date = date_match.group(0)
        buffer: List[str] = []
        amount: Optional[float] = None
        balance: Optional[float] = None

        for j in range(0, LOOKAHEAD_LINES + 1):
            if i + j >= len(lines):
                break
            current = lines[i + j]
            if j > 0 and patterns.date_pattern.search(current):
                break

            stripped = current.replace(raw_date, "", 1) if j == 0 else current
            tokens = patterns.amount_pattern.findall(stripped)
            if tokens:
                amount = parse_amount(tokens[0])
                if len(tokens) > 1:
                    balance = parse_amount(tokens[1])
                rest = patterns.amount_pattern.sub("", stripped).strip()
                if rest:
                    buffer.append(rest)
                break

            rest = stripped.strip()
            if rest:
                buffer.append(rest)

        description = " ".join(" ".join(buffer).split())
        if amount is None or amount == 0 or not description:
            continue
        candidates.append(_Candidate(raw_date, description, amount, balance))

    log.debug(f"Windowed strategy: candidates={len(candidates)} patterns={patterns.name}")
    return candidates


def recognize_transactions(
    text: str,
    patterns: Optional[BankPatternSet] = None,
    categorizer: Optional[Categorizer] = None,
    currency: str = UNKNOWN,
) -> List[Transaction]:
    """
    Recognize, categorize and sort the transactions in a statement's text.

    The windowed strategy only runs when the line-pattern strategy yields
    nothing for the whole document. An empty list is a valid result.

    Args:
        text: Full statement text, one visual line per text line
        patterns: Layout to use (default: the generic row of BANK_PATTERNS)
        categorizer: Batch categorizer; heuristic keywords when omitted
        currency: Currency code stamped on every transaction
    """
    patterns = patterns or DEFAULT_PATTERNS
    categorizer = categorizer or heuristic_categorizer

    candidates = recognize_line_patterns(text, patterns)
    strategy = "line_patterns"
    if not candidates:
        candidates = recognize_windowed(text, patterns)
        strategy = "windowed"

    if not candidates:
        log.info(f"No transactions recognized: patterns={patterns.name}")
        return []

    categories = categorizer([c.description for c in candidates])

    transactions: List[Transaction] = []
    for cand, (category, confidence) in zip(candidates, categories):
        try:
            transactions.append(Transaction(
                date=normalize_date(cand.date),
                description=cand.description,
                amount=abs(cand.amount),
                type="debit" if cand.amount < 0 else "credit",
                currency=currency,
                category=category,
                confidence=confidence,
                balance=cand.balance,
            ))
        except ValueError as e:
            # pydantic.ValidationError subclasses ValueError
            log.debug(f"Dropping malformed candidate: description='{cand.description}' error={e}")

    log.info(f"Recognized transactions: strategy={strategy} count={len(transactions)} patterns={patterns.name}")
    return sort_by_date(transactions)
