"""Synthesizes a new bank template from a successful AI extraction."""
from __future__ import annotations
import re
from typing import Dict, List, Optional

from core.config import config as cfg
from core.logger import get_logger
from core.utils import new_template_id, utc_now
from ingestion.fields import detect_currency
from ingestion.recognizer import AMOUNT_TOKEN, BALANCE_TOKEN, DATE_TOKEN, build_line_pattern, recognize_line_patterns
from models.schema import UNKNOWN, StatementRecord
from models.template import (
    AIInstructions,
    BankTemplate,
    ParsingRules,
    TemplateMetadata,
    TransactionIndicators,
)

log = get_logger("templates/builder")

DEFAULT_DATE_FORMATS = ["MM/DD/YYYY", "DD/MM/YYYY", "YYYY-MM-DD"]

DATE_FORMAT_REGEX: Dict[str, str] = {
    "MM/DD/YYYY": r"\d{1,2}/\d{1,2}/\d{4}",
    "DD/MM/YYYY": r"\d{1,2}/\d{1,2}/\d{4}",
    "YYYY-MM-DD": r"\d{4}-\d{1,2}-\d{1,2}",
}

AMOUNT_PATTERNS = [
    r"\$?([\d,]+\.?\d{0,2})",
    r"€([\d,]+\.?\d{0,2})",
    r"£([\d,]+\.?\d{0,2})",
]
DESCRIPTION_PATTERNS = [r"^[A-Z\s\d\-\.]+$"]
BALANCE_PATTERNS = [r"balance.*?[\$\€\£]?([\d,]+\.?\d*)"]
STATEMENT_PERIOD_PATTERN = r"statement period.*?(\d{1,2}/\d{1,2}/\d{4}).*?(\d{1,2}/\d{1,2}/\d{4})"

CREDIT_KEYWORDS = ["deposit", "credit", "transfer in", "salary", "refund"]
DEBIT_KEYWORDS = ["withdrawal", "debit", "purchase", "payment", "fee"]

CURRENCY_REGIONS = {
    "USD": "US",
    "CAD": "CA",
    "GBP": "GB",
    "EUR": "EU",
    "AUD": "AU",
    "NZD": "NZ",
    "INR": "IN",
    "BDT": "BD",
    "JPY": "JP",
    "SGD": "SG",
}

SAMPLE_LENGTH = 500
MAPPING_KEY_LENGTH = 20

_SLASH_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/\d{4}\b")
_ISO_DATE_RE = re.compile(DATE_FORMAT_REGEX["YYYY-MM-DD"])


def date_format_to_regex(fmt: str) -> str:
    """Regex source for a date format name; unknown names map to MM/DD/YYYY."""
    return DATE_FORMAT_REGEX.get(fmt, DATE_FORMAT_REGEX["MM/DD/YYYY"])


def detect_date_formats(text: str) -> List[str]:
    """
    Date formats present in the raw text.

    Slash dates count as day-first only when a leading component exceeds 12
    and as month-first only when a middle one does; otherwise both are kept.
    Falls back to the three defaults when no date is found.
    """
    formats: List[str] = []
    slash_dates = _SLASH_DATE_RE.findall(text or "")
    if slash_dates:
        day_first = any(int(a) > 12 for a, _ in slash_dates)
        month_first = any(int(b) > 12 for _, b in slash_dates)
        if month_first or not day_first:
            formats.append("MM/DD/YYYY")
        if day_first or not month_first:
            formats.append("DD/MM/YYYY")
    if _ISO_DATE_RE.search(text or ""):
        formats.append("YYYY-MM-DD")
    return formats or list(DEFAULT_DATE_FORMATS)


def account_number_pattern(account_number: str) -> str:
    """Regex source matching account numbers shaped like ``account_number``."""
    if not account_number or account_number == UNKNOWN:
        return ""
    return "".join(r"\d" if ch.isdigit() else re.escape(ch) for ch in account_number)


def mask_account_number(account_number: str) -> str:
    return re.sub(r"\d", "X", account_number or "")


def anonymize_statement(text: str) -> str:
    """Mask long digit runs and IBAN-like tokens, then keep the first 500 characters."""
    masked = re.sub(r"\d{4,}", "XXXX", text or "")
    masked = re.sub(r"[A-Z]{2}\d{2}[A-Z\d]+", "XXXXXXXX", masked)
    return masked[:SAMPLE_LENGTH]


def generate_extraction_prompt(statement: StatementRecord) -> str:
    return (
        f"Extract bank statement data for {statement.bankName}.\n"
        f"Expected format includes account number pattern similar to "
        f"{mask_account_number(statement.accountNumber)}.\n"
        f"Statement period format: {statement.statementPeriod}.\n"
        f"Typical transaction count: {len(statement.transactions)}."
    )


def generate_validation_rules(statement: StatementRecord) -> List[str]:
    return [
        f'Bank name should be "{statement.bankName}"',
        f"Account number should match pattern: {mask_account_number(statement.accountNumber)}",
        "Transactions should have dates in statement period",
        "All amounts should be positive numbers",
        "Transaction types should be either 'credit' or 'debit'",
    ]


def generate_category_mappings(statement: StatementRecord) -> Dict[str, str]:
    """Description prefix (first 20 lowercase characters) -> category; later rows win."""
    mappings: Dict[str, str] = {}
    for t in statement.transactions:
        if t.category and t.description:
            mappings[t.description.lower()[:MAPPING_KEY_LENGTH]] = t.category
    return mappings


def detect_template_currency(statement: StatementRecord, raw_text: str) -> str:
    if statement.currency != UNKNOWN:
        return statement.currency
    detected = detect_currency(raw_text)
    return detected if detected != UNKNOWN else "USD"


def detect_region(currency: str) -> str:
    return CURRENCY_REGIONS.get(currency, "US")


def detect_transaction_pattern(raw_text: str) -> Optional[str]:
    """
    Composite line pattern source when the generic single-line layout fits
    the raw text, None otherwise.
    """
    line_pattern = build_line_pattern(DATE_TOKEN, AMOUNT_TOKEN, BALANCE_TOKEN)
    if not recognize_line_patterns(raw_text):
        return None
    return line_pattern.pattern


class TemplateBuilder:
    """Turns an AI-extracted statement plus its raw text into a ``BankTemplate``."""

    def __init__(self, initial_accuracy: Optional[float] = None):
        self.initial_accuracy = cfg.template_initial_accuracy if initial_accuracy is None else initial_accuracy

    def build_parsing_rules(self, statement: StatementRecord, raw_text: str) -> ParsingRules:
        return ParsingRules(
            dateFormats=detect_date_formats(raw_text),
            amountPatterns=list(AMOUNT_PATTERNS),
            descriptionPatterns=list(DESCRIPTION_PATTERNS),
            balancePatterns=list(BALANCE_PATTERNS),
            accountNumberPattern=account_number_pattern(statement.accountNumber),
            statementPeriodPattern=STATEMENT_PERIOD_PATTERN,
            transactionPattern=detect_transaction_pattern(raw_text),
            transactionIndicators=TransactionIndicators(
                creditKeywords=list(CREDIT_KEYWORDS),
                debitKeywords=list(DEBIT_KEYWORDS),
            ),
        )

    def create_template_from_ai(self, statement: StatementRecord, raw_text: str, user_id: str) -> BankTemplate:
        """
        Build (but do not register) a template from an AI extraction.

        New templates start unverified with one use and the configured
        initial accuracy.
        """
        currency = detect_template_currency(statement, raw_text)
        now = utc_now()

        template = BankTemplate(
            id=new_template_id(statement.bankName),
            bankName=statement.bankName,
            templateName=f"{statement.bankName} - Auto Generated",
            version="1.0.0",
            createdAt=now,
            updatedAt=now,
            createdBy=user_id,
            usageCount=1,
            isVerified=False,
            parsing=self.build_parsing_rules(statement, raw_text),
            aiInstructions=AIInstructions(
                extractionPrompt=generate_extraction_prompt(statement),
                validationRules=generate_validation_rules(statement),
                categoryMappings=generate_category_mappings(statement),
            ),
            metadata=TemplateMetadata(
                supportedFormats=["pdf"],
                language="en",
                region=detect_region(currency),
                currency=currency,
                avgAccuracy=self.initial_accuracy,
                sampleStatements=[anonymize_statement(raw_text)],
            ),
        )

        log.info(
            f"Built template from AI extraction: id={template.id} bank={template.bankName} "
            f"formats={template.parsing.dateFormats} mappings={len(template.aiInstructions.categoryMappings)} "
            f"line_pattern={template.parsing.transactionPattern is not None}"
        )
        return template
