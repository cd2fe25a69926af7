"""
AI-assisted statement extraction and categorization.

One completion call extracts a whole document (metadata + every
transaction). Categorization is one call per description, fanned out on a
thread pool; those calls degrade to the keyword categorizer instead of
failing the document.
"""
from __future__ import annotations
import json
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ValidationError, field_validator

from core.config import config as cfg
from core.errors import AICallFailure, AIResponseInvalid
from core.logger import get_logger
from ingestion.fields import categorize_transaction, normalize_date
from llm.client import CompletionClient
from models.schema import UNKNOWN, StatementRecord, Transaction, clamp_confidence

log = get_logger("llm/extractor")


SYSTEM_INSTRUCTIONS = (
    "You are a finance statement extraction engine. "
    "Extract fields in strict JSON per the provided schema. "
    "Dates must be ISO (YYYY-MM-DD). Amounts are numbers. "
    "Only return JSON, no explanations."
)

PROMPT_TEMPLATE = """
Parse the following bank statement text into this JSON schema:

{{
  "bankName": string,
  "accountNumber": string,
  "statementPeriod": string,
  "openingBalance": number | null,
  "closingBalance": number | null,
  "currency": string | null,
  "transactions": [
    {{
      "date": "YYYY-MM-DD",
      "description": string,
      "amount": number,
      "type": "debit" | "credit",
      "category": string,
      "confidence": number (0.0-1.0),
      "balance": number | null
    }}
  ]
}}

Constraints:
- "amount" is the absolute value; money leaving the account is "debit", money entering is "credit".
- Use detected currency amounts as numbers (no symbols).
- Use "Unknown" for bankName/accountNumber and "Unknown Period" for statementPeriod when absent.
- Do NOT hallucinate: if unknown, use null or empty string.
- List transactions in statement order.
- Output ONLY valid JSON.
{context}
TEXT (may include multiple pages):
---
{statement_text}
---
"""

CATEGORIZE_PROMPT = (
    'Categorize this transaction description: "{description}". '
    "Return the category (like Food, Travel, Income) and confidence score between 0 and 1 "
    'as JSON: {{"category": string, "confidence": number}}. Only return JSON.'
)

REFINE_PROMPT = (
    'Given the transaction description "{description}" and its initial category "{category}", '
    "suggest a more specific or user-friendly category name. Return only the category name."
)

BANK_NAME_PROMPT = "Extract the bank name from the following PDF text:\n\n{text}\n\nOnly respond with the bank name."

FEEDBACK_PROMPT = (
    'The user corrected the category of "{description}" to "{category}". '
    "Suggest new keywords or features to improve future classification. "
    "Return a JSON array of strings only."
)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)

CategoryResult = Tuple[str, Optional[float]]


class AITransactionRow(BaseModel):
    """One transaction as returned by the model, before normalization."""
    date: str
    description: str
    amount: float
    type: Optional[str] = None
    category: Optional[str] = None
    confidence: Optional[Any] = None
    balance: Optional[float] = None

    @field_validator("date", mode="before")
    @classmethod
    def _date_to_str(cls, value):
        return str(value) if value is not None else value

    @field_validator("type", mode="before")
    @classmethod
    def _check_type(cls, value) -> Optional[str]:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        s = str(value).strip().lower()
        if s not in ("debit", "credit"):
            raise ValueError(f"type must be 'debit' or 'credit', got {value!r}")
        return s


class AIStatementPayload(BaseModel):
    bankName: Optional[str] = None
    accountNumber: Optional[str] = None
    statementPeriod: Optional[str] = None
    openingBalance: Optional[float] = None
    closingBalance: Optional[float] = None
    currency: Optional[str] = None
    transactions: List[Any]

    @field_validator("accountNumber", mode="before")
    @classmethod
    def _account_to_str(cls, value):
        return str(value) if value is not None else None

    @field_validator("transactions", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return [] if value is None else value


def _strip_trailing_garbage(payload: str) -> Optional[str]:
    """
    Cut a response that starts with a JSON value back to that value.

    Handles complete JSON followed by stray text. Tracks brace/bracket
    balance while respecting string boundaries. Returns None when the
    payload does not open with ``{`` or ``[``, or when the leading value
    never closes (truncated output cannot be repaired).
    """
    if not payload or payload[0] not in "{[":
        return None

    balance = 0
    end_idx = -1
    in_string = False
    escape = False

    for i, ch in enumerate(payload):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            balance += 1
        elif ch in "}]":
            balance -= 1
            if balance == 0:
                end_idx = i
                break

    if end_idx == -1:
        return None

    candidate = payload[:end_idx + 1]
    try:
        json.loads(candidate)
    except json.JSONDecodeError:
        return None
    log.info(f"Dropped trailing text after JSON value: kept={len(candidate)} dropped={len(payload) - len(candidate)} chars")
    return candidate


def parse_ai_payload(raw: str) -> Any:
    """
    Decode the JSON payload of a completion.

    A fenced block is preferred; without one the whole response is parsed.
    A response that opens with JSON but carries trailing text is cut back
    to the leading value. JSON embedded inside prose is never accepted.

    Raises:
        AIResponseInvalid: If no JSON can be decoded
    """
    text = (raw or "").strip()
    fence = _FENCE_RE.search(text)
    candidate = fence.group(1).strip() if fence else text

    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        log.warning(f"JSON decode error at position {e.pos}: {e.msg} | payload_preview={text[:200]}...")

    trimmed = _strip_trailing_garbage(candidate)
    if trimmed is None:
        raise AIResponseInvalid("AI response is not valid JSON", raw_response=text)
    return json.loads(trimmed)


def parse_statement_payload(raw: str) -> StatementRecord:
    """
    Validate a whole-document extraction response into a StatementRecord.

    Rows with an invalid ``type`` or missing required fields are dropped and
    logged; confidence is clamped to [0, 1].

    Raises:
        AIResponseInvalid: If the response is not a statement object
    """
    data = parse_ai_payload(raw)
    if not isinstance(data, dict):
        raise AIResponseInvalid(
            f"Expected a JSON object, got {type(data).__name__}", raw_response=raw
        )

    try:
        payload = AIStatementPayload.model_validate(data)
    except ValidationError as e:
        log.error(f"Statement payload validation failed: {len(e.errors())} errors | errors={e.json()}")
        raise AIResponseInvalid(f"Statement payload does not match schema: {e.error_count()} errors",
                                raw_response=raw, cause=e) from e

    currency = (payload.currency or UNKNOWN).strip() or UNKNOWN
    transactions: List[Transaction] = []
    dropped = 0

    for idx, row in enumerate(payload.transactions):
        try:
            item = AITransactionRow.model_validate(row)
            transactions.append(Transaction(
                date=normalize_date(item.date),
                description=item.description,
                amount=abs(item.amount),
                type=item.type or ("debit" if item.amount < 0 else "credit"),
                currency=currency,
                category=item.category or categorize_transaction(item.description),
                confidence=clamp_confidence(item.confidence),
                balance=item.balance,
            ))
        except ValidationError as e:
            dropped += 1
            log.warning(f"Dropping invalid AI transaction row {idx}: {e.error_count()} errors | row={row!r}")

    statement = StatementRecord(
        bankName=payload.bankName,
        accountNumber=payload.accountNumber,
        statementPeriod=payload.statementPeriod,
        transactions=transactions,
        openingBalance=payload.openingBalance,
        closingBalance=payload.closingBalance,
    )

    log.info(
        f"Statement validated successfully: bank={statement.bankName} account={statement.accountNumber} "
        f"period={statement.statementPeriod} transactions={len(statement.transactions)} dropped={dropped}"
    )
    return statement


def build_extraction_prompt(text: str, context: Optional[str] = None) -> str:
    """Full-document extraction prompt; ``context`` carries extra instructions."""
    context_block = f"\nAdditional instructions:\n{context.strip()}\n" if context and context.strip() else ""
    return f"{SYSTEM_INSTRUCTIONS}\n\n" + PROMPT_TEMPLATE.format(
        context=context_block, statement_text=text
    )


class AIStatementExtractor:
    """Structured extraction and categorization on top of a ``CompletionClient``."""

    def __init__(self, client: CompletionClient, max_workers: Optional[int] = None):
        self.client = client
        self.max_workers = max_workers or cfg.ai_max_workers

    def extract_statement(self, text: str, context: Optional[str] = None) -> StatementRecord:
        """
        Extract metadata and every transaction with one completion call.

        Raises:
            AICallFailure: If the completion call fails
            AIResponseInvalid: If the response cannot be parsed as a statement
        """
        start_time = time.time()
        prompt = build_extraction_prompt(text, context)
        log.info(f"Starting AI statement extraction: text_length={len(text)} with_context={bool(context)}")

        raw = self.client.complete(prompt)
        statement = parse_statement_payload(raw)

        log.info(
            f"AI statement extraction complete: transactions={len(statement.transactions)} "
            f"elapsed={time.time() - start_time:.2f}s"
        )
        return statement

    def detect_bank_name(self, text: str) -> str:
        """Bank name as named by the model; "Unknown" when the call fails."""
        try:
            name = self.client.complete(BANK_NAME_PROMPT.format(text=text)).strip().strip('"').strip()
        except AICallFailure as e:
            log.warning(f"AI bank name detection failed: {e}")
            return UNKNOWN
        return name.splitlines()[0].strip() if name else UNKNOWN

    def _ai_category(self, description: str) -> Optional[CategoryResult]:
        """Category and confidence from the model, or None when the call or its answer is unusable."""
        try:
            data = parse_ai_payload(self.client.complete(CATEGORIZE_PROMPT.format(description=description)))
            if not isinstance(data, dict):
                raise AIResponseInvalid("Category response is not a JSON object")
            category = str(data.get("category") or "").strip()
            if not category:
                raise AIResponseInvalid("Category response has no category")
            return category, clamp_confidence(data.get("confidence"))
        except (AICallFailure, AIResponseInvalid) as e:
            log.warning(f"AI categorization failed for '{description}', using fallback: {e}")
        except Exception as e:
            log.warning(f"Unexpected AI categorization error for '{description}', using fallback: {type(e).__name__}: {e}")
        return None

    def categorize(self, description: str) -> CategoryResult:
        """
        Category and confidence for one description.

        Never raises: any failure falls back to the keyword categorizer with
        no confidence. A model answer without a usable confidence keeps its
        category with confidence None.
        """
        result = self._ai_category(description)
        return result if result is not None else (categorize_transaction(description), None)

    def refine_category(self, category: str, description: str) -> str:
        """More specific category name; the input category when the call fails."""
        try:
            refined = self.client.complete(REFINE_PROMPT.format(category=category, description=description))
        except AICallFailure as e:
            log.warning(f"Category refinement failed for '{description}': {e}")
            return category
        refined = refined.strip().strip('"').strip()
        return refined.splitlines()[0].strip() if refined else category

    def categorize_many(self, descriptions: List[str]) -> List[CategoryResult]:
        """
        Categorize descriptions concurrently, one independent call each.

        All calls are joined before returning; results keep input order and a
        failing call only affects its own description.
        """
        if not descriptions:
            return []

        start_time = time.time()
        workers = min(self.max_workers, len(descriptions))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="categorize") as pool:
            answers = list(pool.map(self._ai_category, descriptions))

        results = [
            answer if answer is not None else (categorize_transaction(desc), None)
            for desc, answer in zip(descriptions, answers)
        ]
        ai_count = sum(1 for answer in answers if answer is not None)
        log.info(
            f"Categorized descriptions: total={len(results)} ai={ai_count} "
            f"fallback={len(results) - ai_count} elapsed={time.time() - start_time:.2f}s"
        )
        return results

    def categorize_transactions(self, transactions: List[Transaction], refine: bool = False) -> List[Transaction]:
        """
        Re-categorized copies of ``transactions``.

        Transactions whose call failed keep their original category.
        """
        if not transactions:
            return []

        def _one(t: Transaction) -> Transaction:
            answer = self._ai_category(t.description)
            if answer is None:
                return t
            category, confidence = answer
            if refine:
                category = self.refine_category(category, t.description)
            return t.with_category(category, confidence)

        workers = min(self.max_workers, len(transactions))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="categorize") as pool:
            return list(pool.map(_one, transactions))

    def submit_category_correction(self, description: str, correct_category: str) -> List[str]:
        """
        Ask for keywords that would have produced ``correct_category``.

        Returns an empty list on any failure; never raises.
        """
        try:
            data = parse_ai_payload(self.client.complete(
                FEEDBACK_PROMPT.format(description=description, category=correct_category)
            ))
        except (AICallFailure, AIResponseInvalid) as e:
            log.warning(f"Failed to retrain category for '{description}': {e}")
            return []
        except Exception as e:
            log.warning(f"Unexpected error retraining category for '{description}': {type(e).__name__}: {e}")
            return []

        if not isinstance(data, list):
            log.warning(f"Category feedback response is not a list: type={type(data).__name__}")
            return []
        return [str(k).strip() for k in data if isinstance(k, (str, int, float)) and str(k).strip()]
