#!/usr/bin/env python3
"""Tests for AI payload parsing, statement extraction and categorization."""
from __future__ import annotations
import json
import sys
import threading
from pathlib import Path

# Add project root to path
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest

from core.errors import AICallFailure, AIResponseInvalid
from ingestion.fields import categorize_transaction
from llm.extractor import AIStatementExtractor, build_extraction_prompt, parse_ai_payload
from models.schema import UNKNOWN, Transaction


class ScriptedClient:
    """Completion client answering through a callable; records every prompt."""

    def __init__(self, answer):
        self.answer = answer
        self.prompts = []
        self._lock = threading.Lock()

    def complete(self, prompt: str) -> str:
        with self._lock:
            self.prompts.append(prompt)
        result = self.answer(prompt)
        if isinstance(result, Exception):
            raise result
        return result


def fixed(text):
    return ScriptedClient(lambda prompt: text)


def failing():
    return ScriptedClient(lambda prompt: AICallFailure("quota exceeded"))


STATEMENT_JSON = {
    "bankName": "Acme Bank",
    "accountNumber": "1234-5678",
    "statementPeriod": "01/01/2024 - 01/31/2024",
    "openingBalance": 1250.0,
    "closingBalance": 980.45,
    "currency": "USD",
    "transactions": [
        {"date": "2024-01-20", "description": "RENT", "amount": 269.55, "type": "debit",
         "category": "Housing", "confidence": 0.95},
        {"date": "01/05/2024", "description": "COFFEE", "amount": -4.5,
         "category": "Food", "confidence": 1.7},
        {"date": "2024-01-07", "description": "MYSTERY", "amount": 10.0, "type": "transfer"},
    ],
}


def test_parse_fenced_payload():
    raw = 'Sure, here it is:\n```json\n{"bankName": "Acme"}\n```\nAnything else?'
    assert parse_ai_payload(raw) == {"bankName": "Acme"}


def test_parse_unfenced_payload():
    assert parse_ai_payload('  {"a": [1, 2]}  ') == {"a": [1, 2]}


def test_parse_salvages_trailing_garbage():
    raw = '{"bankName": "Acme", "transactions": []} and some trailing words'
    assert parse_ai_payload(raw) == {"bankName": "Acme", "transactions": []}


def test_parse_prose_is_invalid():
    with pytest.raises(AIResponseInvalid) as exc:
        parse_ai_payload("I'm sorry, I can't read this statement.")
    assert exc.value.stage == "ai_response"


def test_parse_prose_with_embedded_object_is_invalid():
    with pytest.raises(AIResponseInvalid):
        parse_ai_payload('I could not read any transactions. The expected format is {"bankName": "Unknown"}.')


def test_parse_truncated_object_is_invalid():
    with pytest.raises(AIResponseInvalid):
        parse_ai_payload('{"bankName": "Acme", "transactions": [{"date": "2024-01-05"')


def test_prompt_contains_schema_text_and_context():
    prompt = build_extraction_prompt("STATEMENT BODY", context="Bank name should be Acme")

    assert "STATEMENT BODY" in prompt
    assert '"debit" | "credit"' in prompt
    assert "Bank name should be Acme" in prompt
    assert "Additional instructions" not in build_extraction_prompt("x")


def test_extract_statement_validates_rows():
    extractor = AIStatementExtractor(fixed(json.dumps(STATEMENT_JSON)))
    st = extractor.extract_statement("raw text")

    assert st.bankName == "Acme Bank"
    assert st.openingBalance == 1250.0
    assert st.closingBalance == 980.45
    # invalid type dropped, remaining rows sorted by date
    assert [t.description for t in st.transactions] == ["COFFEE", "RENT"]

    coffee = st.transactions[0]
    assert coffee.date == "2024-01-05"
    assert coffee.type == "debit"
    assert coffee.amount == 4.5
    assert coffee.confidence == 1.0
    assert coffee.currency == "USD"


def test_extract_statement_missing_metadata_uses_sentinels():
    extractor = AIStatementExtractor(fixed('```json\n{"transactions": null}\n```'))
    st = extractor.extract_statement("raw text")

    assert st.bankName == UNKNOWN
    assert st.transactions == []
    assert st.is_empty
    assert st.openingBalance is None


def test_extract_statement_prose_raises_invalid():
    extractor = AIStatementExtractor(fixed("The statement shows three transactions."))
    with pytest.raises(AIResponseInvalid):
        extractor.extract_statement("raw text")


def test_extract_statement_object_without_transactions_raises_invalid():
    extractor = AIStatementExtractor(fixed('{"bankName": "Unknown"}'))
    with pytest.raises(AIResponseInvalid):
        extractor.extract_statement("raw text")


def test_extract_statement_non_object_raises_invalid():
    extractor = AIStatementExtractor(fixed("[1, 2, 3]"))
    with pytest.raises(AIResponseInvalid):
        extractor.extract_statement("raw text")


def test_extract_statement_surfaces_call_failure():
    extractor = AIStatementExtractor(failing())
    with pytest.raises(AICallFailure):
        extractor.extract_statement("raw text")


def test_extract_statement_passes_context_to_prompt():
    client = fixed(json.dumps({"transactions": []}))
    AIStatementExtractor(client).extract_statement("raw text", context="Known category mappings: {}")
    assert "Known category mappings" in client.prompts[0]


def test_categorize_success_and_clamping():
    extractor = AIStatementExtractor(fixed('{"category": "Food", "confidence": 3}'))
    assert extractor.categorize("BURGER BAR") == ("Food", 1.0)


def test_categorize_falls_back_on_failure():
    extractor = AIStatementExtractor(failing())
    assert extractor.categorize("PAYROLL ACME") == (categorize_transaction("PAYROLL ACME"), None)


def test_categorize_falls_back_on_prose():
    extractor = AIStatementExtractor(fixed("Probably food."))
    assert extractor.categorize("MYSTERY VENDOR") == ("Other", None)


def test_categorize_keeps_ai_category_without_confidence():
    extractor = AIStatementExtractor(fixed('{"category": "Coffee Shops"}'))
    assert extractor.categorize("STARBUCKS") == ("Coffee Shops", None)


def test_categorize_many_isolates_failures_and_keeps_order():
    def answer(prompt):
        if "BAD" in prompt:
            return AICallFailure("boom")
        return '{"category": "Shopping", "confidence": 0.7}'

    extractor = AIStatementExtractor(ScriptedClient(answer), max_workers=4)
    descriptions = ["SHOP 1", "BAD PAYROLL", "SHOP 2", "SHOP 3"]
    results = extractor.categorize_many(descriptions)

    assert results == [
        ("Shopping", 0.7),
        ("Income", None),
        ("Shopping", 0.7),
        ("Shopping", 0.7),
    ]


def test_categorize_many_empty():
    assert AIStatementExtractor(failing()).categorize_many([]) == []


def test_categorize_transactions_refines_and_copies():
    def answer(prompt):
        if prompt.startswith("Categorize"):
            return '{"category": "Food", "confidence": 0.8}'
        return "Coffee Shops\n"

    original = Transaction(date="2024-01-05", description="STARBUCKS", amount=4.5, type="debit")
    extractor = AIStatementExtractor(ScriptedClient(answer))
    [updated] = extractor.categorize_transactions([original], refine=True)

    assert updated.category == "Coffee Shops"
    assert updated.confidence == 0.8
    assert original.category == "Other"
    assert original.confidence is None


def test_categorize_transactions_keeps_original_on_failure():
    original = Transaction(date="2024-01-05", description="STARBUCKS", amount=4.5, type="debit",
                           category="Dining")
    [kept] = AIStatementExtractor(failing()).categorize_transactions([original])
    assert kept is original


def test_categorize_transactions_applies_ai_category_without_confidence():
    original = Transaction(date="2024-01-05", description="STARBUCKS", amount=4.5, type="debit")
    extractor = AIStatementExtractor(fixed('{"category": "Coffee Shops", "confidence": "n/a"}'))
    [updated] = extractor.categorize_transactions([original])

    assert updated.category == "Coffee Shops"
    assert updated.confidence is None
    assert updated is not original


def test_detect_bank_name():
    assert AIStatementExtractor(fixed('"Chase Bank"\n')).detect_bank_name("text") == "Chase Bank"
    assert AIStatementExtractor(failing()).detect_bank_name("text") == UNKNOWN


def test_submit_category_correction():
    extractor = AIStatementExtractor(fixed('```json\n["coffee", "espresso"]\n```'))
    assert extractor.submit_category_correction("STARBUCKS", "Coffee") == ["coffee", "espresso"]


def test_submit_category_correction_never_raises():
    assert AIStatementExtractor(failing()).submit_category_correction("X", "Y") == []
    assert AIStatementExtractor(fixed("no idea")).submit_category_correction("X", "Y") == []
    assert AIStatementExtractor(fixed('{"a": 1}')).submit_category_correction("X", "Y") == []
