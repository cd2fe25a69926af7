#!/usr/bin/env python3
"""Tests for template synthesis from AI extractions."""
from __future__ import annotations
import re
import sys
from pathlib import Path

# Add project root to path
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from models.schema import StatementRecord, Transaction
from templates.builder import (
    DEFAULT_DATE_FORMATS,
    TemplateBuilder,
    account_number_pattern,
    anonymize_statement,
    detect_date_formats,
    generate_category_mappings,
)

RAW_TEXT = "\n".join([
    "ACME BANK",
    "Account Number: 1234-5678",
    "Statement Period: 01/01/2024 - 01/31/2024",
    "01/05/2024 STARBUCKS COFFEE #1234 -4.50 1,245.50",
    "01/15/2024 PAYROLL DEPOSIT 2,000.00 3,245.50",
])


def make_statement():
    return StatementRecord(
        bankName="Acme Bank",
        accountNumber="1234-5678",
        statementPeriod="01/01/2024 - 01/31/2024",
        transactions=[
            Transaction(date="2024-01-05", description="STARBUCKS COFFEE #1234", amount=4.5, type="debit",
                        currency="USD", category="Food & Dining", confidence=0.9),
            Transaction(date="2024-01-15", description="PAYROLL DEPOSIT", amount=2000.0, type="credit",
                        currency="USD", category="Income"),
        ],
    )


def test_anonymize_masks_numbers_and_iban():
    assert anonymize_statement("Account 12345678 IBAN GB29NWBK60161331926819") == "Account XXXX IBAN XXXXXXXX"
    assert anonymize_statement("Fee 12.50") == "Fee 12.50"


def test_anonymize_truncates_to_500_chars():
    assert len(anonymize_statement("a" * 1000)) == 500


def test_account_number_pattern_generalizes_digits():
    pattern = account_number_pattern("1234-5678")
    assert re.fullmatch(pattern, "9876-5432")
    assert not re.fullmatch(pattern, "98765432")
    assert account_number_pattern("Unknown") == ""


def test_account_number_pattern_escapes_masks():
    pattern = account_number_pattern("****1234")
    assert re.fullmatch(pattern, "****9999")


def test_detect_date_formats():
    assert detect_date_formats("15/01/2024") == ["DD/MM/YYYY"]
    assert detect_date_formats("01/15/2024") == ["MM/DD/YYYY"]
    assert detect_date_formats("01/02/2024") == ["MM/DD/YYYY", "DD/MM/YYYY"]
    assert detect_date_formats("2024-01-15") == ["YYYY-MM-DD"]
    assert detect_date_formats("no dates") == DEFAULT_DATE_FORMATS


def test_category_mappings_use_description_prefix():
    mappings = generate_category_mappings(make_statement())
    assert mappings == {
        "starbucks coffee #12": "Food & Dining",
        "payroll deposit": "Income",
    }


def test_create_template_from_ai():
    template = TemplateBuilder(initial_accuracy=0.85).create_template_from_ai(make_statement(), RAW_TEXT, "user-7")

    assert template.id.startswith("template_")
    assert template.bankName == "Acme Bank"
    assert template.templateName == "Acme Bank - Auto Generated"
    assert template.version == "1.0.0"
    assert template.createdBy == "user-7"
    assert template.usageCount == 1
    assert template.isVerified is False
    assert template.avgAccuracy == 0.85

    assert template.parsing.dateFormats == ["MM/DD/YYYY"]
    assert template.parsing.transactionIndicators.creditKeywords[:2] == ["deposit", "credit"]
    assert template.parsing.transactionPattern is not None
    assert re.search(template.parsing.accountNumberPattern, RAW_TEXT)

    assert template.metadata.currency == "USD"
    assert template.metadata.region == "US"
    assert "XXXX" in template.metadata.sampleStatements[0]
    assert "1234-5678" not in template.metadata.sampleStatements[0]

    assert 'Bank name should be "Acme Bank"' in template.aiInstructions.validationRules
    assert "XXXX-XXXX" in template.aiInstructions.extractionPrompt


def test_templates_get_distinct_ids():
    builder = TemplateBuilder()
    a = builder.create_template_from_ai(make_statement(), RAW_TEXT, "u")
    b = builder.create_template_from_ai(make_statement(), RAW_TEXT, "u")
    assert a.id != b.id


def test_no_line_pattern_for_multiline_layouts():
    raw = "ACME BANK\n01/05/2024\nSTARBUCKS\n-4.50"
    template = TemplateBuilder().create_template_from_ai(make_statement(), raw, "u")
    assert template.parsing.transactionPattern is None
