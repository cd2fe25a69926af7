#!/usr/bin/env python3
"""Tests for template scoring, selection and usage metrics."""
from __future__ import annotations
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest

from models.schema import StatementRecord, Transaction
from models.template import BankTemplate, ParsingRules, TemplateMetadata, TransactionIndicators
from templates.builder import TemplateBuilder
from templates.catalogue import TemplateCatalogue, score_template


class MemoryStore:
    """In-memory stand-in for TemplateStore."""

    def __init__(self, templates=None, fail=False):
        self.templates = list(templates or [])
        self.fail = fail
        self.saved = {}

    def load_all(self):
        if self.fail:
            raise IOError("storage offline")
        return list(self.templates)

    def save(self, template):
        if self.fail:
            raise IOError("storage offline")
        self.saved[template.id] = template

    def update(self, template):
        self.save(template)


def make_template(tid, bank="Acme Bank", account=r"\d{4}-\d{4}", formats=None,
                  credit=("deposit",), debit=("withdrawal",), usage=1, accuracy=0.85, verified=False):
    return BankTemplate(
        id=tid,
        bankName=bank,
        templateName=f"{bank} - Auto Generated",
        createdBy="tester",
        usageCount=usage,
        isVerified=verified,
        parsing=ParsingRules(
            dateFormats=formats or ["MM/DD/YYYY"],
            accountNumberPattern=account,
            transactionIndicators=TransactionIndicators(creditKeywords=list(credit), debitKeywords=list(debit)),
        ),
        metadata=TemplateMetadata(avgAccuracy=accuracy),
    )


def catalogue_with(*templates, store=None):
    cat = TemplateCatalogue(store=store or MemoryStore(), builder=TemplateBuilder(initial_accuracy=0.85),
                            match_threshold=0.3)
    for t in templates:
        cat.register(t)
    return cat


FULL_TEXT = "ACME BANK\nAccount 1234-5678\n01/15/2024 PAYROLL DEPOSIT 100.00\n01/16/2024 ATM WITHDRAWAL -20.00"


def test_score_all_signals_is_one():
    score, features = score_template(FULL_TEXT, make_template("t1"))
    assert score == pytest.approx(1.0)
    assert features == ["Bank Name", "Account Number Format", "Date Format", "Credit/Debit Keywords"]


def test_score_no_signals_is_zero():
    score, features = score_template("nothing relevant", make_template("t1"))
    assert score == 0.0
    assert features == []


def test_score_one_keyword_side_is_partial():
    score, _ = score_template("a deposit was made", make_template("t1"))
    assert score == pytest.approx(0.15)


def test_score_bounds():
    for text in ["", FULL_TEXT, "acme bank", "2024-01-01 deposit withdrawal"]:
        score, _ = score_template(text, make_template("t1", formats=["YYYY-MM-DD"]))
        assert 0.0 <= score <= 1.0


def test_invalid_account_pattern_only_loses_its_signal():
    score, features = score_template(FULL_TEXT, make_template("t1", account="(["))
    assert score == pytest.approx(0.8)
    assert "Account Number Format" not in features


def test_find_best_template_below_threshold():
    # only the date signal fires: 0.25 < 0.3
    cat = catalogue_with(make_template("t1", bank="Other Bank", credit=(), debit=()))
    assert cat.find_best_template("01/15/2024 something") is None


def test_find_best_template_prefers_higher_score():
    cat = catalogue_with(make_template("weak", bank="Nope Bank"), make_template("strong"))
    match = cat.find_best_template(FULL_TEXT)
    assert match.template.id == "strong"
    assert match.confidence == pytest.approx(1.0)


def test_find_best_template_tie_goes_to_first_registered():
    cat = catalogue_with(make_template("first"), make_template("second"))
    assert cat.find_best_template(FULL_TEXT).template.id == "first"


def test_tie_break_survives_reload():
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    older = make_template("template_ffff").model_copy(update={"createdAt": created})
    newer = make_template("template_0000").model_copy(update={"createdAt": created + timedelta(minutes=5)})
    cat = catalogue_with(older, newer)
    assert cat.find_best_template(FULL_TEXT).template.id == "template_ffff"

    # storage lists keys alphabetically, not in registration order
    cat.store = MemoryStore(templates=[newer, older])
    cat.load()
    assert cat.find_best_template(FULL_TEXT).template.id == "template_ffff"


def test_unknown_bank_name_earns_no_bank_signal():
    template = make_template("t1", bank="Unknown")
    score, features = score_template("Payee unknown\nAccount 1234-5678", template)
    assert "Bank Name" not in features
    assert features == ["Account Number Format"]
    assert score == pytest.approx(0.2)


def test_listing_orders():
    cat = catalogue_with(
        make_template("a", bank="Acme Bank", usage=3, accuracy=0.7),
        make_template("b", bank="Acme Bank West", usage=9, accuracy=0.95),
        make_template("c", bank="Zeta Credit Union", usage=5, accuracy=0.99),
    )
    assert [t.id for t in cat.get_available_templates()] == ["b", "c", "a"]
    assert [t.id for t in cat.get_templates_by_bank("acme")] == ["b", "a"]


def test_running_mean_of_accuracy():
    cat = catalogue_with(make_template("t1", usage=1, accuracy=0.85))
    for accuracy in [1.0, 0.8, 0.9]:
        cat.update_template_metrics("t1", accuracy)

    t = cat.get("t1")
    assert t.usageCount == 4
    assert t.avgAccuracy == pytest.approx((0.85 + 1.0 + 0.8 + 0.9) / 4)


def test_template_becomes_verified_and_stays_verified():
    cat = catalogue_with(make_template("t1", usage=9, accuracy=0.95))
    updated = cat.update_template_metrics("t1", 0.95)
    assert updated.usageCount == 10
    assert updated.isVerified

    for _ in range(5):
        updated = cat.update_template_metrics("t1", 0.0)
    assert updated.avgAccuracy < 0.9
    assert updated.isVerified


def test_not_verified_below_accuracy_floor():
    cat = catalogue_with(make_template("t1", usage=9, accuracy=0.85))
    updated = cat.update_template_metrics("t1", 0.95)
    assert updated.usageCount == 10
    assert not updated.isVerified


def test_update_unknown_template_is_ignored():
    assert catalogue_with().update_template_metrics("missing", 1.0) is None


def test_concurrent_metric_updates_are_not_lost():
    cat = catalogue_with(make_template("t1", usage=1))
    threads = [threading.Thread(target=cat.update_template_metrics, args=("t1", 0.9)) for _ in range(20)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()
    assert cat.get("t1").usageCount == 21


def test_store_failures_keep_memory_state():
    store = MemoryStore(fail=True)
    cat = catalogue_with(make_template("t1"), store=store)

    assert cat.get("t1") is not None
    assert cat.update_template_metrics("t1", 1.0).usageCount == 2
    assert store.saved == {}


def test_load_failure_leaves_empty_catalogue():
    cat = TemplateCatalogue(store=MemoryStore(fail=True))
    assert cat.load() == 0
    assert cat.get_available_templates() == []


def test_load_replaces_map_from_store():
    store = MemoryStore(templates=[make_template("a"), make_template("b")])
    cat = TemplateCatalogue(store=store)
    assert cat.load() == 2
    assert cat.get("b").id == "b"


def test_create_template_from_ai_registers_and_persists():
    store = MemoryStore()
    cat = catalogue_with(store=store)
    statement = StatementRecord(
        bankName="Acme Bank",
        accountNumber="1234-5678",
        transactions=[Transaction(date="2024-01-05", description="PAYROLL", amount=100.0, type="credit",
                                  currency="USD", category="Income")],
    )
    template = cat.create_template_from_ai(statement, FULL_TEXT, "user-1")

    assert cat.get(template.id) is template
    assert template.id in store.saved
    assert template.createdBy == "user-1"
    assert cat.find_best_template(FULL_TEXT).template.id == template.id
