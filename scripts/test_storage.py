#!/usr/bin/env python3
"""Tests for local storage, the template store and PDF reading errors."""
from __future__ import annotations
import sys
from pathlib import Path

# Add project root to path
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest

from core.errors import ExtractionFailure, TemplateParseFailure
from core.storage import LocalStorage
from ingestion.pdf_reader import document_name, extract_text, read_pdf
from models.template import BankTemplate, TemplateMetadata
from templates.store import TemplateStore


def make_template(tid):
    return BankTemplate(id=tid, bankName="Acme Bank", templateName="Acme Bank - Auto Generated",
                        createdBy="tester", metadata=TemplateMetadata(avgAccuracy=0.9))


def test_local_storage_roundtrip(tmp_path):
    storage = LocalStorage(tmp_path)
    storage.write_bytes("a/b.json", b"{}")

    assert storage.read_bytes("a/b.json") == b"{}"
    assert storage.list_keys() == ["a/b.json"]
    assert storage.list_keys("a") == ["a/b.json"]

    storage.delete("a/b.json")
    assert storage.list_keys() == []
    with pytest.raises(FileNotFoundError):
        storage.read_bytes("a/b.json")


def test_template_store_save_and_load(tmp_path):
    store = TemplateStore(LocalStorage(tmp_path))
    store.save(make_template("template_a"))
    store.save(make_template("template_b"))

    loaded = store.load_all()
    assert [t.id for t in loaded] == ["template_a", "template_b"]
    assert loaded[0].avgAccuracy == 0.9
    assert (tmp_path / "template_a.json").exists()


def test_template_store_update_overwrites(tmp_path):
    store = TemplateStore(LocalStorage(tmp_path))
    template = make_template("template_a")
    store.save(template)
    store.update(template.model_copy(update={"usageCount": 5}))

    [loaded] = store.load_all()
    assert loaded.usageCount == 5


def test_template_store_skips_corrupt_documents(tmp_path):
    storage = LocalStorage(tmp_path)
    store = TemplateStore(storage)
    store.save(make_template("template_a"))
    storage.write_bytes("broken.json", b"not json")
    storage.write_bytes("notes.txt", b"ignored")

    assert [t.id for t in store.load_all()] == ["template_a"]


def test_template_store_prefix(tmp_path):
    store = TemplateStore(LocalStorage(tmp_path), prefix="templates/")
    store.save(make_template("template_a"))
    assert (tmp_path / "templates" / "template_a.json").exists()
    assert [t.id for t in store.load_all()] == ["template_a"]


def test_read_pdf_rejects_non_pdf_bytes():
    with pytest.raises(ExtractionFailure) as exc:
        read_pdf(b"definitely not a pdf")
    assert exc.value.stage == "text_extraction"
    assert exc.value.document.startswith("<bytes sha256=")


def test_extract_text_missing_file(tmp_path):
    with pytest.raises(ExtractionFailure) as exc:
        extract_text(tmp_path / "missing.pdf")
    assert "missing.pdf" in str(exc.value)


def test_document_name():
    assert document_name("/tmp/x/statement.pdf") == "statement.pdf"
    assert document_name(b"abc").startswith("<bytes sha256=")


def test_error_message_names_stage_and_document():
    err = TemplateParseFailure("no transactions", template_id="t1").with_document("jan.pdf")
    assert str(err) == "[template_parse] jan.pdf: no transactions"
    assert err.template_id == "t1"
    # an already-known document is kept
    assert err.with_document("other.pdf").document == "jan.pdf"
