"""
Statement pipeline: text extraction, template selection, parsing and learning.

Strategy order for one document:

1. The selected template, else the best-scoring one from the catalogue,
   drives a pattern parse.
2. A failed template parse is retried through the AI with the template's
   instructions as context.
3. Without a template the AI extracts the document and a new template is
   learned from the result.

With AI disabled (or no completion client configured) only pattern parsing
runs and an empty statement is a normal result.
"""
from __future__ import annotations
import json
import re
import time
from typing import List, Literal, Optional

from pydantic import BaseModel

from core.config import config as cfg
from core.errors import StatementError, TemplateParseFailure
from core.logger import get_logger
from ingestion.fields import (
    detect_currency,
    extract_account_number,
    extract_balances,
    extract_statement_period,
)
from ingestion.pdf_reader import PdfSource, document_name, extract_text
from ingestion.recognizer import (
    DEFAULT_PATTERNS,
    BankPatternSet,
    Categorizer,
    CategoryResult,
    build_line_pattern,
    heuristic_categorizer,
    recognize_transactions,
)
from llm.extractor import AIStatementExtractor
from models.schema import UNKNOWN, UNKNOWN_PERIOD, StatementRecord, is_iso_date
from models.template import BankTemplate, compile_pattern
from templates.builder import MAPPING_KEY_LENGTH, date_format_to_regex
from templates.catalogue import TemplateCatalogue

log = get_logger("pipeline/orchestrator")

Strategy = Literal["template", "ai", "patterns"]

RECONCILE_TOLERANCE = 0.01


class PipelineResult(BaseModel):
    statement: StatementRecord
    templateUsed: Optional[BankTemplate] = None
    isNewTemplate: bool = False
    strategy: Strategy


def template_pattern_set(template: BankTemplate) -> BankPatternSet:
    """
    Recognizer pattern set for a template's layout.

    Raises:
        re.error: If a stored pattern does not compile
    """
    sources: List[str] = []
    for fmt in template.parsing.dateFormats or ["MM/DD/YYYY"]:
        src = date_format_to_regex(fmt)
        if src not in sources:
            sources.append(src)
    date_token = "(?:" + "|".join(sources) + ")"

    line_pattern = compile_pattern(template.parsing.transactionPattern or "")
    if line_pattern is None:
        line_pattern = build_line_pattern(date_token)

    return BankPatternSet(
        name=template.templateName,
        date_pattern=re.compile(date_token),
        amount_pattern=DEFAULT_PATTERNS.amount_pattern,
        line_pattern=line_pattern,
    )


def mapping_categorizer(template: BankTemplate, fallback: Categorizer = heuristic_categorizer) -> Categorizer:
    """Categorizer that applies the template's description-prefix mappings first."""
    mappings = {k.lower(): v for k, v in template.aiInstructions.categoryMappings.items()}

    def categorize(descriptions: List[str]) -> List[CategoryResult]:
        results = fallback(descriptions)
        return [
            (mappings[d.lower()[:MAPPING_KEY_LENGTH]], None) if d.lower()[:MAPPING_KEY_LENGTH] in mappings else r
            for d, r in zip(descriptions, results)
        ]

    return categorize


def template_context(template: BankTemplate) -> str:
    """AI prompt context built from a template's instructions."""
    ai = template.aiInstructions
    return (
        f"{ai.extractionPrompt}\n\n"
        f"Use these validation rules:\n" + "\n".join(ai.validationRules) + "\n\n"
        f"Known category mappings:\n{json.dumps(ai.categoryMappings)}"
    )


def estimate_accuracy(statement: StatementRecord, default: Optional[float] = None) -> float:
    """
    Accuracy estimate for a parsed statement in [0, 1].

    With both balances, ``opening + credits - debits`` is reconciled against
    ``closing`` and the result is scaled by the share of ISO-normalized
    dates. Without them the configured default is returned.
    """
    default = cfg.default_template_accuracy if default is None else default
    if statement.openingBalance is None or statement.closingBalance is None or statement.is_empty:
        return default

    expected = statement.openingBalance + statement.net_amount
    diff = abs(expected - statement.closingBalance)
    if diff <= RECONCILE_TOLERANCE:
        reconciled = 1.0
    else:
        scale = max(abs(statement.openingBalance), abs(statement.closingBalance), 1.0)
        reconciled = max(0.0, 1.0 - diff / scale)

    iso_share = sum(1 for t in statement.transactions if is_iso_date(t.date)) / len(statement.transactions)
    return round(reconciled * iso_share, 4)


class StatementPipeline:
    """Runs documents through templates, the recognizer and the AI extractor."""

    def __init__(self, catalogue: TemplateCatalogue, extractor: Optional[AIStatementExtractor] = None):
        self.catalogue = catalogue
        self.extractor = extractor

    def _resolve_template(self, text: str, selected_template_id: Optional[str]) -> Optional[BankTemplate]:
        if selected_template_id:
            template = self.catalogue.get(selected_template_id)
            if template:
                log.info(f"Using selected template: id={template.id} bank={template.bankName}")
                return template
            log.warning(f"Selected template not found, matching instead: id={selected_template_id}")

        match = self.catalogue.find_best_template(text)
        return match.template if match else None

    def _parse_with_patterns(self, text: str, patterns: Optional[BankPatternSet] = None,
                             categorizer: Optional[Categorizer] = None, bank_name: str = UNKNOWN,
                             account_number: str = UNKNOWN, period: str = UNKNOWN_PERIOD,
                             currency: Optional[str] = None) -> StatementRecord:
        currency = currency if currency and currency != UNKNOWN else detect_currency(text)
        opening, closing = extract_balances(text)
        transactions = recognize_transactions(text, patterns=patterns, categorizer=categorizer, currency=currency)
        return StatementRecord(
            bankName=bank_name,
            accountNumber=account_number if account_number != UNKNOWN else extract_account_number(text),
            statementPeriod=period if period != UNKNOWN_PERIOD else extract_statement_period(text),
            transactions=transactions,
            openingBalance=opening,
            closingBalance=closing,
        )

    def parse_with_template(self, text: str, template: BankTemplate) -> StatementRecord:
        """
        Pattern parse guided by a template.

        Raises:
            TemplateParseFailure: If the parse raises or finds no transactions
        """
        try:
            account = UNKNOWN
            account_re = compile_pattern(template.parsing.accountNumberPattern)
            if account_re is not None:
                account = extract_account_number(text, account_re)

            currency = detect_currency(text)
            period = UNKNOWN_PERIOD
            period_re = compile_pattern(template.parsing.statementPeriodPattern)
            if period_re is not None:
                m = period_re.search(text)
                if m and m.groups():
                    period = " - ".join(g for g in m.groups() if g)

            statement = self._parse_with_patterns(
                text,
                patterns=template_pattern_set(template),
                categorizer=mapping_categorizer(template),
                bank_name=template.bankName,
                account_number=account,
                period=period,
                currency=currency if currency != UNKNOWN else template.metadata.currency,
            )
        except Exception as e:
            raise TemplateParseFailure(
                f"Template parse raised {type(e).__name__}: {e}", template_id=template.id, cause=e
            ) from e

        if statement.is_empty:
            raise TemplateParseFailure("Template parse found no transactions", template_id=template.id)
        return statement

    def _fill_gaps(self, statement: StatementRecord, text: str) -> StatementRecord:
        """Fill metadata the AI left unknown from the regex field extractors."""
        update = {}
        if statement.accountNumber == UNKNOWN:
            update["accountNumber"] = extract_account_number(text)
        if statement.statementPeriod == UNKNOWN_PERIOD:
            update["statementPeriod"] = extract_statement_period(text)
        if statement.openingBalance is None or statement.closingBalance is None:
            opening, closing = extract_balances(text)
            if statement.openingBalance is None:
                update["openingBalance"] = opening
            if statement.closingBalance is None:
                update["closingBalance"] = closing
        return statement.model_copy(update=update) if update else statement

    def _categorize(self, statement: StatementRecord) -> StatementRecord:
        if not (cfg.ai_categorization and self.extractor and statement.transactions):
            return statement
        transactions = self.extractor.categorize_transactions(statement.transactions)
        return statement.model_copy(update={"transactions": transactions})

    def process_text(self, text: str, selected_template_id: Optional[str] = None, user_id: Optional[str] = None,
                     use_ai: bool = True, document: Optional[str] = None) -> PipelineResult:
        """
        Parse one statement's text.

        Raises:
            AICallFailure: If the AI was the only remaining strategy and its call failed
            AIResponseInvalid: If the AI was the only remaining strategy and answered garbage
        """
        start_time = time.time()
        use_ai = use_ai and self.extractor is not None
        template = self._resolve_template(text, selected_template_id)

        try:
            result = self._run(text, template, user_id, use_ai)
        except StatementError as e:
            if document:
                e.with_document(document)
            log.error(f"Statement processing failed: doc={document} error={e}")
            raise

        if use_ai:
            result = result.model_copy(update={"statement": self._categorize(result.statement)})

        log.info(
            f"Statement processed: doc={document} strategy={result.strategy} "
            f"template={result.templateUsed.id if result.templateUsed else None} new_template={result.isNewTemplate} "
            f"transactions={len(result.statement.transactions)} elapsed={time.time() - start_time:.2f}s"
        )
        return result

    def _run(self, text: str, template: Optional[BankTemplate], user_id: Optional[str], use_ai: bool) -> PipelineResult:
        if template:
            try:
                statement = self.parse_with_template(text, template)
                updated = self.catalogue.update_template_metrics(template.id, estimate_accuracy(statement))
                return PipelineResult(statement=statement, templateUsed=updated or template, strategy="template")
            except TemplateParseFailure as e:
                log.warning(f"Template parsing failed, falling back: template={template.id} error={e}")

            if use_ai:
                statement = self.extractor.extract_statement(text, context=template_context(template))
                return PipelineResult(statement=self._fill_gaps(statement, text), templateUsed=template, strategy="ai")

        if not use_ai:
            statement = self._parse_with_patterns(text)
            if statement.is_empty:
                log.warning("No transactions found by pattern recognition")
            return PipelineResult(statement=statement, strategy="patterns")

        statement = self._fill_gaps(self.extractor.extract_statement(text), text)
        if statement.is_empty:
            log.warning("AI extraction returned no transactions, no template learned")
            return PipelineResult(statement=statement, strategy="ai")

        created = self.catalogue.create_template_from_ai(statement, text, user_id or cfg.default_user_id)
        return PipelineResult(statement=statement, templateUsed=created, isNewTemplate=True, strategy="ai")

    def process_document(self, source: PdfSource, password: Optional[str] = None,
                         selected_template_id: Optional[str] = None, user_id: Optional[str] = None,
                         use_ai: bool = True) -> PipelineResult:
        """
        Extract a PDF's text and process it.

        Raises:
            ExtractionFailure: If the document cannot be read
        """
        name = document_name(source)
        text = extract_text(source, password=password)
        return self.process_text(text, selected_template_id=selected_template_id, user_id=user_id,
                                 use_ai=use_ai, document=name)

    def submit_category_correction(self, description: str, correct_category: str) -> List[str]:
        """Keywords suggested after a user fixes a category; [] without an AI client."""
        if self.extractor is None:
            return []
        return self.extractor.submit_category_correction(description, correct_category)
