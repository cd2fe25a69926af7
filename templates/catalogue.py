"""
In-memory catalogue of bank templates backed by a ``TemplateStore``.

Scoring a statement against a template adds up four weighted signals
(bank name 30, account pattern 20, date format 25, credit/debit keywords
25 or 15) and normalizes by the 100-point maximum.
"""
from __future__ import annotations
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from core.config import config as cfg
from core.logger import get_logger
from core.utils import utc_now
from models.schema import UNKNOWN, StatementRecord
from models.template import BankTemplate, TemplateMatch, compile_pattern
from templates.builder import TemplateBuilder, date_format_to_regex
from templates.store import TemplateStore

log = get_logger("templates/catalogue")

BANK_NAME_WEIGHT = 30
ACCOUNT_PATTERN_WEIGHT = 20
DATE_FORMAT_WEIGHT = 25
KEYWORDS_BOTH_WEIGHT = 25
KEYWORDS_ONE_WEIGHT = 15
MAX_SCORE = BANK_NAME_WEIGHT + ACCOUNT_PATTERN_WEIGHT + DATE_FORMAT_WEIGHT + KEYWORDS_BOTH_WEIGHT


def score_template(text: str, template: BankTemplate) -> Tuple[float, List[str]]:
    """
    Normalized match score in [0, 1] and the names of the signals that fired.

    A pattern that does not compile only costs its own signal. A template
    learned without a bank name never earns the bank-name signal.
    """
    lowered = (text or "").lower()
    score = 0
    features: List[str] = []

    bank = template.bankName.strip()
    if bank and bank != UNKNOWN and bank.lower() in lowered:
        score += BANK_NAME_WEIGHT
        features.append("Bank Name")

    try:
        account_re = compile_pattern(template.parsing.accountNumberPattern)
        if account_re is not None and account_re.search(text or ""):
            score += ACCOUNT_PATTERN_WEIGHT
            features.append("Account Number Format")
    except Exception as e:
        log.warning(f"Invalid account pattern in template: id={template.id} error={type(e).__name__}: {e}")

    for fmt in template.parsing.dateFormats:
        try:
            date_re = compile_pattern(date_format_to_regex(fmt))
        except Exception as e:
            log.warning(f"Invalid date format in template: id={template.id} format={fmt} error={e}")
            continue
        if date_re is not None and date_re.search(text or ""):
            score += DATE_FORMAT_WEIGHT
            features.append("Date Format")
            break

    indicators = template.parsing.transactionIndicators
    has_credits = any(k.lower() in lowered for k in indicators.creditKeywords if k)
    has_debits = any(k.lower() in lowered for k in indicators.debitKeywords if k)
    if has_credits and has_debits:
        score += KEYWORDS_BOTH_WEIGHT
        features.append("Credit/Debit Keywords")
    elif has_credits or has_debits:
        score += KEYWORDS_ONE_WEIGHT
        features.append("Credit Keywords" if has_credits else "Debit Keywords")

    return score / MAX_SCORE, features


class TemplateCatalogue:
    """
    Thread-safe registry of templates.

    The map lock guards membership; a per-template lock serializes metric
    updates so concurrent documents never lose a usage increment.
    """

    def __init__(self, store: Optional[TemplateStore] = None, builder: Optional[TemplateBuilder] = None,
                 match_threshold: Optional[float] = None):
        self.store = store or TemplateStore()
        self.builder = builder or TemplateBuilder()
        self.match_threshold = cfg.template_match_threshold if match_threshold is None else match_threshold
        self._templates: Dict[str, BankTemplate] = {}
        self._lock = threading.RLock()
        self._metric_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    def load(self) -> int:
        """Replace the in-memory map with the stored templates; returns the count."""
        try:
            templates = self.store.load_all()
        except Exception as e:
            log.error(f"Failed to load templates, starting with an empty catalogue: {type(e).__name__}: {e}")
            templates = []

        with self._lock:
            # oldest first; id breaks equal timestamps
            ordered = sorted(templates, key=lambda t: (t.createdAt.timestamp(), t.id))
            self._templates = {t.id: t for t in ordered}
            count = len(self._templates)
        log.info(f"Template catalogue loaded: templates={count}")
        return count

    def get(self, template_id: str) -> Optional[BankTemplate]:
        with self._lock:
            return self._templates.get(template_id)

    def get_available_templates(self) -> List[BankTemplate]:
        """All templates, most used first."""
        with self._lock:
            templates = list(self._templates.values())
        return sorted(templates, key=lambda t: t.usageCount, reverse=True)

    def get_templates_by_bank(self, bank_name: str) -> List[BankTemplate]:
        """Templates whose bank name contains ``bank_name`` (case-insensitive), most accurate first."""
        needle = (bank_name or "").lower()
        with self._lock:
            templates = [t for t in self._templates.values() if needle in t.bankName.lower()]
        return sorted(templates, key=lambda t: t.avgAccuracy, reverse=True)

    def score_template(self, text: str, template: BankTemplate) -> Tuple[float, List[str]]:
        return score_template(text, template)

    def find_best_template(self, text: str) -> Optional[TemplateMatch]:
        """
        Highest-scoring template at or above the match threshold.

        Ties go to the template registered first.
        """
        with self._lock:
            templates = list(self._templates.values())

        best: Optional[TemplateMatch] = None
        for template in templates:
            try:
                score, features = score_template(text, template)
            except Exception as e:
                log.warning(f"Failed to score template: id={template.id} error={type(e).__name__}: {e}")
                continue
            if score < self.match_threshold:
                continue
            if best is None or score > best.confidence:
                best = TemplateMatch(template=template, confidence=score, matchedFeatures=features)

        if best:
            log.info(
                f"Best template match: id={best.template.id} bank={best.template.bankName} "
                f"confidence={best.confidence:.2f} features={best.matchedFeatures}"
            )
        else:
            log.info(f"No template matched: candidates={len(templates)} threshold={self.match_threshold}")
        return best

    def register(self, template: BankTemplate) -> BankTemplate:
        """Add to the catalogue and persist; a store failure keeps the in-memory entry."""
        with self._lock:
            self._templates[template.id] = template
        try:
            self.store.save(template)
        except Exception as e:
            log.error(f"Failed to persist new template: id={template.id} error={type(e).__name__}: {e}")
        return template

    def update_template_metrics(self, template_id: str, accuracy: float) -> Optional[BankTemplate]:
        """
        Record one more use of a template with the given accuracy.

        The running mean is taken after incrementing the usage count.
        Verification is sticky. Unknown ids are ignored.
        """
        with self._lock:
            lock = self._metric_locks[template_id]

        with lock:
            current = self.get(template_id)
            if current is None:
                log.warning(f"Metrics update for unknown template ignored: id={template_id}")
                return None

            accuracy = min(1.0, max(0.0, float(accuracy)))
            usage = current.usageCount + 1
            avg = (current.avgAccuracy * (usage - 1) + accuracy) / usage
            verified = current.isVerified or (usage >= cfg.verify_min_usage and avg >= cfg.verify_min_accuracy)

            updated = current.model_copy(update={
                "usageCount": usage,
                "updatedAt": utc_now(),
                "isVerified": verified,
                "metadata": current.metadata.model_copy(update={"avgAccuracy": min(1.0, max(0.0, avg))}),
            })
            with self._lock:
                self._templates[template_id] = updated

            if verified and not current.isVerified:
                log.info(f"Template verified: id={template_id} usage={usage} accuracy={avg:.3f}")

            try:
                self.store.update(updated)
            except Exception as e:
                log.error(f"Failed to persist template metrics: id={template_id} error={type(e).__name__}: {e}")
            return updated

    def create_template_from_ai(self, statement: StatementRecord, raw_text: str, user_id: str) -> BankTemplate:
        """Build a template from an AI extraction and register it."""
        return self.register(self.builder.create_template_from_ai(statement, raw_text, user_id))
