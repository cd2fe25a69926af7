"""Bank template models: learned, reusable per-bank extraction recipes."""
from __future__ import annotations
import re
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from core.utils import utc_now


class TransactionIndicators(BaseModel):
    """Keywords distinguishing credit and debit language."""
    creditKeywords: List[str] = Field(default_factory=list)
    debitKeywords: List[str] = Field(default_factory=list)


class ParsingRules(BaseModel):
    """
    Regex pattern definitions for a bank's statement layout.

    Patterns are kept as regex source strings so templates stay JSON
    serializable; ``compile_pattern`` turns them into case-insensitive regexes.
    """
    dateFormats: List[str] = Field(default_factory=lambda: ["MM/DD/YYYY", "DD/MM/YYYY", "YYYY-MM-DD"])
    amountPatterns: List[str] = Field(default_factory=list)
    descriptionPatterns: List[str] = Field(default_factory=list)
    balancePatterns: List[str] = Field(default_factory=list)
    accountNumberPattern: str = ""
    statementPeriodPattern: str = ""
    transactionPattern: Optional[str] = Field(
        default=None,
        description="Composite line pattern with named groups date/description/amount[/balance]",
    )
    transactionIndicators: TransactionIndicators = Field(default_factory=TransactionIndicators)


class AIInstructions(BaseModel):
    extractionPrompt: str = ""
    validationRules: List[str] = Field(default_factory=list)
    categoryMappings: Dict[str, str] = Field(default_factory=dict)


class TemplateMetadata(BaseModel):
    supportedFormats: List[Literal["pdf", "csv", "excel"]] = Field(default_factory=lambda: ["pdf"])
    language: str = "en"
    region: str = "US"
    currency: str = "USD"
    avgAccuracy: float = Field(default=0.85, ge=0.0, le=1.0)
    sampleStatements: List[str] = Field(default_factory=list)


class BankTemplate(BaseModel):
    id: str
    bankName: str
    templateName: str
    version: str = "1.0.0"
    createdAt: datetime = Field(default_factory=utc_now)
    updatedAt: datetime = Field(default_factory=utc_now)
    createdBy: str
    usageCount: int = Field(default=1, ge=0)
    isVerified: bool = False

    parsing: ParsingRules = Field(default_factory=ParsingRules)
    aiInstructions: AIInstructions = Field(default_factory=AIInstructions)
    metadata: TemplateMetadata = Field(default_factory=TemplateMetadata)

    @field_validator("bankName", "templateName", mode="before")
    @classmethod
    def _strip_names(cls, value) -> str:
        s = str(value).strip() if value is not None else ""
        if not s:
            raise ValueError("name must not be empty")
        return s

    @property
    def avgAccuracy(self) -> float:
        return self.metadata.avgAccuracy


class TemplateMatch(BaseModel):
    """Result of scoring one template against a statement's text."""
    template: BankTemplate
    confidence: float = Field(ge=0.0, le=1.0)
    matchedFeatures: List[str] = Field(default_factory=list)


def compile_pattern(source: str) -> Optional[re.Pattern]:
    """
    Compile a stored pattern source case-insensitively.

    Returns None for empty sources; invalid sources raise ``re.error``.
    """
    if not source:
        return None
    return re.compile(source, re.IGNORECASE | re.MULTILINE)
