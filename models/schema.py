from __future__ import annotations
import math
import re
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

UNKNOWN = "Unknown"
UNKNOWN_PERIOD = "Unknown Period"
DEFAULT_CATEGORY = "Other"

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def is_iso_date(value: str) -> bool:
    """True when ``value`` is a normalized ``YYYY-MM-DD`` date string."""
    return bool(value) and bool(_ISO_DATE_RE.match(value))


def clamp_confidence(value) -> Optional[float]:
    """Clamp to [0, 1]; non-numeric or non-finite values become None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(v):
        return None
    return min(1.0, max(0.0, v))


class Transaction(BaseModel):
    date: str = Field(..., description="ISO date YYYY-MM-DD, raw text when it could not be normalized")
    description: str
    amount: float = Field(ge=0, description="Absolute amount; sign captured by type")
    type: Literal["debit", "credit"]
    currency: str = Field(default=UNKNOWN)
    category: str = Field(default=DEFAULT_CATEGORY)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    balance: Optional[float] = None

    model_config = {
        "frozen": True,
        "extra": "forbid",
    }

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls, value) -> str:
        s = value.strip() if isinstance(value, str) else ""
        if not s:
            raise ValueError("description must not be empty")
        return s

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, value) -> str:
        s = str(value).strip() if value is not None else ""
        return s or DEFAULT_CATEGORY

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value) -> str:
        s = str(value).strip() if value is not None else ""
        return s.upper() if s and s != UNKNOWN else UNKNOWN

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value) -> Optional[float]:
        return clamp_confidence(value)

    def with_category(self, category: str, confidence: Optional[float] = None) -> "Transaction":
        """Return a re-categorized copy; the original record is left untouched."""
        return self.model_copy(update={
            "category": category.strip() if category and category.strip() else DEFAULT_CATEGORY,
            "confidence": clamp_confidence(confidence),
        })

    @property
    def signed_amount(self) -> float:
        return self.amount if self.type == "credit" else -self.amount


def sort_by_date(transactions: list[Transaction]) -> list[Transaction]:
    """Stable ascending sort; ties keep recognition order."""
    return sorted(transactions, key=lambda t: t.date)


class StatementRecord(BaseModel):
    bankName: str = Field(default=UNKNOWN)
    accountNumber: str = Field(default=UNKNOWN)
    statementPeriod: str = Field(default=UNKNOWN_PERIOD)
    transactions: list[Transaction] = Field(default_factory=list)
    openingBalance: Optional[float] = None
    closingBalance: Optional[float] = None

    model_config = {
        "extra": "forbid",
    }

    @field_validator("bankName", "accountNumber", mode="before")
    @classmethod
    def _unknown_if_blank(cls, value) -> str:
        s = str(value).strip() if value is not None else ""
        return s or UNKNOWN

    @field_validator("statementPeriod", mode="before")
    @classmethod
    def _unknown_period_if_blank(cls, value) -> str:
        s = str(value).strip() if value is not None else ""
        return s or UNKNOWN_PERIOD

    @field_validator("transactions", mode="before")
    @classmethod
    def _ensure_list(cls, value):
        if value is None:
            return []
        return value

    @model_validator(mode="after")
    def _sort_transactions(self) -> "StatementRecord":
        self.transactions = sort_by_date(self.transactions)
        return self

    @property
    def is_empty(self) -> bool:
        """No transactions were recognized by any strategy."""
        return not self.transactions

    @property
    def total_credits(self) -> float:
        return sum(t.amount for t in self.transactions if t.type == "credit")

    @property
    def total_debits(self) -> float:
        return sum(t.amount for t in self.transactions if t.type == "debit")

    @property
    def net_amount(self) -> float:
        return self.total_credits - self.total_debits

    @property
    def currency(self) -> str:
        """First known transaction currency, "Unknown" otherwise."""
        for t in self.transactions:
            if t.currency != UNKNOWN:
                return t.currency
        return UNKNOWN
