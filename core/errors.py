"""
Domain errors raised by the statement pipeline.

Each error names the pipeline stage that failed and, when known, the
document being processed, so a single message is enough to tell the
caller what broke and where.

An empty transaction list is *not* an error: it is reported through
``StatementRecord.is_empty``.
"""
from __future__ import annotations
from typing import Optional


class StatementError(Exception):
    """Base class for all pipeline errors."""

    default_stage = "pipeline"

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        document: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.stage = stage or self.default_stage
        self.document = document
        self.cause = cause
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        prefix = f"[{self.stage}]"
        if self.document:
            prefix += f" {self.document}:"
        return f"{prefix} {base}"

    def with_document(self, document: str) -> "StatementError":
        """Attach the document name if the raiser did not know it."""
        if not self.document:
            self.document = document
        return self


class ExtractionFailure(StatementError):
    """The document could not be converted to text."""

    default_stage = "text_extraction"


class AIResponseInvalid(StatementError):
    """The AI returned text that is not the expected structured payload."""

    default_stage = "ai_response"

    def __init__(self, message: str, *, raw_response: str = "", **kwargs):
        self.raw_response = raw_response
        super().__init__(message, **kwargs)


class AICallFailure(StatementError):
    """Transport, quota or timeout error from the AI completion service."""

    default_stage = "ai_call"


class TemplateParseFailure(StatementError):
    """A template-guided parse raised or produced implausible output."""

    default_stage = "template_parse"

    def __init__(self, message: str, *, template_id: Optional[str] = None, **kwargs):
        self.template_id = template_id
        super().__init__(message, **kwargs)
