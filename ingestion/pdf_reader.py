from __future__ import annotations
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Union
import time

from PyPDF2 import PdfReader, errors as pypdf_errors
from pdfminer.high_level import extract_text as pdfminer_extract_text, extract_pages
from pdfminer.layout import LTTextContainer
from pdfminer.pdfparser import PDFSyntaxError

from core.errors import ExtractionFailure
from core.logger import get_logger
from core.utils import human_size, sha256_bytes

log = get_logger("ingestion/pdf_reader")


# Configuration constants
MIN_TEXT_LEN_PER_PAGE = 20  # Minimum characters per page before triggering fallback
DEFAULT_EMPTY_PASSWORD = ""  # Default password to try for encrypted PDFs
PAGE_SEPARATOR = "\n"

PdfSource = Union[str, Path, bytes]


@dataclass(frozen=True)
class PDFMeta:
    """PDF metadata extracted from document properties."""
    title: Optional[str]
    author: Optional[str]
    subject: Optional[str]
    producer: Optional[str]
    creator: Optional[str]


@dataclass(frozen=True)
class PDFReadResult:
    """
    Complete result from PDF reading operation.

    Attributes:
        name: Display name of the document (file name or content hash)
        encrypted: Whether the PDF was encrypted
        num_pages: Total number of pages extracted
        meta: PDF metadata (title, author, etc.)
        pages: Extracted text, one string per page, in page order
    """
    name: str
    encrypted: bool
    num_pages: int
    meta: PDFMeta
    pages: List[str]

    @property
    def text(self) -> str:
        """All pages concatenated in order, separated by a line break."""
        return PAGE_SEPARATOR.join(self.pages)


def document_name(source: PdfSource) -> str:
    """Human-readable name for logs and error messages."""
    if isinstance(source, bytes):
        return f"<bytes sha256={sha256_bytes(source)[:12]}>"
    return Path(source).name


def _open_stream(source: PdfSource) -> BinaryIO:
    if isinstance(source, bytes):
        return BytesIO(source)
    return open(source, "rb")


def _pypdf2_extract(source: PdfSource, name: str, password: Optional[str]) -> PDFReadResult:
    """
    Primary, fast extractor using PyPDF2. Handles decryption if needed.

    Raises:
        pypdf_errors.PdfReadError: If PDF is malformed or unreadable
        pypdf_errors.FileNotDecryptedError: If PDF is encrypted and password is wrong/missing
    """
    log.debug(f"Starting PyPDF2 extraction: doc={name}")

    stream = _open_stream(source)
    try:
        try:
            reader = PdfReader(stream)
        except pypdf_errors.PdfReadError as e:
            log.error(f"PyPDF2 failed to open PDF: doc={name} error={e!r}")
            raise

        encrypted = bool(reader.is_encrypted)

        if encrypted:
            log.info(f"PDF is encrypted: doc={name}")
            pwd = password or DEFAULT_EMPTY_PASSWORD
            try:
                decrypt_result = reader.decrypt(pwd)
            except pypdf_errors.WrongPasswordError:
                decrypt_result = 0

            # PyPDF2 returns 0 for wrong password, non-zero for success
            if not decrypt_result:
                error_msg = f"Failed to decrypt PDF - incorrect or missing password: doc={name}"
                log.error(error_msg)
                raise pypdf_errors.FileNotDecryptedError(error_msg)
            log.info(f"PDF decrypted successfully: doc={name}")

        pages_text: List[str] = []
        failed_pages = 0

        for page_num, page in enumerate(reader.pages, start=1):
            try:
                pages_text.append(page.extract_text() or "")
            except Exception as e:
                # PyPDF2 can throw various exceptions for malformed pages
                log.warning(
                    f"Failed to extract text from page {page_num}: doc={name} error={type(e).__name__}: {e}"
                )
                pages_text.append("")
                failed_pages += 1

        if failed_pages > 0:
            log.warning(f"PyPDF2 failed on {failed_pages}/{len(pages_text)} pages: doc={name}")

        meta = _extract_metadata(reader)
    finally:
        stream.close()

    return PDFReadResult(
        name=name,
        encrypted=encrypted,
        num_pages=len(pages_text),
        meta=meta,
        pages=pages_text,
    )


def _pdfminer_extract(source: PdfSource, name: str, password: Optional[str]) -> List[str]:
    """
    Fallback extractor using pdfminer.six when PyPDF2 produces poor results.

    Raises:
        PDFSyntaxError: If PDF structure is malformed
    """
    log.debug(f"Starting pdfminer extraction: doc={name}")

    pages_text: List[str] = []
    with _open_stream(source) as stream:
        for page_layout in extract_pages(stream, password=password or ""):
            chunks = [el.get_text() for el in page_layout if isinstance(el, LTTextContainer)]
            pages_text.append("".join(chunks).strip())

    # Last resort: try whole-document extraction if no pages found
    if not pages_text:
        log.warning(f"pdfminer page extraction yielded no pages, trying whole-doc extraction: doc={name}")
        with _open_stream(source) as stream:
            text = pdfminer_extract_text(stream, password=password or "") or ""
        pages_text = [text]

    log.debug(f"pdfminer extraction complete: doc={name} pages={len(pages_text)}")
    return pages_text


def _needs_fallback(pages: List[str]) -> bool:
    """True when PyPDF2 produced less than MIN_TEXT_LEN_PER_PAGE chars per page on average."""
    if not pages:
        return True

    avg_chars_per_page = sum(len(p) for p in pages) / max(len(pages), 1)
    return avg_chars_per_page < MIN_TEXT_LEN_PER_PAGE


def _extract_metadata(reader: PdfReader) -> PDFMeta:
    info = reader.metadata or {}
    return PDFMeta(
        title=getattr(info, "title", None) or _safe_meta(info, "/Title"),
        author=getattr(info, "author", None) or _safe_meta(info, "/Author"),
        subject=getattr(info, "subject", None) or _safe_meta(info, "/Subject"),
        producer=getattr(info, "producer", None) or _safe_meta(info, "/Producer"),
        creator=getattr(info, "creator", None) or _safe_meta(info, "/Creator"),
    )


def _safe_meta(info: Dict[str, Any] | Any, key: str) -> Optional[str]:
    """Read one metadata key from a dict-like PyPDF2 metadata object."""
    getter = getattr(info, "get", None)
    if getter is None:
        return None
    val = getter(key, None)
    return str(val).strip() if val else None


def read_pdf(source: PdfSource, password: Optional[str] = None) -> PDFReadResult:
    """
    Read a PDF from a path or raw bytes and extract per-page text.

    Automatically handles:
    - Encrypted PDFs (with optional password)
    - Multiple extraction strategies (PyPDF2, then pdfminer fallback)
    - Metadata extraction

    Raises:
        ExtractionFailure: If the document is missing, unreadable or not a PDF.
            The underlying library error is kept on ``cause``.
    """
    start_time = time.time()
    name = document_name(source)

    if not isinstance(source, bytes):
        pdf_path = Path(source).resolve()
        if not pdf_path.is_file():
            error_msg = f"PDF file not found: {pdf_path}"
            log.error(error_msg)
            raise ExtractionFailure(error_msg, document=name)
        size = pdf_path.stat().st_size
        source = pdf_path
    else:
        size = len(source)

    log.info(f"Starting PDF extraction: doc={name} size={human_size(size)} password_provided={bool(password)}")

    try:
        primary = _pypdf2_extract(source, name, password)
    except (pypdf_errors.FileNotDecryptedError,
            pypdf_errors.WrongPasswordError,
            pypdf_errors.PdfReadError) as e:
        log.error(f"PDF extraction failed: doc={name} error={type(e).__name__}: {e}")
        raise ExtractionFailure(
            f"Not a valid or readable PDF document: {e}", document=name, cause=e
        ) from e
    except Exception as e:
        log.exception(f"Unexpected error during PDF extraction: doc={name} error={type(e).__name__}: {e}")
        raise ExtractionFailure(
            f"Failed to read PDF document: {type(e).__name__}: {e}", document=name, cause=e
        ) from e

    result = primary
    if _needs_fallback(primary.pages):
        log.warning(
            f"PyPDF2 extraction insufficient (avg chars/page < {MIN_TEXT_LEN_PER_PAGE}). "
            f"Attempting pdfminer fallback: doc={name}"
        )
        try:
            fallback_pages = _pdfminer_extract(source, name, password)
            result = PDFReadResult(
                name=name,
                encrypted=primary.encrypted,
                num_pages=len(fallback_pages),
                meta=primary.meta,  # Keep PyPDF2 metadata
                pages=fallback_pages,
            )
        except PDFSyntaxError as e:
            log.error(f"pdfminer syntax error - PDF may be malformed, using PyPDF2 result: doc={name} error={e!r}")
        except Exception as e:
            # If pdfminer also fails, keep the primary result
            log.error(f"pdfminer fallback failed, using PyPDF2 result: doc={name} error={type(e).__name__}: {e}")

    elapsed = time.time() - start_time
    total_chars = sum(len(p) for p in result.pages)
    log.info(
        f"PDF extraction complete: doc={name} pages={result.num_pages} "
        f"total_chars={total_chars} elapsed={elapsed:.2f}s"
    )
    return result


def extract_text(source: PdfSource, password: Optional[str] = None) -> str:
    """
    Extract the full text of a document, pages in order joined by a line break.

    Raises:
        ExtractionFailure: If the document cannot be read or holds no text at all
    """
    result = read_pdf(source, password=password)
    text = result.text
    if not text.strip():
        error_msg = "No extractable text found in PDF"
        log.error(f"{error_msg}: doc={result.name}")
        raise ExtractionFailure(error_msg, document=result.name)
    return text
