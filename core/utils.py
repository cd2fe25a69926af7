"""
Utility functions for common operations.

Provides helper functions for:
- File size formatting
- Content hashing and ID generation
- Safe file writing
- Currency formatting
"""
from __future__ import annotations
from datetime import datetime, timezone
from pathlib import Path
import hashlib
import uuid
from typing import Union

from core.logger import get_logger

log = get_logger("core/utils")


CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "CAD": "C$",
    "AUD": "A$",
    "JPY": "¥",
    "CNY": "¥",
    "INR": "₹",
    "BDT": "৳",
    "CHF": "CHF",
    "SGD": "S$",
    "NZD": "NZ$",
    "HKD": "HK$",
    "BRL": "R$",
    "MXN": "Mex$",
    "ZAR": "R",
    "KRW": "₩",
    "RUB": "₽",
    "TRY": "₺",
    "PLN": "zł",
}


def human_size(num_bytes: Union[int, float]) -> str:
    """
    Convert bytes to human-readable size format.

    Examples:
        >>> human_size(1024)
        "1.0 KB"
        >>> human_size(0)
        "0.0 B"
    """
    if not isinstance(num_bytes, (int, float)):
        log.warning(f"Invalid input type for human_size: {type(num_bytes)}")
        return "0.0 B"

    if num_bytes < 0:
        log.warning(f"Negative byte value: {num_bytes}")
        return "0.0 B"

    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    size = float(num_bytes)
    idx = 0

    while size >= 1024 and idx < len(units) - 1:
        size /= 1024
        idx += 1

    return f"{size:.1f} {units[idx]}"


def sha256_bytes(data: bytes) -> str:
    """
    Calculate SHA-256 hash of byte data.

    Raises:
        TypeError: If data is not bytes
    """
    if not isinstance(data, bytes):
        error_msg = f"Expected bytes, got {type(data)}"
        log.error(error_msg)
        raise TypeError(error_msg)

    hash_digest = hashlib.sha256(data).hexdigest()
    log.debug(f"Generated SHA-256 hash: length={len(data)} bytes hash={hash_digest[:16]}...")

    return hash_digest


def safe_write(path: Path, data: bytes) -> None:
    """
    Write bytes to a file, creating parent directories as needed.

    The payload lands in a sibling temp file first and is then moved over the
    target, so readers never observe a half-written file.

    Raises:
        TypeError: If data is not bytes
        IOError: If write operation fails
    """
    if not isinstance(data, bytes):
        error_msg = f"Expected bytes, got {type(data)}"
        log.error(error_msg)
        raise TypeError(error_msg)

    path = Path(path)
    tmp_path = path.with_name(f".{path.name}.tmp")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tmp_path.open("wb") as f:
            f.write(data)
        tmp_path.replace(path)

        log.debug(f"Safely wrote file: path={path} size={human_size(len(data))}")

    except Exception as e:
        log.error(f"Failed to write file {path}: {e}")
        raise IOError(f"Failed to write file: {e}")


def make_id(*parts: str) -> str:
    """
    Generate a deterministic 32-character hex ID from string parts.

    Parts are joined with "||" and hashed with SHA-256.

    Raises:
        TypeError: If any part is not a string
    """
    for i, part in enumerate(parts):
        if not isinstance(part, str):
            error_msg = f"Part {i} is not a string: {type(part)}"
            log.error(error_msg)
            raise TypeError(error_msg)

    joined = "||".join(parts)
    hash_id = hashlib.sha256(joined.encode("utf-8")).hexdigest()[:32]

    log.debug(f"Generated ID: parts_count={len(parts)} id={hash_id[:8]}...")

    return hash_id


def new_template_id(bank_name: str) -> str:
    """Opaque, unique template identifier (``template_<hex>``)."""
    return "template_" + make_id(bank_name, utc_now().isoformat(), uuid.uuid4().hex)[:16]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_currency(amount: Union[int, float], currency: str | None = None) -> str:
    """
    Format an amount with the appropriate currency symbol.

    Unknown codes fall back to "$", the way statements without a detectable
    currency are rendered.

    Examples:
        >>> format_currency(1234.56, "EUR")
        "€1,234.56"
        >>> format_currency(-5, None)
        "-$5.00"
    """
    currency_code = (currency or "USD").upper().strip()
    symbol = CURRENCY_SYMBOLS.get(currency_code, "$")

    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"
