"""
Loguru setup shared by every module.

Two sinks: a colourized stderr line for humans and a rotating JSON file
for later analysis. Modules log through ``get_logger("<package>/<module>")``
so each record carries its component.
"""
from __future__ import annotations
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import config

STDERR_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <7}</level> | "
    "<cyan>{extra[component]}</cyan> | {message}"
)


def configure_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """(Re)install both sinks; ``level`` overrides ``LOG_LEVEL`` for this process."""
    level = (level or config.log_level).upper()
    log_file = Path(log_file or config.log_file)

    logger.remove()
    logger.configure(extra={"component": "statementsync"})
    logger.add(
        sys.stderr,
        level=level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        colorize=True,
        format=STDERR_FORMAT,
    )
    logger.add(
        log_file,
        rotation="20 MB",
        retention="14 days",
        compression="zip",
        level=level,
        enqueue=True,
        serialize=True,  # JSON lines
    )


configure_logging()


def get_logger(name: str = "app"):
    return logger.bind(component=name)
