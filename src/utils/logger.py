"""
Loguru sinks shared by the CLI and the API server.

Libraries that log through the standard `logging` module (uvicorn, httpx,
SQLAlchemy) are routed into loguru so every line ends up in the same sinks
with the same format.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"

ROUTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "sqlalchemy.engine")


class _LoguruHandler(logging.Handler):
    """Forward stdlib log records to loguru, keeping the original level."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def _route_stdlib(level: str) -> None:
    handler = _LoguruHandler()
    for name in ROUTED_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [handler]
        stdlib_logger.propagate = False
    # SQLAlchemy echoes every statement at INFO; only surface it when debugging.
    logging.getLogger("sqlalchemy.engine").setLevel("DEBUG" if level == "DEBUG" else "WARNING")


def setup_logger(log_level: str = "INFO", log_file: Optional[str] = "logs/notebook_rag.log") -> None:
    """
    Replace loguru's default sink with a coloured console sink and, when
    log_file is set, a rotating zip-compressed file sink.
    """
    level = log_level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            format=FILE_FORMAT,
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            enqueue=True,
        )

    _route_stdlib(level)
    logger.debug(f"[Logger] level={level} file={log_file or '-'}")
