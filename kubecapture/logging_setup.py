from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

LOG_FILE = Path(os.environ.get("KUBECAPTURE_LOG_FILE", "logs/kubecapture.log"))
ACCESS_LOG_FILE = Path(os.environ.get("KUBECAPTURE_ACCESS_LOG_FILE", "logs/access.log"))
DEFAULT_CATEGORY = "SESSION"
NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.error", "asyncio")

# Propagated automatically into asyncio tasks created inside the context.
_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")


def short_uuid() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str:
    return _correlation_id_var.get()


@contextlib.contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    cid = correlation_id or short_uuid()
    token = _correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        _correlation_id_var.reset(token)


class ContextEnricherFilter(logging.Filter):
    """
    Ensures every LogRecord has:
      - category
      - correlation_id
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not getattr(record, "category", None):
            record.category = DEFAULT_CATEGORY
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def _level_from_env(name: str, default: str) -> int:
    level_name = os.environ.get(name, default).upper()
    return getattr(logging, level_name, getattr(logging, default))


def setup_logging(log_to_file: bool = True) -> None:
    """
    Central logging setup.

    Format:
      %(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s |
      %(filename)s:%(lineno)d %(funcName)s() | %(message)s
    """
    fmt = (
        "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
        "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
    )
    formatter = logging.Formatter(fmt=fmt)
    access_formatter = logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(message)s")

    level = _level_from_env("KUBECAPTURE_LOG_LEVEL", "INFO")
    external_level = _level_from_env("KUBECAPTURE_EXTERNAL_LIB_LOG_LEVEL", "WARNING")
    access_level = _level_from_env("KUBECAPTURE_ACCESS_LOG_LEVEL", "INFO")

    root_logger = logging.getLogger()
    access_logger = logging.getLogger("kubecapture.access")

    # Second call only refreshes levels.
    if getattr(root_logger, "_kubecapture_logging_installed", False):
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)
        access_logger.setLevel(access_level)
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(external_level)
        return
    root_logger.setLevel(level)

    enricher = ContextEnricherFilter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(enricher)
    root_logger.addHandler(console_handler)

    access_logger.propagate = False
    access_logger.setLevel(access_level)

    if log_to_file:
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        ACCESS_LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=10 * 1024 * 1024,
            backupCount=10,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(enricher)
        root_logger.addHandler(file_handler)

        access_file_handler = RotatingFileHandler(
            ACCESS_LOG_FILE,
            maxBytes=10 * 1024 * 1024,
            backupCount=10,
            encoding="utf-8",
        )
        access_file_handler.setFormatter(access_formatter)
        access_logger.handlers = [access_file_handler]
    else:
        access_console = logging.StreamHandler()
        access_console.setFormatter(access_formatter)
        access_logger.handlers = [access_console]

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(external_level)
    root_logger._kubecapture_logging_installed = True  # type: ignore[attr-defined]


def get_access_logger() -> logging.Logger:
    return logging.getLogger("kubecapture.access")
