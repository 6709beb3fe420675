"""
Logging configuration for SMS Nudge.

Single 'smsnudge' logger used across all modules.

  Log file : logs/smsnudge.log
  Rotation : 5 MB × 3 backups
  Level    : LOG_LEVEL env var (DEBUG / INFO / WARNING / ERROR / CRITICAL)
             defaults to INFO when unset

Usage
-----
    from smsnudge.logging_config import configure_logging, log_call

    # Once at startup (idempotent):
    configure_logging()

    # On any function you want traced:
    @log_call
    def preview_recipients(account_id, algorithm):
        ...

Log format per line
-------------------
    2026-02-16 14:32:01 | INFO     | CALL preview_recipients | args=('acct-1', 'campaign')
    2026-02-16 14:32:01 | INFO     | OK   preview_recipients | 42ms
    2026-02-16 14:32:01 | ERROR    | FAIL reserve | InsufficientCredits: ... | 3ms
"""

import functools
import logging
import logging.handlers
import os
import time
from pathlib import Path

_LOG_DIR = Path(__file__).parent.parent / "logs"
_LOG_FILE = _LOG_DIR / "smsnudge.log"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_BACKUP_COUNT = 3
_MAX_ARG_REPR = 200  # client lists and forms get long


def configure_logging() -> logging.Logger:
    """
    Set up the smsnudge logger. Idempotent, called on every CLI entry.
    Returns the configured logger.
    """
    _LOG_DIR.mkdir(exist_ok=True)

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger("smsnudge")

    # Guard: don't add duplicate handlers if already configured
    if logger.handlers:
        return logger

    logger.setLevel(level)

    handler = logging.handlers.RotatingFileHandler(
        _LOG_FILE,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(handler)

    return logger


def _short_repr(value) -> str:
    text = repr(value)
    if len(text) > _MAX_ARG_REPR:
        return text[:_MAX_ARG_REPR] + "..."
    return text


def _format_args(args, kwargs) -> str:
    parts = [_short_repr(a) for a in args] + [f"{k}={_short_repr(v)}" for k, v in kwargs.items()]
    return ", ".join(parts) if parts else "—"


def log_call(func):
    """
    Decorator: logs entry, clean exit, and exceptions for any function.

    - DEBUG on entry   : CALL <name> | args=(...)
    - INFO  on success : OK   <name> | <N>ms
    - ERROR on failure : FAIL <name> | ExcType: message | <N>ms   (then re-raises)
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger("smsnudge")
        name = func.__name__
        start = time.perf_counter()

        arg_str = _format_args(args, kwargs)
        logger.debug(f"CALL {name} | args=({arg_str})")

        try:
            result = func(*args, **kwargs)
            ms = int((time.perf_counter() - start) * 1000)
            logger.info(f"OK   {name} | {ms}ms")
            return result
        except Exception as exc:
            ms = int((time.perf_counter() - start) * 1000)
            logger.error(f"FAIL {name} | {type(exc).__name__}: {exc} | {ms}ms")
            raise

    return wrapper
