"""
Logging setup with categories and cycle ID support.

Provides:
- 4 log categories: system, gateway, auth, data
- Automatic module -> category routing
- Cycle ID correlation in all logs
- Per-category log files written through a QueueListener (non-blocking)
- Optional coloured console output
- Configurable timezone for log timestamps

Categories:
- system: Startup, shutdown, config, scheduler, orchestration
- gateway: IB gateway connection, subscriptions, contract lookups
- auth: OAuth token refresh, sweeps, re-authentication
- data: Snapshot reconciliation, persistence, quotes and FX rates
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
import os
import re
import json
from queue import Queue
from pathlib import Path
from typing import Optional, Dict, List
from datetime import datetime
from zoneinfo import ZoneInfo

from .trace_context import get_cycle_id

# =============================================================================
# GLOBAL STATE
# =============================================================================

LOGGER_PREFIX = "itrack"

_session_run_number: Optional[int] = None

# None = local time
_log_timezone: Optional[ZoneInfo] = None

_verbose_mode: bool = False

_category_loggers: Dict[str, logging.Logger] = {}

_queue_listeners: List[logging.handlers.QueueListener] = []

# =============================================================================
# LOG CATEGORIES AND ROUTING
# =============================================================================

CATEGORIES = ["system", "gateway", "auth", "data"]

CATEGORY_SUFFIXES = {
    "system": "sys",
    "gateway": "gw",
    "auth": "ath",
    "data": "dat",
}

# More specific paths should come first
MODULE_ROUTING: List[tuple[str, str]] = [
    ("investtrack.infrastructure.adapters.ib", "gateway"),
    ("investtrack.infrastructure.adapters.schwab", "auth"),
    ("investtrack.infrastructure.adapters.yahoo", "data"),
    ("investtrack.infrastructure.stores", "data"),
    ("investtrack.infrastructure.persistence", "data"),
    ("investtrack.services.token_lifecycle", "auth"),
    ("investtrack.services.snapshot_reconciler", "data"),
    ("investtrack.services.exchange_rate_service", "data"),
    ("investtrack.services", "system"),
    ("investtrack.application", "system"),
    ("investtrack", "system"),
]


def get_category_for_module(module_name: str) -> str:
    """
    Determine the log category for a given module name.

    Args:
        module_name: Full module path (e.g. "investtrack.services.token_lifecycle").

    Returns:
        Category name.
    """
    for prefix, category in MODULE_ROUTING:
        if module_name.startswith(prefix):
            return category
    return "system"


# =============================================================================
# TIMEZONE SUPPORT
# =============================================================================

def set_log_timezone(tz: Optional[str] = None) -> None:
    """
    Set the timezone for log timestamps.

    Args:
        tz: Timezone name (e.g. "Europe/Dublin", "UTC"). None or "local"
            uses local system time.
    """
    global _log_timezone
    if tz is None or tz == "local":
        _log_timezone = None
    else:
        _log_timezone = ZoneInfo(tz)


def get_current_timestamp() -> str:
    """ISO format timestamp in the configured log timezone."""
    if _log_timezone is not None:
        return datetime.now(_log_timezone).isoformat()
    return datetime.now().isoformat()


def set_verbose_mode(enabled: bool) -> None:
    """Enable or disable verbose mode (DEBUG level logging)."""
    global _verbose_mode
    _verbose_mode = enabled


def is_verbose_mode() -> bool:
    return _verbose_mode


# =============================================================================
# FORMATTERS
# =============================================================================

class JSONFormatter(logging.Formatter):
    """
    Single-line JSON formatter.

    Fields: ts, level, cat, cycle, msg, plus "data" (from extra={"data": ...})
    and "exception" when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": get_current_timestamp(),
            "level": record.levelname,
            "cat": self._get_category(record.name),
            "cycle": get_cycle_id(),
            "msg": record.getMessage(),
        }

        if hasattr(record, "data") and record.data:
            log_entry["data"] = record.data

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)

    def _get_category(self, logger_name: str) -> str:
        if logger_name.startswith(f"{LOGGER_PREFIX}."):
            parts = logger_name.split(".")
            if len(parts) >= 2 and parts[1] in CATEGORIES:
                return parts[1]
        return "system"


class ConsoleFormatter(logging.Formatter):
    """
    Console formatter with cycle ID and color support.

    Format: [LEVEL] [cycle] message
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        cycle_id = get_cycle_id()
        level = record.levelname

        if self.use_colors:
            color = self.COLORS.get(level, "")
            return f"{color}[{level:7}]{self.RESET} [{cycle_id}] {record.getMessage()}"
        return f"[{level:7}] [{cycle_id}] {record.getMessage()}"


# =============================================================================
# LOGGER FACTORY
# =============================================================================

def get_logger(module_name: str) -> logging.Logger:
    """
    Get a logger for the given module, routed to its category logger.

    Example:
        from investtrack.utils.logging_setup import get_logger
        logger = get_logger(__name__)
        logger.info("Processing...")
    """
    category = get_category_for_module(module_name)
    return logging.getLogger(f"{LOGGER_PREFIX}.{category}")


# =============================================================================
# RUN NUMBER MANAGEMENT
# =============================================================================

def _get_next_run_number(log_dir: str, env: str, date_str: str) -> int:
    """Find the next available run number for today's date."""
    log_path = Path(log_dir) / date_str
    if not log_path.exists():
        return 1

    suffixes = "|".join(CATEGORY_SUFFIXES.values())
    pattern = re.compile(
        rf'^refresh_{re.escape(env)}_(?:{suffixes})_{re.escape(date_str)}_(\d+)\.log$'
    )

    max_num = 0
    for filename in os.listdir(log_path):
        match = pattern.match(filename)
        if match:
            max_num = max(max_num, int(match.group(1)))

    return max_num + 1


def _get_session_run_number(log_dir: str, env: str) -> int:
    global _session_run_number

    if _session_run_number is None:
        date_str = datetime.now().strftime('%Y-%m-%d')
        _session_run_number = _get_next_run_number(log_dir, env, date_str)

    return _session_run_number


def reset_session_run_number() -> None:
    """Reset the session run number (for testing)."""
    global _session_run_number
    _session_run_number = None


# =============================================================================
# CATEGORY LOGGING SETUP
# =============================================================================

def setup_category_logging(
    env: str,
    log_dir: str = "./logs",
    level: str = "INFO",
    console: bool = False,
    verbose: bool = False,
) -> Dict[str, logging.Logger]:
    """
    Set up one log file per category.

    Files are created under logs/{date}/refresh_{env}_{suffix}_{date}_{run}.log.

    Args:
        env: Environment name (dev/prod).
        log_dir: Base directory for log files.
        level: Default logging level.
        console: Enable console output.
        verbose: Enable verbose (DEBUG) mode.

    Returns:
        Dict mapping category name to logger.
    """
    shutdown_logging()

    for category in CATEGORIES:
        logger = logging.getLogger(f"{LOGGER_PREFIX}.{category}")
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    set_verbose_mode(verbose)
    effective_level = "DEBUG" if verbose else level.upper()

    date_str = datetime.now().strftime('%Y-%m-%d')
    log_path = Path(log_dir) / date_str
    log_path.mkdir(parents=True, exist_ok=True)

    run_number = _get_session_run_number(log_dir, env)

    for category in CATEGORIES:
        suffix = CATEGORY_SUFFIXES[category]
        filename = f"refresh_{env}_{suffix}_{date_str}_{run_number}.log"

        logger = logging.getLogger(f"{LOGGER_PREFIX}.{category}")
        logger.setLevel(getattr(logging, effective_level, logging.INFO))
        logger.propagate = False

        file_handler = logging.FileHandler(
            filename=str(log_path / filename),
            mode='a',
            encoding='utf-8'
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(getattr(logging, effective_level, logging.INFO))

        log_queue: Queue = Queue(-1)
        logger.addHandler(logging.handlers.QueueHandler(log_queue))

        listener = logging.handlers.QueueListener(
            log_queue, file_handler, respect_handler_level=True
        )
        listener.start()
        _queue_listeners.append(listener)

        if console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(ConsoleFormatter(use_colors=sys.stderr.isatty()))
            console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
            logger.addHandler(console_handler)

        _category_loggers[category] = logger

    return _category_loggers


def shutdown_logging() -> None:
    """Stop all queue listeners (flushes pending records to disk)."""
    for listener in _queue_listeners:
        listener.stop()
    _queue_listeners.clear()
