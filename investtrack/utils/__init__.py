"""Utility modules."""

from .logging_setup import (
    setup_category_logging,
    shutdown_logging,
    reset_session_run_number,
    set_log_timezone,
    get_current_timestamp,
    get_logger,
    set_verbose_mode,
    is_verbose_mode,
)
from .trace_context import (
    get_cycle_id,
    new_cycle,
    generate_cycle_id,
)
from .timezone import now_utc, ensure_utc, age_seconds, seconds_until

__all__ = [
    # Logging setup
    "setup_category_logging",
    "shutdown_logging",
    "reset_session_run_number",
    "set_log_timezone",
    "get_current_timestamp",
    "get_logger",
    "set_verbose_mode",
    "is_verbose_mode",
    # Trace context
    "get_cycle_id",
    "new_cycle",
    "generate_cycle_id",
    # Time
    "now_utc",
    "ensure_utc",
    "age_seconds",
    "seconds_until",
]
