"""
Soft-fail helper: run an optional step, log and substitute a default on error.
"""
import logging
from typing import Callable, TypeVar

logger = logging.getLogger("controlpanel.fallback")

T = TypeVar("T")


def fallback(op: Callable[[], T], default: T, what: str, **context) -> T:
    """
    Call op(); on any Exception log a warning and return default.

    Args:
        op:      zero-argument callable doing the optional work
        default: value returned when op raises
        what:    short description for the log line
        context: extra key=value pairs included in the log line
    """
    try:
        return op()
    except Exception as exc:
        details = ", ".join(f"{k}={v!r}" for k, v in context.items())
        logger.warning(
            "Could not %s%s: %s (using %r)",
            what, f" [{details}]" if details else "", exc, default,
        )
        return default
