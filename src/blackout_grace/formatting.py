"""Formatting utilities for consistent output across CLI and daemon logs."""

import time


def format_countdown(seconds: int) -> str:
    """Format a remaining-time countdown.

    Args:
        seconds: Remaining seconds (negative values are shown as 0s)

    Returns:
        "Xm Ys" for a minute or more, otherwise "Ns".
    """
    seconds = max(0, int(seconds))
    if seconds >= 60:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds}s"


def format_age(timestamp: int | None, *, now: float | None = None) -> str:
    """Format how long ago a marker was written, for status views.

    Returns "-" for an absent marker.
    """
    if timestamp is None:
        return "-"
    if now is None:
        now = time.time()
    return f"{format_countdown(int(now) - timestamp)} ago"


def remaining(total: int, anchor: int, now: int) -> int:
    """Seconds left of a `total`-second window that started at `anchor`."""
    return total - (now - anchor)
