"""Utility helpers for reusable functionality."""

from .datetime import (
    ensure_app_timezone,
    from_epoch_seconds,
    get_app_timezone,
    isoformat_or_none,
    now_in_app_naive_datetime,
    now_in_app_timezone,
)

__all__ = [
    "ensure_app_timezone",
    "from_epoch_seconds",
    "get_app_timezone",
    "isoformat_or_none",
    "now_in_app_naive_datetime",
    "now_in_app_timezone",
]
