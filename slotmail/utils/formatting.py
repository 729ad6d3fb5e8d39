"""
slotmail Formatting Utilities

Helper functions for formatting status output.
"""

from datetime import datetime
from typing import Optional


def format_timestamp(timestamp_ms: Optional[int]) -> str:
    """
    Format millisecond timestamp to human-readable string.

    Args:
        timestamp_ms: Milliseconds since epoch

    Returns:
        Formatted string like "2025-12-10 14:32"
    """
    if not timestamp_ms:
        return "Never"

    dt = datetime.fromtimestamp(timestamp_ms / 1000)
    return dt.strftime("%Y-%m-%d %H:%M")


def format_duration(duration_ms: int) -> str:
    """
    Format a duration in milliseconds.

    Returns:
        Formatted string like "2d 5h 30m"
    """
    elapsed = max(0, int(duration_ms // 1000))

    days = elapsed // 86400
    hours = (elapsed % 86400) // 3600
    minutes = (elapsed % 3600) // 60

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0 or days > 0:
        parts.append(f"{hours}h")
    parts.append(f"{minutes}m")

    return " ".join(parts)


def truncate(text: str, max_length: int = 50, suffix: str = "...") -> str:
    """Truncate text to maximum length, including suffix."""
    if len(text) <= max_length:
        return text

    return text[:max_length - len(suffix)] + suffix
