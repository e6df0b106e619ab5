"""Utility functions shared across depot_mirror."""

from __future__ import annotations


def is_numeric_id(value: object) -> bool:
    """Check whether a value is a decimal identifier string.

    Args:
        value: Candidate identifier (depot key, branch name)

    Returns:
        True for non-empty ASCII digit strings
    """
    return isinstance(value, str) and value.isascii() and value.isdigit()


def completion_percent(done: int, total: int) -> float:
    """Share of ``total`` that is ``done``, rounded to two decimals.

    An empty total counts as complete.

    Example:
        >>> completion_percent(3, 4)
        75.0
        >>> completion_percent(0, 0)
        100.0
    """
    if total <= 0:
        return 100.0
    return round(done / total * 100, 2)


def format_size(size: int | None) -> str:
    """Format byte size as human-readable string.

    Args:
        size: Size in bytes, or None when unknown

    Returns:
        Formatted string with appropriate unit (e.g., "1.5 MB"), "N/A" if unknown

    Example:
        >>> format_size(1536)
        '1.5 KB'
    """
    if size is None:
        return "N/A"
    if size < 0:
        return "0 B"

    size_float = float(size)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_float < 1024.0:
            if unit == "B":
                return f"{int(size_float)} {unit}"
            return f"{size_float:.1f} {unit}"
        size_float /= 1024.0
    return f"{size_float:.1f} PB"
