"""Byte sizes and transfer rates."""

import re
from typing import Optional

from scripthub.errors import ValidationError

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMG]?)B?\s*$", re.IGNORECASE)
_MULTIPLIERS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}

UNITS = ("bytes", "KB", "MB", "GB", "TB")


def parse_size(value: str) -> int:
    """
    Parse "10M", "512K", "2G" or "100" into bytes (1024-based).

    Raises:
        ValidationError: when the value is not a size
    """
    match = _SIZE_RE.match(str(value))
    if not match:
        raise ValidationError(f"Invalid size '{value}' (use e.g. 100, 10K, 5M, 1G)")
    number, suffix = match.groups()
    return int(number) * _MULTIPLIERS[suffix.upper()]


def format_bytes(num_bytes: float, unit: str = "auto") -> str:
    """
    Human-readable byte count with two decimals.

    unit is "auto" or one of bytes/KB/MB/GB; auto picks the largest unit
    that keeps the value at or above 1.
    """
    if unit and unit != "auto":
        normalized = unit.upper() if unit.lower() != "bytes" else "bytes"
        if normalized not in UNITS:
            raise ValidationError(f"Unknown unit '{unit}'")
        if normalized == "bytes":
            return f"{int(num_bytes)} bytes"
        power = UNITS.index(normalized)
        return f"{num_bytes / 1024 ** power:.2f} {normalized}"

    if abs(num_bytes) < 1024:
        return f"{int(num_bytes)} bytes"
    value = float(num_bytes)
    for name in UNITS[1:]:
        value /= 1024
        if abs(value) < 1024 or name == UNITS[-1]:
            return f"{value:.2f} {name}"
    return f"{value:.2f} {UNITS[-1]}"


def bytes_per_second(previous: int, current: int, interval: float) -> float:
    """Rate from two counter readings; a counter that went backwards gives 0."""
    if interval <= 0:
        return 0.0
    delta = current - previous
    if delta < 0:
        return 0.0
    return delta / interval


def bps_to_mbps(bytes_per_sec: float) -> float:
    """Bytes per second to megabits per second."""
    return round(bytes_per_sec * 8 / 1_000_000, 2)


def parse_percent(value: str) -> Optional[int]:
    """'85%' -> 85; '-' or empty -> None."""
    value = value.strip().rstrip("%")
    return int(value) if value.isdigit() else None
