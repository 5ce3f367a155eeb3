"""
crm_sync.daemon - Daemon and scheduler module

Background sync scheduling with incremental and full intervals and signal handling.
"""

import re

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}


def parse_interval(interval: str | int) -> int:
    """Parse an interval string into seconds.

    Accepts interval strings with units (s, m, h, d) or plain integers.

    Args:
        interval: Interval specification. Examples:
            - "30s" -> 30 seconds
            - "15m" -> 900 seconds
            - "1h" -> 3600 seconds
            - "1d" -> 86400 seconds
            - 3600 -> 3600 seconds (pass-through)
            - "3600" -> 3600 seconds (numeric string)

    Returns:
        Interval in seconds as a positive integer.

    Raises:
        ValueError: If the interval format is invalid, uses an unknown unit,
            or is not positive.
    """
    if isinstance(interval, bool):
        raise ValueError("Invalid interval type: bool. Expected str or int.")

    if isinstance(interval, int):
        seconds = interval
    elif isinstance(interval, str):
        text = interval.lower().strip()
        if text.isdigit():
            seconds = int(text)
        else:
            match = re.match(r"^(\d+)\s*([smhd])$", text)
            if not match:
                raise ValueError(
                    f"Invalid interval format: '{interval}'. "
                    "Use format like '30s', '15m', '1h', or '1d'."
                )
            seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    else:
        raise ValueError(
            f"Invalid interval type: {type(interval).__name__}. Expected str or int."
        )

    if seconds <= 0:
        raise ValueError(f"Interval must be positive, got {interval!r}")
    return seconds


# Imports after parse_interval to avoid circular dependencies
from crm_sync.daemon.scheduler import (  # noqa: E402
    DEFAULT_FULL_SYNC_INTERVAL,
    DEFAULT_INTERVAL,
    DEFAULT_PID_DIR,
    DEFAULT_PID_FILE,
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    DaemonStats,
    PIDFileError,
    PIDFileManager,
)

__all__ = [
    "parse_interval",
    "DaemonScheduler",
    "DaemonStats",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "DEFAULT_PID_DIR",
    "DEFAULT_PID_FILE",
    "DEFAULT_INTERVAL",
    "DEFAULT_FULL_SYNC_INTERVAL",
]
