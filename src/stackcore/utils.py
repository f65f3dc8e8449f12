"""
Utility functions for the stackcore package.

Includes:
- Version info
- Logging setup
- Human-readable formatting helpers
"""

from __future__ import annotations

import logging
import platform
import sys

__version__ = "0.4.0"
__version_info__ = {
    "major": 0,
    "minor": 4,
    "patch": 0,
    "status": "beta",
    "date": "2026-10-19",
}

# Maximum sample value of the 16-bit integer sample kind
USHRT_MAX = 65535
UCHAR_MAX = 255


def get_version_banner() -> str:
    """Return a formatted version banner for logging."""
    return f"stackcore v{__version__} | Robust statistics and frame combination"


def get_platform_info() -> str:
    """Return platform information string."""
    return f"{platform.system()} {platform.release()} / Python {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"


def setup_logging(verbose: bool = False) -> None:
    """Configure root logging for scripts driving the stacking core."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable form.

    Parameters
    ----------
    seconds : float
        Duration in seconds.

    Returns
    -------
    str
        Formatted string like "2h 15m 30s" or "45.2s".
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.0f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs:.0f}s"


def format_bytes(n_bytes: float) -> str:
    """Format byte count in human-readable form."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if n_bytes < 1024:
            return f"{n_bytes:.1f} {unit}"
        n_bytes /= 1024
    return f"{n_bytes:.1f} PB"


def round_to_int(value: float) -> int:
    """Round half away from zero, as registration shifts are rounded."""
    if value >= 0:
        return int(value + 0.5)
    return -int(-value + 0.5)
