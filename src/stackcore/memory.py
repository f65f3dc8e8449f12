"""
Memory budgeting for block-based stacking.

The median and mean strategies read the same rows from every frame at once.
The number of rows that fit in the configured ceiling bounds the height of
the image blocks processed in parallel.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import psutil

from .parallel import split_range
from .utils import format_bytes

logger = logging.getLogger(__name__)

# Minimum number of blocks per channel, to keep threads busy
MIN_BLOCKS_PER_CHANNEL = 4


@dataclass(frozen=True)
class ImageBlock:
    """Rows [start_row, stop_row) of one channel."""

    channel: int
    start_row: int
    stop_row: int

    @property
    def height(self) -> int:
        return self.stop_row - self.start_row


def available_memory() -> int:
    """Currently available system memory in bytes."""
    return int(psutil.virtual_memory().available)


def resolve_memory_ceiling(ceiling: int | float | None) -> float | None:
    """
    Convert a configured memory ceiling to bytes.

    Parameters
    ----------
    ceiling : int, float or None
        Bytes (int), a fraction of the available memory (float in (0, 1]),
        infinity for no limit, or None for the default budget.

    Returns
    -------
    float or None
        Ceiling in bytes, `math.inf`, or None.
    """
    if ceiling is None:
        return None
    if isinstance(ceiling, float):
        if math.isinf(ceiling):
            return math.inf
        if 0.0 < ceiling <= 1.0:
            available = available_memory()
            logger.debug(
                "Memory ceiling: %.0f%% of %s available", ceiling * 100, format_bytes(available)
            )
            return ceiling * available
    if ceiling < 0:
        raise ValueError(f"Memory ceiling must be non-negative, got {ceiling}")
    return float(ceiling)


def compute_max_rows(
    rx: int,
    ry: int,
    nb_frames: int,
    sample_size: int,
    threads: int,
    ceiling_bytes: float | None,
) -> int:
    """
    Rows that can be read from all frames at once under the ceiling.

    rows = ceiling / (rx * nb_frames * sample_size * threads), then capped
    at ry, and halved to ry // 2 when it exceeds half the image so that at
    least two blocks remain. A None ceiling gives ry // 4. Never below 1.

    Parameters
    ----------
    rx, ry : int
        Frame dimensions.
    nb_frames : int
        Frames combined together.
    sample_size : int
        Bytes per sample.
    threads : int
        Worker count.
    ceiling_bytes : float or None
        Resolved ceiling (see `resolve_memory_ceiling`).

    Returns
    -------
    int
        Row budget, 1 <= rows <= ry.
    """
    if rx <= 0 or ry <= 0:
        raise ValueError(f"Invalid frame dimensions {rx}x{ry}")
    if ceiling_bytes is None:
        return max(1, ry // 4)
    if math.isinf(ceiling_bytes):
        return ry

    per_row = rx * max(nb_frames, 1) * sample_size * max(threads, 1)
    rows = int(ceiling_bytes // per_row)
    if rows > ry:
        rows = ry
    elif rows * 2 > ry:
        rows = ry // 2
    return max(1, rows)


def compute_parallel_blocks(
    max_rows: int,
    nb_channels: int,
    ry: int,
    threads: int = 1,
) -> list[ImageBlock]:
    """
    Split every channel into row blocks that respect the row budget.

    The per-thread budget is `max_rows // threads`. When a channel would
    need fewer than 4 blocks, it is split in 4 anyway; otherwise it gets
    as many blocks as the budget requires. Remainder rows go to the first
    blocks, so heights differ by at most one.

    Returns
    -------
    list[ImageBlock]
        Blocks ordered by channel then row; every row of every channel is
        covered exactly once.
    """
    block_height = max(1, max_rows // max(threads, 1))
    if ry // block_height < MIN_BLOCKS_PER_CHANNEL:
        per_channel = MIN_BLOCKS_PER_CHANNEL
    else:
        per_channel = math.ceil(ry / block_height)

    blocks = [
        ImageBlock(channel, start, stop)
        for channel in range(nb_channels)
        for start, stop in split_range(ry, per_channel)
    ]
    largest = max((b.height for b in blocks), default=0)
    logger.debug(
        "%d parallel blocks of at most %d rows for stacking", len(blocks), largest
    )
    return blocks
