"""
Configuration dataclasses and selectors for the stacking core.

The combination strategy, rejection algorithm and normalization mode are
closed enumerations: every consumer dispatches over all of their members.
Thread count, memory ceiling and cancellation travel together in an
explicit ExecutionContext passed to every entry point.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from enum import Enum

# Default number of worker threads for data-parallel loops
DEFAULT_THREADS = os.cpu_count() or 4


class CombineMethod(Enum):
    """Pixel combination strategy."""

    SUM = "sum"
    MIN = "min"
    MAX = "max"
    MEDIAN = "median"
    MEAN = "mean"  # Mean with rejection


class Rejection(Enum):
    """Pixel rejection algorithm used by the mean strategy."""

    NONE = "none"
    PERCENTILE = "percentile"
    SIGMA = "sigma"
    SIGMEDIAN = "sigmedian"  # Outliers replaced by the median
    WINSORIZED = "winsorized"
    LINEARFIT = "linearfit"
    GESDT = "gesdt"  # Generalized extreme studentized deviate test


class Normalization(Enum):
    """Frame normalization mode applied before median/mean combination."""

    NONE = "none"
    ADDITIVE = "additive"
    MULTIPLICATIVE = "multiplicative"
    ADDITIVE_SCALING = "additive_scaling"
    MULTIPLICATIVE_SCALING = "multiplicative_scaling"


class StackStatus(Enum):
    """Outcome of a stacking invocation."""

    OK = "ok"
    CONFIG_ERROR = "config_error"  # Too few frames, dimension mismatch
    READ_ERROR = "read_error"  # A frame could not be read
    ALLOC_ERROR = "alloc_error"  # Memory allocation failure
    CANCELLED = "cancelled"  # Cooperative abort requested by the caller
    GENERIC_ERROR = "generic_error"


class StackState(Enum):
    """States traversed by one stacking invocation."""

    INIT = "init"
    NORMALIZE = "normalize"
    UPSCALE = "upscale"
    COMBINE = "combine"
    FINALIZE = "finalize"


@dataclass
class StackConfig:
    """
    Configuration for one stacking run.

    All parameters are explicitly documented and have sensible defaults.
    """

    # --- Combination ---
    method: CombineMethod = CombineMethod.MEAN
    """Combination strategy."""

    rejection: Rejection = Rejection.WINSORIZED
    """Rejection algorithm (mean strategy only)."""

    sig_low: float = 4.0
    """Low rejection threshold. Fraction for percentile clipping, expected
    outlier fraction for GESDT, sigma multiple otherwise."""

    sig_high: float = 3.0
    """High rejection threshold. Fraction for percentile clipping,
    significance level for GESDT, sigma multiple otherwise."""

    # --- Normalization ---
    normalization: Normalization = Normalization.NONE
    """Normalization mode (median and mean strategies only)."""

    force_norm: bool = False
    """Discard cached statistics and recompute normalization data."""

    fast_normalization: bool = False
    """Use the single-pass trimmed estimator instead of the iterative one."""

    # --- Geometry ---
    reference_image: int | None = None
    """Reference frame index in the sequence (None = sequence reference)."""

    reg_layer: int | None = None
    """Layer holding registration shifts (None = sequence registration layer)."""

    upscale: float = 1.0
    """Up-scaling factor applied at stacking time (> 1.05 to enable)."""

    # --- Output ---
    output_float: bool = False
    """Force a float32 result even when integer output would fit."""

    show_progress: bool = False
    """Display a progress bar over frames or blocks."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.rejection == Rejection.PERCENTILE:
            if not 0.0 <= self.sig_low <= 1.0 or not 0.0 <= self.sig_high <= 1.0:
                raise ValueError(
                    f"percentile thresholds must be in [0, 1], got ({self.sig_low}, {self.sig_high})"
                )
        elif self.rejection == Rejection.GESDT:
            if not 0.0 < self.sig_low < 1.0:
                raise ValueError(f"GESDT outlier fraction must be in (0, 1), got {self.sig_low}")
            if not 0.0 < self.sig_high < 1.0:
                raise ValueError(f"GESDT significance must be in (0, 1), got {self.sig_high}")
        elif self.sig_low < 0 or self.sig_high < 0:
            raise ValueError(
                f"sigma thresholds must be non-negative, got ({self.sig_low}, {self.sig_high})"
            )
        if self.upscale < 1.0:
            raise ValueError(f"upscale must be >= 1, got {self.upscale}")

    @property
    def sig(self) -> tuple[float, float]:
        """Low and high rejection parameters as a pair."""
        return (self.sig_low, self.sig_high)

    @property
    def upscale_active(self) -> bool:
        """True when frames are up-scaled before combination."""
        return self.upscale > 1.05


@dataclass
class ExecutionContext:
    """
    Explicit execution resources for the numeric core.

    Replaces process-wide thread and memory settings: every entry point
    receives one of these.
    """

    threads: int = DEFAULT_THREADS
    """Number of worker threads for data-parallel loops."""

    memory_ceiling: int | float | None = None
    """Memory allowed for stacking buffers: bytes (int), a fraction of the
    available memory (float in (0, 1]), or None for the default budget."""

    cancel_event: threading.Event = field(default_factory=threading.Event)
    """Cooperative cancellation flag, polled once per frame."""

    def validate(self) -> None:
        """Validate context parameters."""
        if self.threads < 1:
            raise ValueError(f"threads must be >= 1, got {self.threads}")
        if isinstance(self.memory_ceiling, float):
            if not 0.0 < self.memory_ceiling <= 1.0 and self.memory_ceiling != float("inf"):
                raise ValueError(
                    f"fractional memory_ceiling must be in (0, 1], got {self.memory_ceiling}"
                )
        elif self.memory_ceiling is not None and self.memory_ceiling < 0:
            raise ValueError(f"memory_ceiling must be non-negative, got {self.memory_ceiling}")

    def cancel(self) -> None:
        """Request cancellation of the running invocation."""
        self.cancel_event.set()

    def is_cancelled(self) -> bool:
        """Poll the cancellation flag."""
        return self.cancel_event.is_set()
