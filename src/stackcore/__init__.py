"""
stackcore - Robust statistics and frame combination for astronomical stacking.

The numerical core of a stacking pipeline: order statistics, cached robust
image statistics, and the combination of registered frames under a memory
ceiling. Image decoding and registration are left to the caller, which
supplies frames through a loader callable and shifts through `RegParam`.

Example
-------
>>> import numpy as np
>>> from stackcore import Image, Sequence, StackConfig, CombineMethod, stack_sequence
>>> frames = [np.full((64, 64), 1000, dtype=np.uint16) for _ in range(3)]
>>> seq = Sequence(lambda i: Image([frames[i]]), number=3, rx=64, ry=64)
>>> result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MAX))
>>> result.status
<StackStatus.OK: 'ok'>

Example (mean with rejection and normalization)
-----------------------------------------------
>>> config = StackConfig(
...     method=CombineMethod.MEAN,
...     rejection=Rejection.WINSORIZED,
...     normalization=Normalization.ADDITIVE_SCALING,
... )
>>> result = stack_sequence(seq, config=config, context=ExecutionContext(threads=4))
"""

from .config import (
    CombineMethod,
    ExecutionContext,
    Normalization,
    Rejection,
    StackConfig,
    StackState,
    StackStatus,
)
from .utils import __version__, __version_info__, get_version_banner, setup_logging

# Order statistics
from .sorting import (
    histogram_median,
    histogram_median_float,
    quick_median,
    quickselect,
    select_median,
    sort_in_place,
    sortnet,
    sortnet_median,
)

# Robust statistics
from .statistics import (
    ImageStatistics,
    StatsOption,
    add_stats_to_image,
    add_stats_to_seq,
    allocate_stats,
    clear_stats,
    copy_seq_stats_to_image,
    invalidate_stats_from_image,
    robust_mean,
    save_stats_from_image,
    sky_background,
    statistics,
)

# Images and sequences
from .image import (
    DimensionMismatchError,
    FrameDescriptor,
    FrameReadError,
    Image,
    RegParam,
    Sequence,
    StackingError,
    compute_highest_accepted_fwhm,
    compute_highest_accepted_quality,
    filter_all,
    filter_fwhm,
    filter_included,
    filter_quality,
    select_frame_indices,
)

# Memory budget
from .memory import ImageBlock, compute_max_rows, compute_parallel_blocks, resolve_memory_ceiling

# Normalization and rejection
from .normalization import NormCoefficients, compute_normalization
from .rejection import RejectionResult, reject_pixels

# Stacking
from .stack import StackCombiner, StackResult, stack_sequence

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    "setup_logging",
    # Config
    "CombineMethod",
    "ExecutionContext",
    "Normalization",
    "Rejection",
    "StackConfig",
    "StackState",
    "StackStatus",
    # Order statistics
    "histogram_median",
    "histogram_median_float",
    "quick_median",
    "quickselect",
    "select_median",
    "sort_in_place",
    "sortnet",
    "sortnet_median",
    # Robust statistics
    "ImageStatistics",
    "StatsOption",
    "statistics",
    "robust_mean",
    "sky_background",
    "allocate_stats",
    "add_stats_to_image",
    "add_stats_to_seq",
    "copy_seq_stats_to_image",
    "save_stats_from_image",
    "invalidate_stats_from_image",
    "clear_stats",
    # Images and sequences
    "Image",
    "RegParam",
    "FrameDescriptor",
    "Sequence",
    "StackingError",
    "FrameReadError",
    "DimensionMismatchError",
    "filter_all",
    "filter_included",
    "filter_fwhm",
    "filter_quality",
    "compute_highest_accepted_fwhm",
    "compute_highest_accepted_quality",
    "select_frame_indices",
    # Memory
    "ImageBlock",
    "compute_max_rows",
    "compute_parallel_blocks",
    "resolve_memory_ceiling",
    # Normalization / rejection
    "NormCoefficients",
    "compute_normalization",
    "RejectionResult",
    "reject_pixels",
    # Stacking
    "StackCombiner",
    "StackResult",
    "stack_sequence",
]
