"""
Frame normalization before median and mean combination.

Each frame's background is matched to the reference frame using IKSS
location and scale estimates taken from the statistics cache. Frames are
only loaded when the cache lacks the estimates.

Coefficients, per layer and per stacked frame i (reference: 0)
---------------------------------------------------------------
- scale_i = scale0 / s_i (1 when s_i == 0), scaling modes only
- offset_i = scale_i * loc_i - loc0, additive modes
- mul_i = loc0 / loc_i (1 when loc_i == 0), multiplicative modes

Additive modes apply x * scale - offset, multiplicative modes x * scale * mul.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .config import ExecutionContext, Normalization, StackConfig
from .image import Image, Sequence
from .parallel import parallel_tasks
from .statistics import ImageStatistics, StatsOption, clear_stats, statistics

logger = logging.getLogger(__name__)


class NormalizationCancelled(Exception):
    """Raised when cancellation is requested while computing coefficients."""


@dataclass
class NormCoefficients:
    """
    Normalization coefficients of a stacking run.

    Arrays have shape (nb_layers, nb_frames), the frame axis following the
    order of the stacked index list.
    """

    mode: Normalization
    offset: np.ndarray
    mul: np.ndarray
    scale: np.ndarray

    @classmethod
    def identity(cls, nb_layers: int, nb_frames: int, mode: Normalization = Normalization.NONE):
        return cls(
            mode=mode,
            offset=np.zeros((nb_layers, nb_frames)),
            mul=np.ones((nb_layers, nb_frames)),
            scale=np.ones((nb_layers, nb_frames)),
        )

    @property
    def additive(self) -> bool:
        return self.mode in (Normalization.ADDITIVE, Normalization.ADDITIVE_SCALING)

    def apply(self, data: np.ndarray, layer: int, position: int) -> np.ndarray:
        """Normalize samples of frame `position` (float result, NaN preserved)."""
        values = data.astype(np.float64, copy=False)
        if self.mode == Normalization.NONE:
            return values
        if self.additive:
            return values * self.scale[layer, position] - self.offset[layer, position]
        return values * self.scale[layer, position] * self.mul[layer, position]


def norm_option(fast: bool) -> StatsOption:
    """Statistics needed by the normalization estimator."""
    if fast:
        return StatsOption.NORM
    return StatsOption.MINMAX | StatsOption.MAD | StatsOption.IKSS


def _frame_statistics(
    seq: Sequence,
    index: int,
    option: StatsOption,
    context: ExecutionContext,
) -> list[ImageStatistics]:
    """Per-layer statistics of a frame, from cache or by loading it."""
    image: Image | None = None
    result = []
    for layer in range(seq.nb_layers):
        stat = statistics(seq, index, None, layer, option=option, context=context)
        if stat is None:
            if image is None:
                image = seq.read_frame(index)
            stat = statistics(seq, index, image, layer, option=option, context=context)
            if stat is None:
                raise ValueError(f"No usable pixel in frame {index}, layer {layer}")
        result.append(stat)
    return result


def compute_normalization(
    seq: Sequence,
    indices: list[int],
    config: StackConfig,
    context: ExecutionContext,
) -> NormCoefficients:
    """
    Compute normalization coefficients for the frames to stack.

    Parameters
    ----------
    seq : Sequence
        Sequence holding the statistics cache.
    indices : list[int]
        Ordered frame indices to stack.
    config : StackConfig
        Normalization mode, reference image and cache policy.
    context : ExecutionContext
        Threads and cancellation.

    Returns
    -------
    NormCoefficients
        Identity coefficients when normalization is disabled.

    Raises
    ------
    ValueError
        If the reference image is not among `indices`, or a frame has no
        usable pixel.
    FrameReadError
        If a frame must be loaded and cannot be read.
    NormalizationCancelled
        If cancellation is requested.
    """
    mode = config.normalization
    coeff = NormCoefficients.identity(seq.nb_layers, len(indices), mode)
    if mode == Normalization.NONE:
        return coeff

    reference = seq.reference_image if config.reference_image is None else config.reference_image
    if reference not in indices:
        raise ValueError(
            f"Reference image {reference} is not in the selected set of images"
        )
    ref_position = indices.index(reference)

    if config.force_norm:
        reg_layer = seq.reg_layer if config.reg_layer is None else config.reg_layer
        clear_stats(seq, reg_layer)

    option = norm_option(config.fast_normalization)
    logger.info("Computing normalization (%s) on %d frames", mode.value, len(indices))

    def _task(index: int):
        def run() -> list[ImageStatistics]:
            if context.is_cancelled():
                raise NormalizationCancelled()
            return _frame_statistics(seq, index, option, context)
        return run

    # Reference first, so its estimates are cached before the others
    ref_stats = _frame_statistics(seq, reference, option, context)
    others = [i for i in indices if i != reference]
    other_stats = parallel_tasks([_task(i) for i in others], threads=context.threads)
    per_frame = dict(zip(others, other_stats))
    per_frame[reference] = ref_stats

    for layer in range(seq.nb_layers):
        scale0 = ref_stats[layer].scale
        loc0 = ref_stats[layer].location
        for position, index in enumerate(indices):
            stat = per_frame[index][layer]
            if mode in (Normalization.ADDITIVE_SCALING, Normalization.MULTIPLICATIVE_SCALING):
                coeff.scale[layer, position] = 1.0 if stat.scale == 0 else scale0 / stat.scale
            if mode in (Normalization.ADDITIVE, Normalization.ADDITIVE_SCALING):
                coeff.offset[layer, position] = coeff.scale[layer, position] * stat.location - loc0
            elif mode in (Normalization.MULTIPLICATIVE, Normalization.MULTIPLICATIVE_SCALING):
                coeff.mul[layer, position] = 1.0 if stat.location == 0 else loc0 / stat.location
            else:
                raise ValueError(f"Unknown normalization mode: {mode}")

    logger.debug(
        "Normalization reference %d: location %s, scale %s",
        reference,
        [s.location for s in ref_stats],
        [s.scale for s in ref_stats],
    )
    return coeff
