"""
Frame combination for registered sequences.

A `StackCombiner` runs one stacking invocation through the states
INIT -> NORMALIZE (optional) -> UPSCALE (optional) -> COMBINE -> FINALIZE
and returns a `StackResult` carrying a status. No partial image is returned
when the status is not OK.

Strategies
----------
- SUM: integer-exact accumulation, promoted to float32 on overflow
- MIN / MAX: elementwise extremum over frames
- MEDIAN: per-pixel median, processed in row blocks
- MEAN: per-pixel mean after rejection, processed in row blocks

Registration shifts are integer pixel offsets: a source sample at (x, y)
lands at (x - shiftx, y - shifty) in the output; samples that land outside
the frame are dropped.

Example
-------
>>> from stackcore import Sequence, StackConfig, CombineMethod, stack_sequence
>>> config = StackConfig(method=CombineMethod.MAX)
>>> result = stack_sequence(seq, config=config)
>>> result.status, result.image.channels[0].shape
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field

import numpy as np
from scipy.ndimage import zoom

from .config import (
    CombineMethod,
    ExecutionContext,
    Normalization,
    StackConfig,
    StackState,
    StackStatus,
)
from .image import (
    DimensionMismatchError,
    FrameReadError,
    Image,
    Sequence,
    StackingError,
    filter_included,
    select_frame_indices,
)
from .memory import ImageBlock, compute_max_rows, compute_parallel_blocks, resolve_memory_ceiling
from .normalization import NormalizationCancelled, NormCoefficients, compute_normalization
from .parallel import PARALLEL_THRESHOLD, parallel_for, parallel_tasks
from .progress import StackProgress, report_outcome
from .rejection import reject_pixels
from .utils import USHRT_MAX, format_duration, get_platform_info, get_version_banner, round_to_int

logger = logging.getLogger(__name__)

__all__ = [
    "StackingError",
    "FrameReadError",
    "DimensionMismatchError",
    "StackCancelled",
    "StackResult",
    "StackCombiner",
    "stack_sequence",
    "shifted_slices",
    "upscale_channel",
]

# Upscaling below this factor is ignored
UPSCALE_THRESHOLD = 1.05

# Block cubes hold NaN-padded samples; rows are budgeted at this size
CUBE_DTYPE = np.float64


class StackCancelled(StackingError):
    """Raised internally when the caller requests cancellation."""


@dataclass
class StackResult:
    """Outcome of one stacking invocation."""

    status: StackStatus
    image: Image | None = None
    exposure: float = 0.0
    nb_stacked: int = 0
    rejected_low: list[int] = field(default_factory=list)
    """Samples rejected low, per channel (mean strategy)."""
    rejected_high: list[int] = field(default_factory=list)
    """Samples rejected high, per channel (mean strategy)."""
    elapsed_s: float = 0.0
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == StackStatus.OK


def shifted_slices(shift: int, size: int) -> tuple[slice, slice]:
    """
    Source and destination slices along one axis for dest = src - shift.

    Returns empty slices when the shift moves the frame fully out of bounds.
    """
    if abs(shift) >= size:
        return slice(0, 0), slice(0, 0)
    if shift >= 0:
        return slice(shift, size), slice(0, size - shift)
    return slice(0, size + shift), slice(-shift, size)


def upscale_channel(channel: np.ndarray, factor: float) -> np.ndarray:
    """Nearest-neighbour up-scaling, preserving the sample type."""
    return zoom(channel, factor, order=0)


def upscaled_size(size: int, factor: float) -> int:
    """Output size of `upscale_channel` along an axis of `size` samples."""
    return int(round(size * factor))


def _row_threshold(rx: int) -> int:
    return max(1, PARALLEL_THRESHOLD // max(rx, 1))


class StackCombiner:
    """
    Combine a filtered, ordered subset of the frames of a sequence.

    Parameters
    ----------
    seq : Sequence
        Frames to combine; its descriptors are never modified.
    config : StackConfig, optional
        Strategy, rejection, normalization and output options.
    context : ExecutionContext, optional
        Threads, memory ceiling and cancellation flag.

    Attributes
    ----------
    state : StackState
        Current state of the running (or last) invocation.
    """

    def __init__(
        self,
        seq: Sequence,
        config: StackConfig | None = None,
        context: ExecutionContext | None = None,
    ):
        self.seq = seq
        self.config = config or StackConfig()
        self.context = context or ExecutionContext()
        self.state = StackState.INIT
        self.indices: list[int] = []
        self.factor = 1.0
        self.reg_layer = seq.reg_layer
        self.coefficients: NormCoefficients | None = None
        self.rejected_low: list[int] = []
        self.rejected_high: list[int] = []

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self, indices: list[int] | None = None) -> StackResult:
        """
        Stack the frames `indices` (default: included frames).

        Returns
        -------
        StackResult
            OK with the combined image, or an error status without image.
        """
        t0 = time.perf_counter()
        self.state = StackState.INIT
        try:
            self.config.validate()
            self.context.validate()
        except ValueError as exc:
            logger.error("Invalid stacking configuration: %s", exc)
            return StackResult(status=StackStatus.CONFIG_ERROR, message=str(exc))

        if indices is None:
            indices = select_frame_indices(self.seq, filter_included)
        self.indices = list(indices)
        if len(self.indices) < 2:
            message = "Select at least two frames for stacking. Aborting."
            logger.error(message)
            return StackResult(status=StackStatus.CONFIG_ERROR, message=message)

        logger.debug("%s on %s", get_version_banner(), get_platform_info())
        self.reg_layer = self.seq.reg_layer if self.config.reg_layer is None else self.config.reg_layer
        self.factor = self._upscale_factor()
        logger.info(
            "Stacking %d frames: method=%s, rejection=%s, normalization=%s, threads=%d",
            len(self.indices),
            self.config.method.value,
            self.config.rejection.value,
            self.config.normalization.value,
            self.context.threads,
        )

        try:
            result = self._run_states()
        except (StackCancelled, NormalizationCancelled):
            logger.warning("Stacking cancelled")
            result = StackResult(status=StackStatus.CANCELLED, message="Stacking cancelled")
        except DimensionMismatchError as exc:
            logger.error("Stacking: %s", exc)
            result = StackResult(status=StackStatus.CONFIG_ERROR, message=str(exc))
        except FrameReadError as exc:
            logger.error("Stacking: %s", exc)
            result = StackResult(status=StackStatus.READ_ERROR, message=str(exc))
        except MemoryError:
            logger.error("Stacking: memory allocation failure")
            result = StackResult(status=StackStatus.ALLOC_ERROR, message="Memory allocation failure")

        result.elapsed_s = time.perf_counter() - t0
        if result.ok:
            logger.info(
                "Stacking complete: %d frames, exposure %.1fs, in %s",
                result.nb_stacked,
                result.exposure,
                format_duration(result.elapsed_s),
            )
        else:
            logger.error("Stacking failed (%s)", result.status.value)
        if self.config.show_progress:
            report_outcome(self.config.method, result.status)
        return result

    def _run_states(self) -> StackResult:
        method = self.config.method
        block_based = method in (CombineMethod.MEDIAN, CombineMethod.MEAN)

        if block_based and self.config.normalization != Normalization.NONE:
            self.state = StackState.NORMALIZE
            try:
                self.coefficients = compute_normalization(
                    self.seq, self.indices, self.config, self.context
                )
            except ValueError as exc:
                logger.error("Normalization failed: %s", exc)
                return StackResult(status=StackStatus.GENERIC_ERROR, message=str(exc))
        else:
            self.coefficients = NormCoefficients.identity(self.seq.nb_layers, len(self.indices))

        if self.factor > 1.0:
            self.state = StackState.UPSCALE
            logger.info("Frames are up-scaled by %.2f while stacking", self.factor)

        self.state = StackState.COMBINE
        if method == CombineMethod.SUM:
            channels, exposure = self._combine_sum()
        elif method == CombineMethod.MIN:
            channels, exposure = self._combine_minmax(is_max=False)
        elif method == CombineMethod.MAX:
            channels, exposure = self._combine_minmax(is_max=True)
        elif method == CombineMethod.MEDIAN:
            channels, exposure = self._combine_blocks(use_rejection=False)
        elif method == CombineMethod.MEAN:
            channels, exposure = self._combine_blocks(use_rejection=True)
        else:
            raise ValueError(f"Unknown combination method: {method}")

        self.state = StackState.FINALIZE
        return self._finalize(channels, exposure)

    # ------------------------------------------------------------------
    # Frame access
    # ------------------------------------------------------------------

    def _upscale_factor(self) -> float:
        factor = self.config.upscale if self.config.upscale_active else self.seq.upscale_at_stacking
        return factor if factor > UPSCALE_THRESHOLD else 1.0

    @property
    def out_rx(self) -> int:
        return upscaled_size(self.seq.rx, self.factor) if self.factor > 1.0 else self.seq.rx

    @property
    def out_ry(self) -> int:
        return upscaled_size(self.seq.ry, self.factor) if self.factor > 1.0 else self.seq.ry

    def _check_cancel(self) -> None:
        if self.context.is_cancelled():
            raise StackCancelled()

    def _read(self, index: int) -> Image:
        image = self.seq.read_frame(index)
        if self.factor > 1.0:
            channels = [upscale_channel(ch, self.factor) for ch in image.channels]
            image = Image(channels, exposure=image.exposure)
        return image

    def frame_shift(self, index: int) -> tuple[int, int]:
        """Integer (shiftx, shifty) of a frame, scaled by the up-scale factor."""
        reg = self.seq.regparam(index, self.reg_layer)
        if reg is None:
            return 0, 0
        return round_to_int(reg.shiftx * self.factor), round_to_int(reg.shifty * self.factor)

    def _progress(self, total: int) -> StackProgress:
        return StackProgress(self.config.method, total, enabled=self.config.show_progress)

    # ------------------------------------------------------------------
    # Frame-wise strategies
    # ------------------------------------------------------------------

    def _accumulate_frames(self, accumulators: list[np.ndarray], op) -> float:
        """Fold every frame into `accumulators` with `op(acc_view, src_view)`."""
        exposure = 0.0
        rx, ry = self.out_rx, self.out_ry
        threads = self.context.threads
        with self._progress(len(self.indices)) as progress:
            for index in self.indices:
                self._check_cancel()
                image = self._read(index)
                exposure += image.exposure
                shiftx, shifty = self.frame_shift(index)
                src_x, dst_x = shifted_slices(shiftx, rx)
                src_y, dst_y = shifted_slices(shifty, ry)
                height = dst_y.stop - dst_y.start
                if height > 0 and dst_x.stop > dst_x.start:
                    for acc, channel in zip(accumulators, image.channels):

                        def _rows(start: int, stop: int, acc=acc, channel=channel) -> None:
                            d = slice(dst_y.start + start, dst_y.start + stop)
                            s = slice(src_y.start + start, src_y.start + stop)
                            op(acc[d, dst_x], channel[s, src_x])

                        parallel_for(height, _rows, threads=threads, threshold=_row_threshold(rx))
                progress.frame_done(index)
        return exposure

    def _combine_minmax(self, is_max: bool) -> tuple[list[np.ndarray], float]:
        dtype = self.seq.dtype
        if is_max:
            init = 0
        else:
            init = 1.0 if self.seq.is_float else USHRT_MAX
        accumulators = [
            np.full((self.out_ry, self.out_rx), init, dtype=dtype) for _ in range(self.seq.nb_layers)
        ]

        def _op(acc: np.ndarray, src: np.ndarray) -> None:
            if is_max:
                np.maximum(acc, src, out=acc)
            else:
                np.minimum(acc, src, out=acc)

        exposure = self._accumulate_frames(accumulators, _op)
        return accumulators, exposure

    def _combine_sum(self) -> tuple[list[np.ndarray], float]:
        acc_dtype = np.float64 if self.seq.is_float else np.uint64
        accumulators = [
            np.zeros((self.out_ry, self.out_rx), dtype=acc_dtype) for _ in range(self.seq.nb_layers)
        ]

        def _op(acc: np.ndarray, src: np.ndarray) -> None:
            np.add(acc, src, out=acc, casting="unsafe")

        exposure = self._accumulate_frames(accumulators, _op)

        peak = max(float(acc.max()) for acc in accumulators)
        if self.seq.is_float:
            ratio = 1.0 / peak if peak > 1.0 else 1.0
            channels = [(acc * ratio).astype(np.float32) for acc in accumulators]
        elif peak > USHRT_MAX:
            logger.info("Sum exceeds the 16-bit range (max %.0f), result is normalized float", peak)
            channels = [(acc / peak).astype(np.float32) for acc in accumulators]
        elif self.config.output_float:
            channels = [(acc / USHRT_MAX).astype(np.float32) for acc in accumulators]
        else:
            channels = [acc.astype(np.uint16) for acc in accumulators]
        return channels, exposure

    # ------------------------------------------------------------------
    # Block strategies
    # ------------------------------------------------------------------

    def _fill_block(self, cube: np.ndarray, position: int, block: ImageBlock, image: Image, index: int) -> None:
        shiftx, shifty = self.frame_shift(index)
        rx, ry = self.out_rx, self.out_ry
        # dest row d reads source row d + shifty
        d0 = max(block.start_row, -shifty)
        d1 = min(block.stop_row, ry - shifty)
        src_x, dst_x = shifted_slices(shiftx, rx)
        if d1 <= d0 or dst_x.stop <= dst_x.start:
            return
        channel = image.channels[block.channel]
        values = self.coefficients.apply(
            channel[d0 + shifty:d1 + shifty, src_x], block.channel, position
        )
        cube[position, d0 - block.start_row:d1 - block.start_row, dst_x] = values

    def _reduce_block(self, cube: np.ndarray, use_rejection: bool) -> tuple[np.ndarray, int, int]:
        n_low = n_high = 0
        if use_rejection:
            rejected = reject_pixels(cube, self.config.rejection, self.config.sig)
            n_low, n_high = rejected.low, rejected.high
            cube = rejected.cube
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            if use_rejection:
                combined = np.nanmean(cube, axis=0)
            else:
                combined = np.nanmedian(cube, axis=0)
        # Pixels without any sample
        return np.nan_to_num(combined, nan=0.0), n_low, n_high

    def _combine_blocks(self, use_rejection: bool) -> tuple[list[np.ndarray], float]:
        rx, ry = self.out_rx, self.out_ry
        nb_frames = len(self.indices)
        threads = self.context.threads
        ceiling = resolve_memory_ceiling(self.context.memory_ceiling)
        cube_sample_size = np.dtype(CUBE_DTYPE).itemsize
        max_rows = compute_max_rows(rx, ry, nb_frames, cube_sample_size, threads, ceiling)
        blocks = compute_parallel_blocks(max_rows, self.seq.nb_layers, ry, threads)
        logger.info(
            "Block stacking: %d blocks, up to %d rows read at once", len(blocks), max_rows
        )

        output = [np.zeros((ry, rx), dtype=np.float64) for _ in range(self.seq.nb_layers)]
        self.rejected_low = [0] * self.seq.nb_layers
        self.rejected_high = [0] * self.seq.nb_layers
        exposure = 0.0

        groups = [blocks[i:i + threads] for i in range(0, len(blocks), threads)]
        with self._progress(len(groups) * nb_frames) as progress:
            for group_number, group in enumerate(groups):
                self._check_cancel()
                cubes = [np.full((nb_frames, b.height, rx), np.nan, dtype=CUBE_DTYPE) for b in group]
                for position, index in enumerate(self.indices):
                    self._check_cancel()
                    image = self._read(index)
                    if group_number == 0:
                        exposure += image.exposure
                    for block, cube in zip(group, cubes):
                        self._fill_block(cube, position, block, image, index)
                    del image
                    progress.frame_done(index)

                tasks = [
                    (lambda cube=cube: self._reduce_block(cube, use_rejection)) for cube in cubes
                ]
                for block, (values, n_low, n_high) in zip(group, parallel_tasks(tasks, threads)):
                    output[block.channel][block.start_row:block.stop_row] = values
                    self.rejected_low[block.channel] += n_low
                    self.rejected_high[block.channel] += n_high

        if use_rejection:
            total = float(nb_frames * rx * ry)
            for layer in range(self.seq.nb_layers):
                logger.info(
                    "Pixel rejection in channel #%d: %.3f%% - %.3f%%",
                    layer,
                    100.0 * self.rejected_low[layer] / total,
                    100.0 * self.rejected_high[layer] / total,
                )

        float_output = (
            self.seq.is_float
            or self.config.output_float
            or self.config.normalization != Normalization.NONE
        )
        if float_output:
            scale = 1.0 if self.seq.is_float else 1.0 / USHRT_MAX
            channels = [(out * scale).astype(np.float32) for out in output]
        else:
            channels = [np.clip(np.rint(out), 0, USHRT_MAX).astype(np.uint16) for out in output]
        return channels, exposure

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    def _finalize(self, channels: list[np.ndarray], exposure: float) -> StackResult:
        if self.config.output_float and channels[0].dtype == np.uint16:
            channels = [ch.astype(np.float32) / USHRT_MAX for ch in channels]
        image = Image(channels, exposure=exposure)
        return StackResult(
            status=StackStatus.OK,
            image=image,
            exposure=exposure,
            nb_stacked=len(self.indices),
            rejected_low=list(self.rejected_low),
            rejected_high=list(self.rejected_high),
        )


def stack_sequence(
    seq: Sequence,
    indices: list[int] | None = None,
    config: StackConfig | None = None,
    context: ExecutionContext | None = None,
) -> StackResult:
    """
    Stack frames of a sequence.

    Parameters
    ----------
    seq : Sequence
        Sequence to stack.
    indices : list[int], optional
        Ordered frame indices; defaults to the included frames.
    config : StackConfig, optional
        Stacking configuration.
    context : ExecutionContext, optional
        Execution resources.

    Returns
    -------
    StackResult
        Status and, when OK, the combined image.
    """
    return StackCombiner(seq, config, context).run(indices)
