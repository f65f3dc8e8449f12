"""
Image and sequence containers consumed by the stacking core.

An `Image` holds one 2-D buffer per channel (1 or 3 channels) sharing one
sample kind: uint16 in [0, 65535] or float32 normalized to [0, 1]. A
`Sequence` describes an ordered set of frames with their registration data
and owns the per-frame statistics cache; pixel data is fetched on demand
through a loader callable supplied by the caller.

Frame selection is expressed as predicates `(seq, index) -> bool`, built by
the `filter_*` factories and applied by `select_frame_indices`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import numpy as np

if TYPE_CHECKING:
    from .statistics import ImageStatistics

logger = logging.getLogger(__name__)

SUPPORTED_DTYPES = (np.dtype(np.uint16), np.dtype(np.float32))

FramePredicate = Callable[["Sequence", int], bool]


class StackingError(RuntimeError):
    """Base class of the errors raised while reading or combining frames."""


class FrameReadError(StackingError):
    """Raised when the loader fails to provide a frame."""

    def __init__(self, index: int, cause: BaseException | None = None):
        self.index = index
        message = f"Failed to read frame {index}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class DimensionMismatchError(StackingError):
    """Raised when a frame does not match the sequence geometry."""


@dataclass
class Image:
    """
    One frame: channels, exposure and per-channel statistics slots.

    Attributes
    ----------
    channels : list[np.ndarray]
        1 or 3 arrays of shape (ry, rx), all of the same dtype.
    exposure : float
        Exposure time in seconds.
    stats : list[ImageStatistics | None]
        Statistics slot per channel, possibly shared with a sequence.
    """

    channels: list[np.ndarray]
    exposure: float = 0.0
    stats: list[ImageStatistics | None] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.channels) not in (1, 3):
            raise ValueError(f"An image has 1 or 3 channels, got {len(self.channels)}")
        first = self.channels[0]
        if first.ndim != 2:
            raise ValueError(f"Channels must be 2-D, got shape {first.shape}")
        if first.dtype not in SUPPORTED_DTYPES:
            raise ValueError(f"Unsupported sample type {first.dtype}, expected uint16 or float32")
        for ch in self.channels[1:]:
            if ch.shape != first.shape or ch.dtype != first.dtype:
                raise ValueError("All channels must share one shape and sample type")
        if not self.stats:
            self.stats = [None] * len(self.channels)

    @classmethod
    def from_array(cls, data: np.ndarray, exposure: float = 0.0) -> Image:
        """Build from a (ry, rx) or (ry, rx, 3) array."""
        if data.ndim == 2:
            return cls([data], exposure=exposure)
        if data.ndim == 3 and data.shape[2] == 3:
            return cls([np.ascontiguousarray(data[:, :, c]) for c in range(3)], exposure=exposure)
        raise ValueError(f"Expected (H, W) or (H, W, 3) array, got shape {data.shape}")

    @property
    def rx(self) -> int:
        return self.channels[0].shape[1]

    @property
    def ry(self) -> int:
        return self.channels[0].shape[0]

    @property
    def nb_layers(self) -> int:
        return len(self.channels)

    @property
    def dtype(self) -> np.dtype:
        return self.channels[0].dtype

    @property
    def is_float(self) -> bool:
        return self.dtype == np.float32


@dataclass
class RegParam:
    """Registration data of one frame on one layer."""

    shiftx: float = 0.0
    shifty: float = 0.0
    fwhm: float = 0.0  # 0 when unknown
    quality: float = -1.0  # negative when unknown


@dataclass
class FrameDescriptor:
    """Per-frame metadata of a sequence."""

    index: int
    included: bool = True
    regparam: dict[int, RegParam] = field(default_factory=dict)
    """Registration data keyed by layer."""


class Sequence:
    """
    Ordered frames with registration data and a statistics cache.

    Parameters
    ----------
    loader : callable
        `loader(index) -> Image`. Raises on read failure.
    number : int
        Number of frames.
    rx, ry : int
        Frame dimensions.
    nb_layers : int, default 1
        Channels per frame.
    dtype : numpy dtype, default uint16
        Sample kind of the frames.
    frames : list[FrameDescriptor], optional
        Descriptors; all-included descriptors without registration are
        created when omitted.
    reference_image : int, default 0
        Index of the reference frame.
    reg_layer : int, default 0
        Layer holding the registration shifts.
    upscale_at_stacking : float, default 1.0
        Up-scaling factor applied when stacking.
    """

    def __init__(
        self,
        loader: Callable[[int], Image],
        number: int,
        rx: int,
        ry: int,
        nb_layers: int = 1,
        dtype=np.uint16,
        frames: list[FrameDescriptor] | None = None,
        reference_image: int = 0,
        reg_layer: int = 0,
        upscale_at_stacking: float = 1.0,
    ):
        if frames is None:
            frames = [FrameDescriptor(index=i) for i in range(number)]
        if len(frames) != number:
            raise ValueError(f"Expected {number} frame descriptors, got {len(frames)}")
        if not 0 <= reference_image < max(number, 1):
            raise ValueError(f"Reference image {reference_image} out of range")
        self.loader = loader
        self.number = number
        self.rx = rx
        self.ry = ry
        self.nb_layers = nb_layers
        self.dtype = np.dtype(dtype)
        self.frames = frames
        self.reference_image = reference_image
        self.reg_layer = reg_layer
        self.upscale_at_stacking = upscale_at_stacking
        self.stats: list[list[ImageStatistics | None]] = [
            [None] * nb_layers for _ in range(number)
        ]

    def __len__(self) -> int:
        return self.number

    def __repr__(self) -> str:
        return (
            f"Sequence(number={self.number}, size={self.rx}x{self.ry}, "
            f"layers={self.nb_layers}, dtype={self.dtype})"
        )

    @property
    def selnum(self) -> int:
        """Number of included frames."""
        return sum(1 for f in self.frames if f.included)

    @property
    def is_float(self) -> bool:
        return self.dtype == np.float32

    def load(self, index: int) -> Image:
        """Read frame `index` through the loader, unchecked."""
        return self.loader(index)

    def read_frame(self, index: int) -> Image:
        """
        Read frame `index` and check it against the sequence geometry.

        Cached statistics of the frame are shared with the returned image.

        Raises
        ------
        FrameReadError
            If the loader raises.
        DimensionMismatchError
            If the frame size, channel count or sample type differs from
            the sequence.
        """
        try:
            image = self.loader(index)
        except MemoryError:
            raise
        except Exception as exc:
            raise FrameReadError(index, exc) from exc
        if (image.rx, image.ry) != (self.rx, self.ry) or image.nb_layers != self.nb_layers:
            raise DimensionMismatchError(
                f"Frame {index} is {image.rx}x{image.ry}x{image.nb_layers}, "
                f"sequence is {self.rx}x{self.ry}x{self.nb_layers}"
            )
        if image.dtype != self.dtype:
            raise DimensionMismatchError(
                f"Frame {index} has samples of type {image.dtype}, sequence uses {self.dtype}"
            )
        for layer in range(image.nb_layers):
            if image.stats[layer] is None and self.stats[index][layer] is not None:
                image.stats[layer] = self.stats[index][layer]
        return image

    def regparam(self, index: int, layer: int | None = None) -> RegParam | None:
        """Registration data of a frame, None if the frame is not registered."""
        layer = self.reg_layer if layer is None else layer
        return self.frames[index].regparam.get(layer)

    def has_registration(self, layer: int | None = None) -> bool:
        layer = self.reg_layer if layer is None else layer
        return any(layer in f.regparam for f in self.frames)


# =============================================================================
# Frame filters
# =============================================================================


def filter_all(seq: Sequence, index: int) -> bool:
    """Accept every frame."""
    return True


def filter_included(seq: Sequence, index: int) -> bool:
    """Accept frames flagged as included."""
    return seq.frames[index].included


def filter_fwhm(max_fwhm: float) -> FramePredicate:
    """Accept included frames with a known FWHM not above `max_fwhm`."""

    def _predicate(seq: Sequence, index: int) -> bool:
        reg = seq.regparam(index)
        if reg is None or not seq.frames[index].included or reg.fwhm <= 0.0:
            return False
        return reg.fwhm <= max_fwhm

    return _predicate


def filter_quality(min_quality: float) -> FramePredicate:
    """Accept included frames with a known quality of at least `min_quality`."""

    def _predicate(seq: Sequence, index: int) -> bool:
        reg = seq.regparam(index)
        if reg is None or not seq.frames[index].included or reg.quality <= 0.0:
            return False
        return reg.quality >= min_quality

    return _predicate


def compute_highest_accepted_fwhm(seq: Sequence, percent: float) -> float:
    """
    FWHM threshold keeping the best `percent` of the frames.

    Returns 0.0 when a frame lacks FWHM data or the sequence is not
    registered.
    """
    values = []
    for index in range(seq.number):
        reg = seq.regparam(index)
        if reg is None or reg.fwhm <= 0.0:
            logger.warning("Frame %d has no FWHM information, cannot compute threshold", index)
            return 0.0
        values.append(reg.fwhm)
    if not values:
        return 0.0
    values.sort()
    position = min(int(percent * len(values) / 100.0), len(values) - 1)
    return float(values[position])


def compute_highest_accepted_quality(seq: Sequence, percent: float) -> float:
    """
    Quality threshold keeping the best `percent` of the frames.

    Returns 0.0 when an included frame lacks quality data or the sequence is
    not registered.
    """
    values = []
    for index in range(seq.number):
        reg = seq.regparam(index)
        if reg is None or (seq.frames[index].included and reg.quality < 0.0):
            logger.warning("Frame %d has no quality information, cannot compute threshold", index)
            return 0.0
        values.append(reg.quality)
    if not values:
        return 0.0
    values.sort()
    position = min(int((100.0 - percent) * len(values) / 100.0), len(values) - 1)
    return float(values[position])


def select_frame_indices(seq: Sequence, predicate: FramePredicate = filter_included) -> list[int]:
    """Indices of the frames accepted by `predicate`, in sequence order."""
    return [i for i in range(seq.number) if predicate(seq, i)]
