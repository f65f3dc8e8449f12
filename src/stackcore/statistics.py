"""
Robust image statistics with lazy, cached computation.

Statistics are held per (image or sequence slot, channel) in an
`ImageStatistics` object whose fields stay `None` until computed. The same
object is typically referenced both from an `Image` and from its
`Sequence` slot, so computing a field through one holder makes it visible
through the other.

Estimators
----------
- Location: median, mean, IKSS location
- Scale: sigma, average absolute deviation, MAD, sqrt(BWMV), IKSS scale
- Background noise: median of second-order differences along rows
- Hampel M-estimator for sky annuli (`robust_mean`, `sky_background`)

Example
-------
>>> from stackcore.statistics import statistics, StatsOption
>>> stat = statistics(None, -1, image, 0, option=StatsOption.MAIN)
>>> stat.median, stat.mad
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields
from enum import IntFlag
from typing import TYPE_CHECKING

import numpy as np

from .parallel import parallel_for, parallel_reduce
from .sorting import quick_median
from .utils import UCHAR_MAX, USHRT_MAX

if TYPE_CHECKING:
    from .config import ExecutionContext
    from .image import Image, Sequence

logger = logging.getLogger(__name__)

# Biweight tuning constant
BWMV_C = 9.0

# IKSS trimming and convergence constants
IKSS_KAPPA = 4.0
IKSS_LITE_KAPPA = 6.0
IKSS_SCALE_FACTOR = 0.991
IKSS_MIN_SCALE = 2e-23
IKSS_CONVERGENCE = 10e-6

# Gaussian-equivalent factor of the second-order difference noise estimator
NOISE_FACTOR = 0.6052697

# Hampel three-part redescending function
HAMPEL_A = 1.7
HAMPEL_B = 3.4
HAMPEL_C = 8.5
ROBUST_MEAN_MAXIT = 50
ROBUST_EPSILON = 1e-8

MIN_SKY = 5


class StatsOption(IntFlag):
    """Statistics requested from `statistics`."""

    NONE = 0
    BASIC = 1 << 1  # median, mean, sigma, noise, min, max
    AVGDEV = 1 << 2  # average absolute deviation from the median
    MAD = 1 << 3  # median absolute deviation
    MINMAX = 1 << 4
    BWMV = 1 << 5  # biweight midvariance
    IKSS = 1 << 6  # iterative k-sigma location and scale
    NOISE = 1 << 7  # mean, sigma, background noise
    IKSS_LITE = 1 << 8  # single-pass trimmed location and scale

    MAIN = BASIC | AVGDEV | MAD | BWMV
    EXTRA = MAIN | IKSS
    NORM = MAD | MINMAX | IKSS_LITE


# Options that need the median of the good samples
_MEDIAN_OPTIONS = StatsOption.BASIC | StatsOption.AVGDEV | StatsOption.MAD | StatsOption.BWMV


@dataclass
class ImageStatistics:
    """
    Statistics of one channel of one image.

    `None` marks an unknown field; zero and negative values are legitimate
    results. Once set, a field is only reset by `invalidate`.
    """

    layer_name: str = ""
    total: int | None = None
    ngoodpix: int | None = None
    mean: float | None = None
    sigma: float | None = None
    bgnoise: float | None = None
    min: float | None = None
    max: float | None = None
    norm_value: float | None = None
    median: float | None = None
    avg_dev: float | None = None
    mad: float | None = None
    sqrt_bwmv: float | None = None
    location: float | None = None
    scale: float | None = None

    def invalidate(self) -> None:
        """Reset every computed field to unknown, keeping the object."""
        for f in fields(self):
            if f.name != "layer_name":
                setattr(self, f.name, None)

    def missing(self, option: StatsOption) -> list[str]:
        """Names of the fields required by `option` that are still unknown."""
        required: list[str] = []
        if option & (StatsOption.MINMAX | StatsOption.BASIC):
            required += ["min", "max", "norm_value"]
        if option & (StatsOption.NOISE | StatsOption.BASIC):
            required += ["ngoodpix", "mean", "sigma", "bgnoise"]
        if option & _MEDIAN_OPTIONS:
            required.append("median")
        if option & StatsOption.AVGDEV:
            required.append("avg_dev")
        if option & (StatsOption.MAD | StatsOption.BWMV):
            required.append("mad")
        if option & StatsOption.BWMV:
            required.append("sqrt_bwmv")
        if option & (StatsOption.IKSS | StatsOption.IKSS_LITE):
            required += ["location", "scale"]
        return [name for name in required if getattr(self, name) is None]


def layer_name(nb_layers: int, layer: int) -> str:
    """Human-readable channel label."""
    if nb_layers == 1:
        return "B&W"
    return ("Red", "Green", "Blue")[layer] if layer < 3 else f"Layer {layer}"


# =============================================================================
# Estimators
# =============================================================================


def _threads(context: ExecutionContext | None) -> int:
    return context.threads if context is not None else 1


def norm_value_for(dtype: np.dtype, max_value: float) -> float:
    """Scale of the sample domain: 1.0 for float, 255 or 65535 for integers."""
    if np.issubdtype(dtype, np.floating):
        return 1.0
    if dtype == np.uint8 or max_value <= UCHAR_MAX:
        return float(UCHAR_MAX)
    return float(USHRT_MAX)


def compute_minmax(data: np.ndarray, threads: int = 1) -> tuple[float, float]:
    """Minimum and maximum of all samples, reduced over row ranges."""
    flat = data.ravel()

    def _partial(start: int, stop: int) -> tuple[float, float]:
        chunk = flat[start:stop]
        return float(chunk.min()), float(chunk.max())

    def _combine(a, b):
        return min(a[0], b[0]), max(a[1], b[1])

    return parallel_reduce(flat.size, _partial, _combine, (math.inf, -math.inf), threads=threads)


def compute_mad(samples: np.ndarray, median: float, threads: int = 1) -> float:
    """
    Median absolute deviation from `median`.

    Deviations are computed data-parallel into a float64 buffer whose median
    is then taken non-destructively.
    """
    flat = samples.ravel()
    n = flat.size
    if n == 0:
        raise ValueError("Cannot compute the MAD of an empty sample set")
    deviations = np.empty(n, dtype=np.float64)

    def _deviate(start: int, stop: int) -> None:
        np.abs(flat[start:stop].astype(np.float64) - median, out=deviations[start:stop])

    parallel_for(n, _deviate, threads=threads)
    return quick_median(deviations)


def compute_bwmv(samples: np.ndarray, mad: float, median: float, threads: int = 1) -> float:
    """
    Biweight midvariance with tuning constant c = 9.

    Samples further than 9 MAD from the median get zero weight. A zero MAD
    gives zero.
    """
    if mad <= 0.0:
        return 0.0
    flat = samples.ravel()
    n = flat.size

    def _partial(start: int, stop: int) -> tuple[float, float]:
        delta = flat[start:stop].astype(np.float64) - median
        y = delta / (BWMV_C * mad)
        y2 = y * y
        inside = np.abs(y) < 1.0
        one_minus = 1.0 - y2[inside]
        up = float(np.sum(delta[inside] ** 2 * one_minus ** 4))
        down = float(np.sum(one_minus * (1.0 - 5.0 * y2[inside])))
        return up, down

    up, down = parallel_reduce(
        n, _partial, lambda a, b: (a[0] + b[0], a[1] + b[1]), (0.0, 0.0), threads=threads
    )
    if down == 0.0:
        return 0.0
    return n * up / (down * down)


def compute_background_noise(data: np.ndarray, nullcheck: bool = True) -> float:
    """
    Background noise from second-order differences along rows.

    For each row, the median of |2 x[i] - x[i-2] - x[i+2]| over its good
    samples; the estimate is 0.6052697 times the median over rows. Rows
    shorter than 5 good samples are skipped; if none qualifies, all good
    samples are processed as a single row.
    """
    image = np.atleast_2d(data)

    def _row_median(row: np.ndarray) -> float | None:
        if nullcheck:
            row = row[row != 0]
        if row.size < 5:
            return None
        row = row.astype(np.float64)
        diff = np.abs(2.0 * row[2:-2] - row[:-4] - row[4:])
        return float(np.median(diff))

    medians = [m for m in (_row_median(row) for row in image) if m is not None]
    if not medians:
        single = _row_median(image.ravel())
        if single is None:
            return 0.0
        medians = [single]
    return NOISE_FACTOR * float(np.median(medians))


def _median_of_sorted(values: np.ndarray) -> float:
    n = values.size
    k = n // 2
    if n % 2 == 0:
        return (float(values[k - 1]) + float(values[k])) / 2.0
    return float(values[k])


def compute_ikss(samples: np.ndarray, threads: int = 1) -> tuple[float, float]:
    """
    Iterative k-sigma estimator of location and scale.

    Samples are sorted once; the window [i, j) is then trimmed to
    median +/- 4 sqrt(BWMV) until the scale estimate stabilizes.

    Parameters
    ----------
    samples : np.ndarray
        Good samples, expected in the normalized [0, 1] range.
    threads : int, default 1
        Worker count for MAD and BWMV.

    Returns
    -------
    tuple[float, float]
        (location, scale). An empty window gives (0, 0) and a vanishing
        scale gives (median, 0).
    """
    data = np.sort(samples.ravel().astype(np.float64))
    i, j = 0, data.size
    s0 = 1.0
    while True:
        if j - i < 1:
            return 0.0, 0.0
        window = data[i:j]
        m = _median_of_sorted(window)
        mad = compute_mad(window, m, threads=threads)
        s = math.sqrt(compute_bwmv(window, mad, m, threads=threads))
        if s < IKSS_MIN_SCALE:
            return m, 0.0
        if (s0 - s) / s < IKSS_CONVERGENCE:
            return m, IKSS_SCALE_FACTOR * s
        s0 = s
        # Window is sorted: trimming is a pair of binary searches.
        # Bounds only move inwards.
        i = max(i, int(np.searchsorted(data, m - IKSS_KAPPA * s, side="left")))
        j = min(j, int(np.searchsorted(data, m + IKSS_KAPPA * s, side="right")))


def compute_ikss_lite(
    samples: np.ndarray,
    median: float,
    mad: float,
    threads: int = 1,
) -> tuple[float, float]:
    """Single trim at median +/- 6 MAD, then median and 0.991 sqrt(BWMV)."""
    flat = samples.ravel().astype(np.float64)
    low = median - IKSS_LITE_KAPPA * mad
    high = median + IKSS_LITE_KAPPA * mad
    trimmed = flat[(flat >= low) & (flat <= high)]
    if trimmed.size == 0:
        return 0.0, 0.0
    location = quick_median(trimmed)
    trimmed_mad = compute_mad(trimmed, location, threads=threads)
    bwmv = compute_bwmv(trimmed, trimmed_mad, location, threads=threads)
    return location, IKSS_SCALE_FACTOR * math.sqrt(bwmv)


def _hampel(x: np.ndarray) -> np.ndarray:
    ax = np.abs(x)
    sign = np.sign(x)
    psi = np.where(ax < HAMPEL_A, x, 0.0)
    psi = np.where((ax >= HAMPEL_A) & (ax < HAMPEL_B), sign * HAMPEL_A, psi)
    tail = (ax >= HAMPEL_B) & (ax < HAMPEL_C)
    psi = np.where(tail, sign * HAMPEL_A * (ax - HAMPEL_C) / (HAMPEL_B - HAMPEL_C), psi)
    return psi


def _dhampel(x: np.ndarray) -> np.ndarray:
    ax = np.abs(x)
    sign = np.sign(x)
    d = np.where(ax < HAMPEL_A, 1.0, 0.0)
    tail = (ax >= HAMPEL_B) & (ax < HAMPEL_C)
    # Derivative keeps the sign convention of the redescending branch
    return np.where(tail, np.where(sign >= 0, 1.0, -1.0) * HAMPEL_A / (HAMPEL_B - HAMPEL_C), d)


def _lower_median(values: np.ndarray) -> float:
    n = values.size
    k = n // 2 if n % 2 else n // 2 - 1
    return float(np.partition(values, k)[k])


def robust_mean(samples) -> tuple[float, float] | None:
    """
    Hampel M-estimator of location and scale.

    Newton iterations (at most 50) start from the median and MAD / 0.6745.

    Parameters
    ----------
    samples : array_like
        1-D samples.

    Returns
    -------
    tuple[float, float] or None
        (mean, stdev), or None for an empty input. A single sample gives
        (x, 0.0).
    """
    x = np.asarray(samples, dtype=np.float64).ravel()
    n = x.size
    if n < 1:
        return None
    if n == 1:
        return float(x[0]), 0.0

    a = _lower_median(x)
    s = _lower_median(np.abs(x - a)) / 0.6745

    # Almost identical points
    if abs(s) < ROBUST_EPSILON:
        return a, math.sqrt(float(np.sum((x - a) ** 2)) / n)

    dt = 0.0
    c = s * s * n * n / (n - 1)
    for it in range(1, ROBUST_MEAN_MAXIT + 1):
        r = (x - a) / s
        psir = _hampel(r)
        sum1 = float(np.sum(psir))
        sum2 = float(np.sum(_dhampel(r)))
        sum3 = float(np.sum(psir * psir))
        if abs(sum2) < ROBUST_EPSILON:
            break
        d = s * sum1 / sum2
        a += d
        dt = c * sum3 / (sum2 * sum2)
        if it > 2 and (d * d < 1e-4 * dt or abs(d) < 10.0 * ROBUST_EPSILON):
            break
    return a, (math.sqrt(dt) if dt > 0 else 0.0)


def sky_background(
    samples,
    min_sky: int = MIN_SKY,
    lo: float = 0.0,
    hi: float = float(USHRT_MAX),
) -> tuple[float, float] | None:
    """
    Sky level and dispersion of an annulus of samples.

    Samples outside the open interval (lo, hi) are discarded; fewer than
    `min_sky` remaining samples give None.
    """
    x = np.asarray(samples, dtype=np.float64).ravel()
    x = x[(x > lo) & (x < hi)]
    if x.size < min_sky:
        logger.debug("sky background: %d samples, need %d", x.size, min_sky)
        return None
    return robust_mean(x)


# =============================================================================
# Cached statistics
# =============================================================================


def _select_area(channel: np.ndarray, selection: tuple[int, int, int, int] | None) -> np.ndarray:
    if selection is None:
        return channel
    x, y, w, h = selection
    if w <= 0 or h <= 0:
        return channel
    return channel[y:y + h, x:x + w]


def _compute(
    stat: ImageStatistics,
    data: np.ndarray,
    option: StatsOption,
    nullcheck: bool,
    threads: int,
    debug_tag: str,
) -> bool:
    """Fill the unknown fields requested by `option`. False if no good pixel."""
    need_ikss = bool(option & (StatsOption.IKSS | StatsOption.IKSS_LITE))
    if (option & (StatsOption.MINMAX | StatsOption.BASIC) or need_ikss) and (
        stat.min is None or stat.max is None or stat.norm_value is None
    ):
        logger.debug("- stats %s: computing minmax", debug_tag)
        stat.min, stat.max = compute_minmax(data, threads)
        stat.norm_value = norm_value_for(data.dtype, stat.max)

    flat = data.ravel()
    good = flat[flat != 0] if nullcheck else flat
    if stat.ngoodpix is None:
        stat.ngoodpix = int(good.size)
    if good.size == 0:
        return False

    if option & (StatsOption.NOISE | StatsOption.BASIC) and (
        stat.mean is None or stat.sigma is None or stat.bgnoise is None
    ):
        logger.debug("- stats %s: computing basic", debug_tag)
        values = good.astype(np.float64)
        stat.mean = float(values.mean())
        stat.sigma = float(values.std(ddof=1)) if values.size > 1 else 0.0
        stat.bgnoise = compute_background_noise(data, nullcheck)

    need_median = bool(option & _MEDIAN_OPTIONS) or bool(option & StatsOption.IKSS_LITE)
    if need_median and stat.median is None:
        logger.debug("- stats %s: computing median", debug_tag)
        stat.median = quick_median(good, threads=threads)

    if option & StatsOption.AVGDEV and stat.avg_dev is None:
        logger.debug("- stats %s: computing absdev", debug_tag)
        stat.avg_dev = float(np.mean(np.abs(good.astype(np.float64) - stat.median)))

    need_mad = bool(option & (StatsOption.MAD | StatsOption.BWMV | StatsOption.IKSS_LITE))
    if need_mad and stat.mad is None:
        logger.debug("- stats %s: computing mad", debug_tag)
        stat.mad = compute_mad(good, stat.median, threads=threads)

    if option & StatsOption.BWMV and stat.sqrt_bwmv is None:
        logger.debug("- stats %s: computing bimid", debug_tag)
        stat.sqrt_bwmv = math.sqrt(compute_bwmv(good, stat.mad, stat.median, threads=threads))

    if need_ikss and (stat.location is None or stat.scale is None):
        norm = stat.norm_value
        if option & StatsOption.IKSS:
            logger.debug("- stats %s: computing ikss", debug_tag)
            location, scale = compute_ikss(good.astype(np.float64) / norm, threads=threads)
        else:
            logger.debug("- stats %s: computing ikss lite", debug_tag)
            location, scale = compute_ikss_lite(
                good.astype(np.float64) / norm, stat.median / norm, stat.mad / norm, threads=threads
            )
        stat.location = location * norm
        stat.scale = scale * norm
    return True


def statistics(
    seq: Sequence | None,
    index: int,
    image: Image | None,
    layer: int,
    selection: tuple[int, int, int, int] | None = None,
    option: StatsOption = StatsOption.MAIN,
    nullcheck: bool = True,
    context: ExecutionContext | None = None,
) -> ImageStatistics | None:
    """
    Compute, or fetch from cache, the statistics of one channel.

    The cache object is looked up in the image slot first, then in the
    sequence slot `(index, layer)`; a fresh one is allocated otherwise.
    Only fields requested by `option` and still unknown are computed.

    Parameters
    ----------
    seq : Sequence or None
        Sequence holding the statistics cache.
    index : int
        Frame index in `seq` (ignored when negative or `seq` is None).
    image : Image or None
        Loaded frame. None makes the request cache-only.
    layer : int
        Channel index.
    selection : tuple (x, y, w, h), optional
        Restrict the samples to a rectangle. Results are not cached.
    option : StatsOption, default MAIN
        Requested statistics.
    nullcheck : bool, default True
        Exclude samples equal to zero from everything but min/max.
    context : ExecutionContext, optional
        Thread count for the data-parallel estimators.

    Returns
    -------
    ImageStatistics or None
        None if the request is cache-only and a requested field is not
        cached, or if there is no good sample.

    Raises
    ------
    ValueError
        If a selection is given without an image.
    """
    if selection is not None and image is None:
        raise ValueError("A selection requires a loaded image")
    use_seq = seq is not None and index >= 0
    cacheable = selection is None

    stat = None
    if cacheable:
        if image is not None and image.stats[layer] is not None:
            stat = image.stats[layer]
        elif use_seq and seq.stats[index][layer] is not None:
            stat = seq.stats[index][layer]

    if image is None:
        if stat is None or stat.missing(option):
            return None  # not in cache, don't compute
        return stat

    data = _select_area(image.channels[layer], selection)
    if data.size == 0:
        return None

    if stat is None:
        stat = allocate_stats(layer_name(image.nb_layers, layer))
    stat.total = int(data.size)

    tag = f"{index}:{stat.layer_name}"
    if not _compute(stat, data, option, nullcheck, _threads(context), tag):
        return None

    if cacheable:
        add_stats_to_image(image, layer, stat)
        if use_seq:
            add_stats_to_seq(seq, index, layer, stat)
    return stat


# =============================================================================
# Cache lifecycle
# =============================================================================


def allocate_stats(name: str = "") -> ImageStatistics:
    """New statistics object with every field unknown."""
    return ImageStatistics(layer_name=name)


def add_stats_to_image(image: Image, layer: int, stat: ImageStatistics) -> None:
    """Attach `stat` to an image channel slot."""
    image.stats[layer] = stat


def add_stats_to_seq(seq: Sequence, index: int, layer: int, stat: ImageStatistics) -> None:
    """Attach `stat` to a sequence slot, shared with any image holding it."""
    seq.stats[index][layer] = stat


def copy_seq_stats_to_image(seq: Sequence, index: int, image: Image) -> None:
    """Share the cached statistics of frame `index` with a freshly loaded image."""
    for layer in range(image.nb_layers):
        stat = seq.stats[index][layer]
        if stat is not None:
            image.stats[layer] = stat


def save_stats_from_image(image: Image, seq: Sequence, index: int) -> None:
    """Share the statistics computed on an image with its sequence slot."""
    for layer in range(image.nb_layers):
        if image.stats[layer] is not None:
            seq.stats[index][layer] = image.stats[layer]


def invalidate_stats_from_image(image: Image) -> None:
    """Reset the image statistics; shared holders see the reset."""
    for stat in image.stats:
        if stat is not None:
            stat.invalidate()


def clear_stats(seq: Sequence, layer: int) -> None:
    """Drop the cached statistics of `layer` for every frame of the sequence."""
    for slots in seq.stats:
        stat = slots[layer]
        if stat is not None:
            stat.invalidate()
        slots[layer] = None
