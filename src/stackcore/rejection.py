"""
Pixel rejection for the mean combination strategy.

Rejection works on a block cube of shape (frames, rows, cols) in float64,
where NaN marks a sample that is missing (out of the frame after shifting)
or rejected. Every algorithm is vectorized across pixels: each pass
computes its location and dispersion per pixel with NaN-aware reductions,
flags low and high outliers, and turns them into NaN.

A pass never takes a pixel below 4 remaining samples: pixels where it
would are left untouched by that pass. Iterative algorithms repeat passes
until no sample changes.

Parameters `sig = (low, high)` are sigma multiples, except for PERCENTILE
(relative deviation from the median) and GESDT (expected outlier fraction,
significance level).
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
from scipy import stats as sps

from .config import Rejection

logger = logging.getLogger(__name__)

# Minimum samples kept at a pixel by one rejection pass
MIN_KEPT_SAMPLES = 4

WINSOR_CLIP = 1.5
WINSOR_CORRECTION = 1.134
WINSOR_CONVERGENCE = 0.0005
MAX_INNER_ITERATIONS = 100


@dataclass
class RejectionResult:
    """Cleaned cube and the number of samples rejected low and high."""

    cube: np.ndarray
    low: int = 0
    high: int = 0


def _nanmedian(cube: np.ndarray) -> np.ndarray:
    # All-NaN pixels are expected in shifted blocks
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        return np.nanmedian(cube, axis=0)


def _nanstd(cube: np.ndarray) -> np.ndarray:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        return np.nanstd(cube, axis=0, ddof=1)


def _nanmean(cube: np.ndarray) -> np.ndarray:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        return np.nanmean(cube, axis=0)


def count_samples(cube: np.ndarray) -> np.ndarray:
    """Number of non-NaN samples per pixel."""
    return np.sum(~np.isnan(cube), axis=0)


def _apply_pass(cube: np.ndarray, low: np.ndarray, high: np.ndarray) -> tuple[int, int]:
    """Reject flagged samples where enough remain; returns (n_low, n_high)."""
    flagged = low | high
    remaining = count_samples(cube) - np.sum(flagged, axis=0)
    allowed = remaining >= MIN_KEPT_SAMPLES
    low = low & allowed
    high = high & allowed
    n_low = int(np.count_nonzero(low))
    n_high = int(np.count_nonzero(high))
    cube[low | high] = np.nan
    return n_low, n_high


def _percentile(cube: np.ndarray, sig: tuple[float, float]) -> tuple[int, int]:
    median = _nanmedian(cube)
    with np.errstate(divide="ignore", invalid="ignore"):
        rel_low = (median - cube) / median
        rel_high = (cube - median) / median
    usable = median != 0
    low = (rel_low > sig[0]) & usable
    high = (rel_high > sig[1]) & usable & ~low
    return _apply_pass(cube, low, high)


def _sigma(cube: np.ndarray, sig: tuple[float, float]) -> tuple[int, int]:
    median = _nanmedian(cube)
    # A zero median marks a mostly empty stack
    usable = median != 0
    n_low = n_high = 0
    while True:
        sigma = _nanstd(cube)
        with np.errstate(invalid="ignore"):
            low = (median - cube > sig[0] * sigma) & usable
            high = (cube - median > sig[1] * sigma) & usable & ~low
        r_low, r_high = _apply_pass(cube, low, high)
        n_low += r_low
        n_high += r_high
        if r_low + r_high == 0:
            return n_low, n_high
        median = _nanmedian(cube)


def _sigmedian(cube: np.ndarray, sig: tuple[float, float]) -> tuple[int, int]:
    n_low = n_high = 0
    for _ in range(MAX_INNER_ITERATIONS):
        sigma = _nanstd(cube)
        median = _nanmedian(cube)
        with np.errstate(invalid="ignore"):
            low = median - cube > sig[0] * sigma
            high = (cube - median > sig[1] * sigma) & ~low
        replaced = low | high
        if not replaced.any():
            break
        n_low += int(np.count_nonzero(low))
        n_high += int(np.count_nonzero(high))
        cube[:] = np.where(replaced, median, cube)
    return n_low, n_high


def _winsorized_sigma(cube: np.ndarray, median: np.ndarray) -> np.ndarray:
    sigma = _nanstd(cube)
    work = cube.copy()
    active = np.isfinite(sigma)
    for _ in range(MAX_INNER_ITERATIONS):
        if not active.any():
            break
        lo = median - WINSOR_CLIP * sigma
        hi = median + WINSOR_CLIP * sigma
        work = np.where(active, np.clip(work, lo, hi), work)
        sigma0 = sigma
        updated = WINSOR_CORRECTION * _nanstd(work)
        sigma = np.where(active, updated, sigma0)
        with np.errstate(invalid="ignore"):
            active &= np.abs(sigma - sigma0) > sigma0 * WINSOR_CONVERGENCE
    return sigma


def _winsorized(cube: np.ndarray, sig: tuple[float, float]) -> tuple[int, int]:
    n_low = n_high = 0
    while True:
        median = _nanmedian(cube)
        sigma = _winsorized_sigma(cube, median)
        with np.errstate(invalid="ignore"):
            low = median - cube > sigma * sig[0]
            high = (cube - median > sigma * sig[1]) & ~low
        r_low, r_high = _apply_pass(cube, low, high)
        n_low += r_low
        n_high += r_high
        if r_low + r_high == 0:
            return n_low, n_high


def _linear_fit(cube: np.ndarray, sig: tuple[float, float]) -> tuple[int, int]:
    n_low = n_high = 0
    while True:
        # NaN sort last, so valid samples occupy ranks 0..n-1
        cube[:] = np.sort(cube, axis=0)
        valid = ~np.isnan(cube)
        n = valid.sum(axis=0).astype(np.float64)
        x = np.arange(cube.shape[0], dtype=np.float64).reshape(-1, 1, 1)
        xv = np.where(valid, x, 0.0)
        yv = np.where(valid, cube, 0.0)
        sx = xv.sum(axis=0)
        sy = yv.sum(axis=0)
        sxx = (xv * xv).sum(axis=0)
        sxy = (xv * yv).sum(axis=0)
        with np.errstate(divide="ignore", invalid="ignore"):
            slope = (n * sxy - sx * sy) / (n * sxx - sx * sx)
            intercept = (sy - slope * sx) / n
            fit = slope * x + intercept
            sigma = np.nansum(np.abs(cube - fit), axis=0) / n
            low = (fit - cube) / sigma > sig[0]
            high = ((cube - fit) / sigma > sig[1]) & ~low
        r_low, r_high = _apply_pass(cube, low, high)
        n_low += r_low
        n_high += r_high
        if r_low + r_high == 0:
            return n_low, n_high


def gesdt_critical_values(n: np.ndarray, i: int, alpha: float) -> np.ndarray:
    """
    Critical values of the generalized ESD test at step i (1-based).

    lambda_i = (n - i) t / sqrt((n - i - 1 + t^2) (n - i + 1)), with t the
    Student t quantile at 1 - alpha / (2 (n - i + 1)) and n - i - 1 degrees
    of freedom. NaN where the degrees of freedom are not positive.
    """
    n = np.asarray(n, dtype=np.float64)
    dof = n - i - 1
    ok = dof > 0
    safe_dof = np.where(ok, dof, 1.0)
    p = 1.0 - alpha / (2.0 * (n - i + 1))
    t = sps.t.ppf(np.where(ok, p, 0.5), safe_dof)
    lam = (n - i) * t / np.sqrt((n - i - 1 + t * t) * (n - i + 1))
    return np.where(ok, lam, np.nan)


def _gesdt(cube: np.ndarray, sig: tuple[float, float]) -> tuple[int, int]:
    fraction, alpha = sig
    n0 = count_samples(cube)
    max_out = np.floor(n0 * fraction).astype(int)
    max_out = np.minimum(max_out, np.maximum(n0 - MIN_KEPT_SAMPLES, 0))
    steps = int(max_out.max()) if max_out.size else 0
    if steps == 0:
        return 0, 0

    work = cube.copy()
    rows, cols = np.indices(cube.shape[1:])
    picks = []  # (frame index, was_high) per step
    n_outliers = np.zeros(cube.shape[1:], dtype=int)
    for i in range(1, steps + 1):
        mean = _nanmean(work)
        sd = _nanstd(work)
        deviation = np.abs(work - mean)
        deviation = np.where(np.isnan(deviation), -np.inf, deviation)
        frame = np.argmax(deviation, axis=0)
        value = work[frame, rows, cols]
        with np.errstate(divide="ignore", invalid="ignore"):
            statistic = np.abs(value - mean) / sd
        active = (i <= max_out) & (sd > 0)
        critical = gesdt_critical_values(n0, i, alpha)
        exceeds = active & (statistic > critical)
        n_outliers = np.where(exceeds, i, n_outliers)
        picks.append((frame, value > mean, active))
        work[frame[active], rows[active], cols[active]] = np.nan

    n_low = n_high = 0
    for i, (frame, is_high, active) in enumerate(picks, start=1):
        reject = active & (i <= n_outliers)
        if not reject.any():
            continue
        cube[frame[reject], rows[reject], cols[reject]] = np.nan
        n_high += int(np.count_nonzero(is_high & reject))
        n_low += int(np.count_nonzero(~is_high & reject))
    return n_low, n_high


def reject_pixels(
    cube: np.ndarray,
    method: Rejection,
    sig: tuple[float, float],
) -> RejectionResult:
    """
    Apply a rejection algorithm to a block cube, in place.

    Parameters
    ----------
    cube : np.ndarray
        (frames, rows, cols) float array, NaN for missing samples.
    method : Rejection
        Algorithm.
    sig : tuple[float, float]
        Low and high parameters.

    Returns
    -------
    RejectionResult
        The cleaned cube (same object) and low/high rejection counts.
    """
    if cube.ndim != 3:
        raise ValueError(f"Expected a (frames, rows, cols) cube, got shape {cube.shape}")
    if not np.issubdtype(cube.dtype, np.floating):
        raise ValueError(f"Rejection needs a float cube, got {cube.dtype}")

    if method == Rejection.NONE:
        low, high = 0, 0
    elif method == Rejection.PERCENTILE:
        low, high = _percentile(cube, sig)
    elif method == Rejection.SIGMA:
        low, high = _sigma(cube, sig)
    elif method == Rejection.SIGMEDIAN:
        low, high = _sigmedian(cube, sig)
    elif method == Rejection.WINSORIZED:
        low, high = _winsorized(cube, sig)
    elif method == Rejection.LINEARFIT:
        low, high = _linear_fit(cube, sig)
    elif method == Rejection.GESDT:
        low, high = _gesdt(cube, sig)
    else:
        raise ValueError(f"Unknown rejection method: {method}")
    return RejectionResult(cube=cube, low=low, high=high)
