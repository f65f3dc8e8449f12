"""
Pytest configuration and fixtures.
"""

import numpy as np
import pytest

from stackcore import ExecutionContext, FrameDescriptor, Image, RegParam, Sequence


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(42)


@pytest.fixture
def synthetic_star_field():
    """Create a synthetic uint16 star field with Gaussian stars."""
    def _create(height=64, width=64, n_stars=8, background=1000.0, noise=30.0, seed=42):
        gen = np.random.default_rng(seed)

        image = np.full((height, width), background, dtype=np.float64)
        image += gen.normal(0, noise, (height, width))

        yy, xx = np.mgrid[0:height, 0:width]
        for _ in range(n_stars):
            y0 = gen.uniform(5, height - 5)
            x0 = gen.uniform(5, width - 5)
            sigma = gen.uniform(1.0, 2.5)
            amplitude = gen.uniform(2000, 20000)
            image += amplitude * np.exp(-((xx - x0) ** 2 + (yy - y0) ** 2) / (2 * sigma ** 2))

        return np.clip(np.rint(image), 1, 65535).astype(np.uint16)

    return _create


@pytest.fixture
def make_sequence():
    """
    Build an in-memory sequence from a list of frames.

    Frames are 2-D arrays (mono) or lists of 2-D arrays (channels). The
    returned sequence records every loader call in `seq.loaded`.
    """
    def _create(frames, shifts=None, exposure=10.0, fwhm=None, quality=None,
                included=None, reference_image=0, upscale=1.0, fail_on=None):
        channel_sets = [f if isinstance(f, list) else [f] for f in frames]
        first = channel_sets[0][0]
        n = len(channel_sets)

        descriptors = []
        for i in range(n):
            desc = FrameDescriptor(index=i, included=True if included is None else included[i])
            if shifts is not None or fwhm is not None or quality is not None:
                sx, sy = shifts[i] if shifts is not None else (0.0, 0.0)
                desc.regparam[0] = RegParam(
                    shiftx=sx,
                    shifty=sy,
                    fwhm=fwhm[i] if fwhm is not None else 0.0,
                    quality=quality[i] if quality is not None else -1.0,
                )
            descriptors.append(desc)

        loaded = []

        def loader(index):
            loaded.append(index)
            if fail_on is not None and index in fail_on:
                raise OSError(f"cannot read frame {index}")
            return Image([ch.copy() for ch in channel_sets[index]], exposure=exposure)

        seq = Sequence(
            loader,
            number=n,
            rx=first.shape[1],
            ry=first.shape[0],
            nb_layers=len(channel_sets[0]),
            dtype=first.dtype,
            frames=descriptors,
            reference_image=reference_image,
            upscale_at_stacking=upscale,
        )
        seq.loaded = loaded
        return seq

    return _create


@pytest.fixture
def context():
    """Two-thread execution context with an unbounded memory ceiling."""
    return ExecutionContext(threads=2, memory_ceiling=float("inf"))
