"""
Tests for the stack module.

Tests cover:
- Min/max combination with and without shifts
- Sum with overflow promotion
- Median and mean-with-rejection block stacking
- Status reporting for invalid input, read errors and cancellation
- Up-scaling, RGB frames and float output
"""

import numpy as np
import pytest

from stackcore import (
    CombineMethod,
    ExecutionContext,
    Normalization,
    Rejection,
    StackCombiner,
    StackConfig,
    StackState,
    StackStatus,
    stack_sequence,
)
from stackcore.stack import shifted_slices


def _const(value, shape=(8, 8), dtype=np.uint16):
    return np.full(shape, value, dtype=dtype)


class TestShiftedSlices:
    """Destination = source - shift along one axis."""

    def test_positive_shift(self):
        src, dst = shifted_slices(2, 8)
        assert (src, dst) == (slice(2, 8), slice(0, 6))

    def test_negative_shift(self):
        src, dst = shifted_slices(-3, 8)
        assert (src, dst) == (slice(0, 5), slice(3, 8))

    def test_out_of_bounds(self):
        for shift in (8, -8, 100):
            src, dst = shifted_slices(shift, 8)
            assert src.stop - src.start == 0
            assert dst.stop - dst.start == 0


class TestMinMax:
    """Elementwise extremum over frames."""

    def test_max_elementwise(self, rng, make_sequence, context):
        a = rng.integers(0, 65536, (16, 12)).astype(np.uint16)
        b = rng.integers(0, 65536, (16, 12)).astype(np.uint16)
        result = stack_sequence(make_sequence([a, b]), config=StackConfig(method=CombineMethod.MAX),
                                context=context)

        assert result.status == StackStatus.OK
        assert np.array_equal(result.image.channels[0], np.maximum(a, b))

    def test_min_elementwise(self, rng, make_sequence, context):
        a = rng.integers(0, 65536, (16, 12)).astype(np.uint16)
        b = rng.integers(0, 65536, (16, 12)).astype(np.uint16)
        result = stack_sequence(make_sequence([a, b]), config=StackConfig(method=CombineMethod.MIN),
                                context=context)

        assert np.array_equal(result.image.channels[0], np.minimum(a, b))

    @pytest.mark.parametrize("method", [CombineMethod.MIN, CombineMethod.MAX])
    def test_frame_shifted_out(self, rng, make_sequence, context, method):
        """A frame moved fully out of bounds contributes nothing."""
        a = rng.integers(1, 65535, (16, 12)).astype(np.uint16)
        b = rng.integers(1, 65535, (16, 12)).astype(np.uint16)
        seq = make_sequence([a, b], shifts=[(0.0, 0.0), (40.0, 0.0)])
        result = stack_sequence(seq, config=StackConfig(method=method), context=context)

        assert np.array_equal(result.image.channels[0], a)

    def test_partial_shift(self, make_sequence, context):
        """Source (x, y) lands at (x - shiftx, y - shifty)."""
        base = _const(10)
        star = _const(0)
        star[3, 5] = 500
        seq = make_sequence([base, star], shifts=[(0.0, 0.0), (2.0, 1.0)])
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MAX), context=context)

        expected = _const(10)
        expected[2, 3] = 500
        assert np.array_equal(result.image.channels[0], expected)

    def test_identical_frames_unchanged(self, synthetic_star_field, make_sequence, context):
        """Three identical frames stack to the same content."""
        frame = synthetic_star_field(height=32, width=40)
        seq = make_sequence([frame, frame, frame])
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MAX), context=context)

        assert result.status == StackStatus.OK
        assert result.image.channels[0].dtype == np.uint16
        assert np.array_equal(result.image.channels[0], frame)

    def test_saturated_pixel_survives(self, synthetic_star_field, make_sequence, context):
        """One saturated pixel in one frame is the only change."""
        frame = synthetic_star_field(height=32, width=40)
        hot = frame.copy()
        hot[10, 20] = 65535
        seq = make_sequence([frame, hot, frame])
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MAX), context=context)

        out = result.image.channels[0]
        assert out[10, 20] == 65535
        mask = np.ones(frame.shape, dtype=bool)
        mask[10, 20] = False
        assert np.array_equal(out[mask], frame[mask])

    def test_rgb(self, make_sequence, context):
        frames = [
            [_const(1), _const(2), _const(3)],
            [_const(4), _const(0), _const(9)],
        ]
        result = stack_sequence(make_sequence(frames), config=StackConfig(method=CombineMethod.MAX),
                                context=context)

        assert result.image.nb_layers == 3
        assert [int(ch[0, 0]) for ch in result.image.channels] == [4, 2, 9]

    def test_float_frames(self, make_sequence, context):
        frames = [_const(0.25, dtype=np.float32), _const(0.5, dtype=np.float32)]
        result = stack_sequence(make_sequence(frames), config=StackConfig(method=CombineMethod.MIN),
                                context=context)

        assert result.image.channels[0].dtype == np.float32
        assert np.allclose(result.image.channels[0], 0.25)


class TestSum:
    """Sum with 16-bit overflow promotion."""

    def test_sum_fits(self, make_sequence, context):
        seq = make_sequence([_const(100), _const(200), _const(300)])
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.SUM), context=context)

        assert result.image.channels[0].dtype == np.uint16
        assert np.all(result.image.channels[0] == 600)

    def test_sum_overflow_promotes(self, make_sequence, context):
        frames = [_const(30000), _const(30000), _const(30000)]
        frames[1][0, 0] = 60000
        result = stack_sequence(make_sequence(frames), config=StackConfig(method=CombineMethod.SUM),
                                context=context)

        out = result.image.channels[0]
        assert out.dtype == np.float32
        assert out[0, 0] == pytest.approx(1.0)
        assert out[4, 4] == pytest.approx(0.75)

    def test_sum_output_float(self, make_sequence, context):
        seq = make_sequence([_const(100), _const(200)])
        config = StackConfig(method=CombineMethod.SUM, output_float=True)
        result = stack_sequence(seq, config=config, context=context)

        assert result.image.channels[0].dtype == np.float32
        assert np.allclose(result.image.channels[0], 300 / 65535)

    def test_exposure_summed(self, make_sequence, context):
        seq = make_sequence([_const(1), _const(2), _const(3)], exposure=15.0)
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.SUM), context=context)

        assert result.exposure == pytest.approx(45.0)
        assert result.image.exposure == pytest.approx(45.0)
        assert result.nb_stacked == 3


class TestThreadSchedule:
    """Frame-wise strategies give the same pixels for any worker count."""

    @pytest.mark.parametrize("method", [CombineMethod.MIN, CombineMethod.MAX, CombineMethod.SUM])
    def test_threads_bit_identical(self, rng, make_sequence, method):
        # 256 rows of 256 columns is above the row threshold, so rows are split
        frames = [rng.integers(0, 65536, (256, 256)).astype(np.uint16) for _ in range(4)]
        shifts = [(0.0, 0.0), (3.0, -2.0), (-5.0, 7.0), (1.0, 1.0)]
        config = StackConfig(method=method)

        serial = stack_sequence(make_sequence(frames, shifts=shifts), config=config,
                                context=ExecutionContext(threads=1, memory_ceiling=float("inf")))
        threaded = stack_sequence(make_sequence(frames, shifts=shifts), config=config,
                                  context=ExecutionContext(threads=4, memory_ceiling=float("inf")))

        assert serial.status == threaded.status == StackStatus.OK
        assert serial.image.channels[0].dtype == threaded.image.channels[0].dtype
        assert np.array_equal(serial.image.channels[0], threaded.image.channels[0])


class TestMedian:
    """Per-pixel median over row blocks."""

    def test_median(self, make_sequence, context):
        seq = make_sequence([_const(100), _const(900), _const(200)], exposure=10.0)
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MEDIAN), context=context)

        assert result.image.channels[0].dtype == np.uint16
        assert np.all(result.image.channels[0] == 200)
        assert result.exposure == pytest.approx(30.0)

    def test_median_with_shift(self, make_sequence, context):
        """Samples shifted out are missing, not zero."""
        seq = make_sequence(
            [_const(100), _const(200), _const(400)],
            shifts=[(0.0, 0.0), (0.0, 0.0), (3.0, 0.0)],
        )
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MEDIAN), context=context)

        out = result.image.channels[0]
        assert np.all(out[:, :5] == 200)
        assert np.all(out[:, 5:] == 150)

    def test_memory_ceiling_does_not_change_result(self, rng, make_sequence):
        """A one-row budget gives the same image as an unbounded one."""
        frames = [rng.integers(0, 5000, (20, 16)).astype(np.uint16) for _ in range(5)]
        config = StackConfig(method=CombineMethod.MEDIAN)

        unbounded = stack_sequence(make_sequence(frames), config=config,
                                   context=ExecutionContext(threads=2, memory_ceiling=float("inf")))
        tight = stack_sequence(make_sequence(frames), config=config,
                               context=ExecutionContext(threads=2, memory_ceiling=1))

        expected = np.median(np.stack(frames).astype(np.float64), axis=0)
        assert np.array_equal(tight.image.channels[0], unbounded.image.channels[0])
        assert np.array_equal(tight.image.channels[0], np.rint(expected).astype(np.uint16))

    def test_block_cubes_fit_memory_ceiling(self, rng, make_sequence, monkeypatch):
        """Buffered block samples never exceed the configured ceiling."""
        ceiling = 200_000
        frames = [rng.integers(0, 5000, (200, 400)).astype(np.uint16) for _ in range(10)]
        sizes = []
        reduce_block = StackCombiner._reduce_block

        def _recording(self, cube, use_rejection):
            sizes.append(cube.nbytes)
            return reduce_block(self, cube, use_rejection)

        monkeypatch.setattr(StackCombiner, "_reduce_block", _recording)
        result = stack_sequence(make_sequence(frames), config=StackConfig(method=CombineMethod.MEDIAN),
                                context=ExecutionContext(threads=1, memory_ceiling=ceiling))

        assert result.status == StackStatus.OK
        assert sizes
        assert max(sizes) <= ceiling

    def test_each_frame_read_once_per_group(self, make_sequence):
        """With a full-height budget, one group of blocks covers the image."""
        seq = make_sequence([_const(1), _const(2), _const(3)])
        context = ExecutionContext(threads=4, memory_ceiling=float("inf"))
        stack_sequence(seq, config=StackConfig(method=CombineMethod.MEDIAN), context=context)
        assert sorted(seq.loaded) == [0, 1, 2]


class TestMean:
    """Mean with rejection."""

    def test_hot_pixel_rejected(self, rng, make_sequence, context):
        frames = [np.rint(rng.normal(1000.0, 10.0, (12, 12))).astype(np.uint16) for _ in range(12)]
        frames[4][6, 6] = 60000
        config = StackConfig(method=CombineMethod.MEAN, rejection=Rejection.SIGMA, sig_low=3.0, sig_high=3.0)
        result = stack_sequence(make_sequence(frames), config=config, context=context)

        out = result.image.channels[0]
        assert result.status == StackStatus.OK
        assert out[6, 6] == pytest.approx(1000.0, abs=15.0)
        assert result.rejected_high[0] >= 1
        assert len(result.rejected_low) == 1

    def test_no_rejection_is_plain_mean(self, make_sequence, context):
        seq = make_sequence([_const(100), _const(200), _const(600)])
        config = StackConfig(method=CombineMethod.MEAN, rejection=Rejection.NONE)
        result = stack_sequence(seq, config=config, context=context)

        assert np.all(result.image.channels[0] == 300)
        assert result.rejected_low == [0]
        assert result.rejected_high == [0]

    def test_normalized_mean(self, rng, make_sequence, context):
        """Additive normalization aligns backgrounds; output is float."""
        frames = [
            np.rint(rng.normal(1000.0 + offset, 10.0, (16, 16))).astype(np.uint16)
            for offset in (0.0, 300.0, -150.0, 80.0)
        ]
        config = StackConfig(
            method=CombineMethod.MEAN,
            rejection=Rejection.WINSORIZED,
            normalization=Normalization.ADDITIVE,
        )
        result = stack_sequence(make_sequence(frames), config=config, context=context)

        out = result.image.channels[0]
        assert out.dtype == np.float32
        assert np.median(out) * 65535 == pytest.approx(1000.0, rel=0.01)

    def test_float_mean(self, make_sequence, context):
        frames = [_const(v, dtype=np.float32) for v in (0.1, 0.2, 0.3, 0.4)]
        config = StackConfig(method=CombineMethod.MEAN, rejection=Rejection.NONE)
        result = stack_sequence(make_sequence(frames), config=config, context=context)

        assert result.image.channels[0].dtype == np.float32
        assert np.allclose(result.image.channels[0], 0.25)


class TestUpscale:
    """Frames up-scaled before combination."""

    def test_config_upscale(self, make_sequence, context):
        seq = make_sequence([_const(100), _const(300)])
        config = StackConfig(method=CombineMethod.MAX, upscale=2.0)
        result = stack_sequence(seq, config=config, context=context)

        assert result.image.channels[0].shape == (16, 16)
        assert np.all(result.image.channels[0] == 300)

    def test_sequence_upscale(self, make_sequence, context):
        seq = make_sequence([_const(100), _const(300)], upscale=2.0)
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MEDIAN), context=context)
        assert result.image.channels[0].shape == (16, 16)

    def test_small_factor_ignored(self, make_sequence, context):
        seq = make_sequence([_const(100), _const(300)], upscale=1.02)
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MAX), context=context)
        assert result.image.channels[0].shape == (8, 8)

    def test_shift_scaled(self, make_sequence, context):
        star = _const(0)
        star[4, 4] = 1000
        seq = make_sequence([_const(1), star], shifts=[(0.0, 0.0), (1.0, 0.0)])
        config = StackConfig(method=CombineMethod.MAX, upscale=2.0)
        result = stack_sequence(seq, config=config, context=context)

        out = result.image.channels[0]
        assert np.all(out[8:10, 6:8] == 1000)
        assert np.count_nonzero(out == 1000) == 4


class TestStatus:
    """Errors are reported through the result status."""

    def test_too_few_frames(self, make_sequence, context):
        seq = make_sequence([_const(1), _const(2)])
        result = stack_sequence(seq, indices=[0], context=context)

        assert result.status == StackStatus.CONFIG_ERROR
        assert result.image is None
        assert "at least two" in result.message

    def test_excluded_frames_skipped(self, make_sequence, context):
        seq = make_sequence([_const(1), _const(50), _const(3)], included=[True, False, True])
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MAX), context=context)

        assert result.nb_stacked == 2
        assert np.all(result.image.channels[0] == 3)
        assert 1 not in seq.loaded

    def test_only_one_included(self, make_sequence, context):
        seq = make_sequence([_const(1), _const(2)], included=[True, False])
        assert stack_sequence(seq, context=context).status == StackStatus.CONFIG_ERROR

    def test_dimension_mismatch(self, make_sequence, context):
        seq = make_sequence([_const(1), _const(2, shape=(8, 9))])
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MAX), context=context)

        assert result.status == StackStatus.CONFIG_ERROR
        assert result.image is None

    def test_read_error(self, make_sequence, context):
        seq = make_sequence([_const(1), _const(2), _const(3)], fail_on={2})
        result = stack_sequence(seq, config=StackConfig(method=CombineMethod.MEAN), context=context)

        assert result.status == StackStatus.READ_ERROR
        assert result.image is None
        assert "frame 2" in result.message

    @pytest.mark.parametrize("method", list(CombineMethod))
    def test_cancelled(self, make_sequence, context, method):
        seq = make_sequence([_const(1), _const(2), _const(3)])
        context.cancel()
        result = stack_sequence(seq, config=StackConfig(method=method), context=context)

        assert result.status == StackStatus.CANCELLED
        assert result.image is None
        assert seq.loaded == []

    def test_invalid_config(self, make_sequence, context):
        seq = make_sequence([_const(1), _const(2)])
        result = stack_sequence(seq, config=StackConfig(upscale=0.5), context=context)
        assert result.status == StackStatus.CONFIG_ERROR

    def test_normalization_failure(self, make_sequence, context):
        """A reference outside the selection is a generic error."""
        seq = make_sequence([_const(1), _const(2), _const(3)])
        config = StackConfig(method=CombineMethod.MEDIAN, normalization=Normalization.ADDITIVE)
        result = stack_sequence(seq, indices=[1, 2], config=config, context=context)
        assert result.status == StackStatus.GENERIC_ERROR

    def test_state_reaches_finalize(self, make_sequence, context):
        combiner = StackCombiner(make_sequence([_const(1), _const(2)]),
                                 StackConfig(method=CombineMethod.MAX), context)
        result = combiner.run()
        assert result.ok
        assert combiner.state == StackState.FINALIZE
        assert result.elapsed_s >= 0.0

    def test_output_float(self, make_sequence, context):
        seq = make_sequence([_const(0), _const(65535)])
        config = StackConfig(method=CombineMethod.MAX, output_float=True)
        result = stack_sequence(seq, config=config, context=context)

        assert result.image.channels[0].dtype == np.float32
        assert np.allclose(result.image.channels[0], 1.0)

    def test_progress_enabled(self, make_sequence, context):
        seq = make_sequence([_const(1), _const(2), _const(3)])
        config = StackConfig(method=CombineMethod.MEDIAN, show_progress=True)
        assert stack_sequence(seq, config=config, context=context).ok
