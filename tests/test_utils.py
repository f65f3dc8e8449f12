"""
Tests for the utils and progress modules.
"""

import logging

from stackcore import __version__, get_version_banner, setup_logging
from stackcore import CombineMethod, StackStatus
from stackcore.progress import StackProgress, report_outcome, status_colour
from stackcore.utils import format_bytes, format_duration, round_to_int


class TestFormatting:

    def test_format_duration(self):
        assert format_duration(45.24) == "45.2s"
        assert format_duration(135) == "2m 15s"
        assert format_duration(8130) == "2h 15m 30s"

    def test_format_bytes(self):
        assert format_bytes(512) == "512.0 B"
        assert format_bytes(3 * 1024 * 1024) == "3.0 MB"

    def test_round_to_int(self):
        """Half away from zero, symmetric for negative shifts."""
        assert round_to_int(2.5) == 3
        assert round_to_int(-2.5) == -3
        assert round_to_int(1.49) == 1
        assert round_to_int(-0.4) == 0

    def test_banner(self):
        assert __version__ in get_version_banner()


class TestLoggingAndProgress:

    def test_setup_logging(self):
        setup_logging(verbose=True)
        assert logging.getLogger().handlers

    def test_progress_counts_frames(self):
        with StackProgress(CombineMethod.MAX, total=3, enabled=False) as progress:
            for index in (4, 5, 6):
                progress.frame_done(index)
        assert progress.done == 3

    def test_enabled_progress(self, capsys):
        with StackProgress(CombineMethod.MEDIAN, total=2) as progress:
            progress.frame_done(0)
            progress.frame_done(1)
        report_outcome(CombineMethod.MEDIAN, StackStatus.CANCELLED)
        assert progress.done == 2
        assert "Median stacking: cancelled" in capsys.readouterr().out

    def test_status_colours(self):
        assert status_colour(StackStatus.OK) != status_colour(StackStatus.READ_ERROR)
