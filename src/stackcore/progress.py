"""
Progress reporting for stacking runs.

One `StackProgress` bar follows a combination pass: frames for the
frame-wise strategies, frame reads for the block strategies. The bar is
silent unless `StackConfig.show_progress` is set.
"""

from __future__ import annotations

from colorama import Fore, Style
from tqdm import tqdm

from .config import CombineMethod, StackStatus

BAR_FORMAT = "{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {postfix}]"

_METHOD_LABELS = {
    CombineMethod.SUM: "Sum stacking",
    CombineMethod.MIN: "Min stacking",
    CombineMethod.MAX: "Max stacking",
    CombineMethod.MEDIAN: "Median stacking",
    CombineMethod.MEAN: "Mean stacking",
}


def status_colour(status: StackStatus) -> str:
    """Terminal colour of a run outcome."""
    if status == StackStatus.OK:
        return Fore.GREEN
    if status == StackStatus.CANCELLED:
        return Fore.YELLOW
    return Fore.RED


class StackProgress:
    """
    Progress bar over the frames read by one combination pass.

    Example
    -------
    >>> with StackProgress(CombineMethod.MAX, total=3) as progress:
    ...     for index in (0, 1, 2):
    ...         progress.frame_done(index)
    """

    def __init__(self, method: CombineMethod, total: int, enabled: bool = True, unit: str = "frame"):
        self.method = method
        self.total = total
        self.enabled = enabled
        self.done = 0
        self._bar = tqdm(
            total=total,
            desc=f"{Fore.GREEN}{_METHOD_LABELS[method]}{Style.RESET_ALL}",
            unit=unit,
            bar_format=BAR_FORMAT,
            ncols=80,
            colour="green",
            leave=False,
            disable=not enabled,
        )

    def frame_done(self, index: int) -> None:
        """Advance by one frame read, showing its sequence index."""
        self.done += 1
        self._bar.set_postfix_str(f"frame {index}", refresh=False)
        self._bar.update(1)

    def __enter__(self) -> StackProgress:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._bar.close()


def report_outcome(method: CombineMethod, status: StackStatus) -> None:
    """Print the coloured outcome of a run below any active bar."""
    tqdm.write(f"{status_colour(status)}{_METHOD_LABELS[method]}: {status.value}{Style.RESET_ALL}")
