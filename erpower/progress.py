"""
Progress reporting for ERPower batch runs.

A batch is measured in model-fitting runs: every sample is fitted on its
population data and again after each case-deletion percentage. Progress is
handed to a plain ``callback(current, total)``, so scripts, notebooks and
GUIs can all plug in their own display.
"""

import sys
from typing import Callable, Optional


class SimulationCancelled(Exception):
    """Raised to stop a batch between samples."""


def compute_total_runs(n_samples: int, n_case_deletion_pcts: int) -> int:
    """Number of fitting runs in a batch: ``n_samples * (1 + n_case_deletion_pcts)``."""
    return n_samples * (1 + n_case_deletion_pcts)


class ProgressReporter:
    """Counts completed runs and forwards throttled updates to a callback.

    The callback fires on ``start``, whenever the count crosses a multiple
    of *update_every* (advances may jump several runs at once when a whole
    sample finishes), and once the count reaches *total*. The callback may
    raise ``SimulationCancelled``.

    Args:
        total: Runs in the batch, see ``compute_total_runs``.
        callback: ``callback(current, total)``.
        update_every: Runs between updates; about 200 updates by default.
    """

    def __init__(self, total: int, callback: Callable[[int, int], None], update_every: Optional[int] = None):
        self.total = total
        self._callback = callback
        self._current = 0
        self.update_every = update_every or max(1, total // 200)

    @property
    def current(self) -> int:
        return self._current

    def start(self):
        self._current = 0
        self._callback(0, self.total)

    def advance(self, n: int = 1):
        before, self._current = self._current, self._current + n
        if self._current >= self.total or self._current // self.update_every > before // self.update_every:
            self._callback(self._current, self.total)

    def finish(self):
        """Report the full total unless the last advance already did."""
        if self._current < self.total:
            self._current = self.total
            self._callback(self.total, self.total)


class PrintReporter:
    """Single-line stderr display: ``Sample runs:  45.0% (9/20)``."""

    def __call__(self, current: int, total: int):
        if total <= 0:
            return
        sys.stderr.write(f"\rSample runs: {100.0 * current / total:5.1f}% ({current}/{total})")
        if current >= total:
            sys.stderr.write("\n")
        sys.stderr.flush()


class TqdmReporter:
    """tqdm progress bar over fitting runs (install ``ERPower[progress]``).

    Usage::

        model.run(sample_n=100, progress_callback=TqdmReporter(desc="32% batch"))
    """

    def __init__(self, **tqdm_kwargs):
        tqdm_kwargs.setdefault("unit", "run")
        self._tqdm_kwargs = tqdm_kwargs
        self._bar = None

    def __call__(self, current: int, total: int):
        from tqdm import tqdm

        if self._bar is None:
            self._bar = tqdm(total=total, **self._tqdm_kwargs)
        if current > self._bar.n:
            self._bar.update(current - self._bar.n)
        if current >= total:
            self._bar.close()
            self._bar = None
