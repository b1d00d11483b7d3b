"""
Progress reporting for compression runs.

Values are integer percentages in [0, 100]; a reporter only forwards a
value when it is strictly greater than the last one, so callers observe a
non-decreasing sequence that ends at 100 exactly once.
"""

from typing import Callable, Optional

ProgressCallback = Callable[[int], None]


class ProgressReporter:
    """Monotonic wrapper around a progress callback."""

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self._last = -1

    @property
    def last(self) -> int:
        return max(self._last, 0)

    def report(self, value: float) -> None:
        value = int(min(max(value, 0), 100))
        if value <= self._last:
            return
        self._last = value
        if self._callback is not None:
            self._callback(value)

    def complete(self) -> None:
        self.report(100)

    def scoped(self, start: float, end: float) -> "ScopedProgress":
        """Map a child's 0-100 range onto [start, end] of this reporter."""
        return ScopedProgress(self, start, end)


class ScopedProgress(ProgressReporter):
    """Reporter whose 0-100 range is a sub-range of a parent reporter."""

    def __init__(self, parent: ProgressReporter, start: float, end: float):
        super().__init__()
        self._parent = parent
        self._start = start
        self._end = max(end, start)

    def report(self, value: float) -> None:
        value = min(max(value, 0), 100)
        if value <= self._last:
            return
        self._last = value
        self._parent.report(self._start + (self._end - self._start) * value / 100)
