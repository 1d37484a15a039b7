"""
Objective: Row-count bookkeeping for bulk copies whose driver reports a 32-bit counter.
"""
import time
from typing import Optional

INT32_MAX = 2147483647


def rows_copied_delta(reported: int, previous: int) -> int:
    """
    Returns the number of rows copied since the previous notification.

    The driver counter is 32-bit: once it passes INT32_MAX it starts again
    from (about) zero, so a reported value below the previous one means the
    counter wrapped.
    """
    if reported >= previous:
        return reported - previous
    return (INT32_MAX - previous) + reported


class BulkCopyProgress:
    """Running 64-bit total fed by the bulk copier's rows-copied callback."""

    def __init__(self, start: Optional[float] = None):
        self.previous_reported = 0
        self.total = 0
        self.started = time.monotonic() if start is None else start

    def update(self, reported: int) -> int:
        delta = rows_copied_delta(reported, self.previous_reported)
        self.previous_reported = reported
        self.total += delta
        return delta

    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def rows_per_second(self) -> float:
        elapsed = self.elapsed()
        if elapsed <= 0:
            return 0.0
        return self.total / elapsed
