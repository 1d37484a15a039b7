"""
Tests for the `progress.py` module.
"""
import random

import pytest

from dbakit.core.progress import INT32_MAX, BulkCopyProgress, rows_copied_delta


def test_rows_copied_delta_without_wrap():
    """Progress within one counter epoch is the plain difference."""
    assert rows_copied_delta(1500, 1000) == 500


def test_rows_copied_delta_with_wrap():
    """A reported value below the previous one means the 32-bit counter wrapped."""
    assert rows_copied_delta(50, INT32_MAX - 10) == 60


def test_rows_copied_delta_first_call():
    """The first notification is never treated as a wrap."""
    assert rows_copied_delta(42, 0) == 42


@pytest.mark.parametrize("value", [0, 1, 5000, INT32_MAX])
def test_rows_copied_delta_unchanged_counter(value: int):
    """
    Test that an unchanged counter yields no rows.

    :param value: The counter value reported twice in a row.
    """
    assert rows_copied_delta(value, value) == 0


def test_progress_accumulates_across_wrap():
    """The running total keeps counting past INT32_MAX."""
    progress = BulkCopyProgress()
    assert progress.update(INT32_MAX - 100) == INT32_MAX - 100
    assert progress.update(INT32_MAX - 10) == 90
    assert progress.update(25) == 35
    assert progress.previous_reported == 25
    assert progress.total == INT32_MAX + 25


def test_progress_total_is_monotonic():
    """
    Feed a long random sequence of 32-bit counter values (wrapping several times)
    and check the corrected total never decreases and never goes negative.
    """
    rng = random.Random(1234)
    progress = BulkCopyProgress()
    counter = 0
    last_total = 0
    for _ in range(5000):
        counter = (counter + rng.randint(0, INT32_MAX // 3)) % (INT32_MAX + 1)
        delta = progress.update(counter)
        assert delta >= 0
        assert progress.total >= last_total
        last_total = progress.total
    assert progress.total > INT32_MAX


def test_progress_rows_per_second():
    """The rate is the total divided by the elapsed time."""
    progress = BulkCopyProgress(start=0.0)
    progress.update(1000)
    assert progress.rows_per_second() > 0
