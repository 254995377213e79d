"""Partitioning of a job's data rows into fixed-size batch ranges."""

from dataclasses import dataclass


@dataclass(frozen=True)
class BatchRange:
    """Half-open ``[row_start, row_end)`` range of zero-based data row indexes."""

    batch_index: int
    row_start: int
    row_end: int

    @property
    def total_rows(self) -> int:
        return self.row_end - self.row_start


def plan_ranges(total_rows: int, batch_size: int) -> list[BatchRange]:
    """Split ``total_rows`` into contiguous ranges of at most ``batch_size`` rows.

    The ranges never overlap and their union is ``[0, total_rows)``. A file
    with no data rows yields no ranges.

    Raises:
        ValueError: If ``batch_size`` is not positive or ``total_rows`` is negative.
    """
    if batch_size <= 0:
        msg = f"batch_size must be positive, got {batch_size}"
        raise ValueError(msg)
    if total_rows < 0:
        msg = f"total_rows must be non-negative, got {total_rows}"
        raise ValueError(msg)
    return [
        BatchRange(batch_index=i, row_start=start, row_end=min(start + batch_size, total_rows))
        for i, start in enumerate(range(0, total_rows, batch_size))
    ]
