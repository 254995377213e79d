"""CSV export writer for import error records."""

import csv
import io
from collections.abc import Iterable
from pathlib import Path
from typing import Any, TextIO

# Characters that trigger formula execution in spreadsheet applications
_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")

ERROR_COLUMNS = [
    "row_number",
    "error_type",
    "error_message",
    "raw_data",
    "created_at",
]


def _sanitize_cell(value: object) -> object:
    """Prefix formula-triggering string values with a single quote."""
    if isinstance(value, str) and value and value[0] in _FORMULA_PREFIXES:
        return f"'{value}"
    return value


def _write_rows(stream: TextIO, records: Iterable[dict[str, Any]], columns: list[str]) -> int:
    writer = csv.DictWriter(stream, fieldnames=columns, extrasaction="ignore")
    writer.writeheader()
    count = 0
    for record in records:
        writer.writerow({k: _sanitize_cell(v) for k, v in record.items()})
        count += 1
    return count


def write_csv(
    output_path: Path,
    records: Iterable[dict[str, Any]],
    *,
    columns: list[str] | None = None,
) -> int:
    """Write error records to a CSV file.

    Args:
        output_path: Path to write the CSV file.
        records: Iterable of error record dicts.
        columns: Column names to include. Defaults to ERROR_COLUMNS.

    Returns:
        Number of records written.
    """
    with output_path.open("w", newline="", encoding="utf-8") as f:
        return _write_rows(f, records, columns or ERROR_COLUMNS)


def render_csv(records: Iterable[dict[str, Any]], *, columns: list[str] | None = None) -> str:
    """Render error records as CSV text for HTTP responses."""
    buffer = io.StringIO(newline="")
    _write_rows(buffer, records, columns or ERROR_COLUMNS)
    return buffer.getvalue()
