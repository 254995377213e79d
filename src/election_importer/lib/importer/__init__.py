"""Importer library public API.

Provides the TSE row parser, the line-addressable source reader, batch
range planning, job/batch status machines and derived progress metrics.
"""

from election_importer.lib.importer.batching import BatchRange, plan_ranges
from election_importer.lib.importer.parser import ParseOutcome, RowError, RowErrorType, parse_row
from election_importer.lib.importer.progress import ImportOutcome, ProgressSnapshot, compute_progress
from election_importer.lib.importer.reader import SourceReader, count_rows
from election_importer.lib.importer.states import BatchStatus, ImportStatus, ValidationStatus

__all__ = [
    "BatchRange",
    "BatchStatus",
    "ImportOutcome",
    "ImportStatus",
    "ParseOutcome",
    "ProgressSnapshot",
    "RowError",
    "RowErrorType",
    "SourceReader",
    "ValidationStatus",
    "compute_progress",
    "count_rows",
    "parse_row",
    "plan_ranges",
]
