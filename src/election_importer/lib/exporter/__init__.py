"""Exporter library: CSV export of import error records."""

from election_importer.lib.exporter.csv_writer import ERROR_COLUMNS, render_csv, write_csv

__all__ = ["ERROR_COLUMNS", "render_csv", "write_csv"]
