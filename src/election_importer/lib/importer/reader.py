"""Line-addressable CSV reader for TSE source files.

TSE files are semicolon-delimited with one header row and no embedded
newlines, so each non-blank physical line after the header is exactly one
data row. Rows are addressed by a zero-based data row index; error records
use ``index + 1``.
"""

import codecs
import csv
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from loguru import logger

from election_importer.lib.importer.parser import ColumnLayout, RowError, RowErrorType, detect_layout, truncate_raw

DELIMITER_CANDIDATES = (";", ",", "|", "\t")

_SCAN_CHUNK = 1024 * 1024


@dataclass
class SourceRow:
    """One data row read from the source file."""

    index: int
    raw: str
    fields: list[str] | None = None
    error: RowError | None = None

    @property
    def row_number(self) -> int:
        return self.index + 1


def detect_encoding(file_path: Path) -> str:
    """Detect file encoding.

    The whole file is scanned with an incremental UTF-8 decoder because TSE
    files often start with plain ASCII and only hit accented Latin-1 bytes
    far into the file.

    Returns:
        ``"utf-8"`` when the file decodes cleanly, otherwise ``"latin-1"``.
    """
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        with file_path.open("rb") as f:
            while chunk := f.read(_SCAN_CHUNK):
                decoder.decode(chunk)
            decoder.decode(b"", final=True)
    except UnicodeDecodeError:
        return "latin-1"
    return "utf-8"


def detect_delimiter(header_line: str) -> str:
    """Detect the delimiter from the header line.

    Raises:
        ValueError: If no candidate delimiter appears in the header.
    """
    counts = {d: header_line.count(d) for d in DELIMITER_CANDIDATES}
    delimiter = max(counts, key=counts.get)  # type: ignore[arg-type]
    if counts[delimiter] == 0:
        msg = "Cannot detect delimiter in header row"
        raise ValueError(msg)
    return delimiter


def _iter_data_lines(handle: BinaryIO) -> Iterator[bytes]:
    """Yield non-blank lines, header included, without line terminators."""
    for line in handle:
        line = line.rstrip(b"\r\n")
        if line.strip():
            yield line


def count_rows(file_path: Path) -> int:
    """Count data rows (non-blank lines after the header)."""
    with file_path.open("rb") as f:
        total = sum(1 for _ in _iter_data_lines(f))
    return max(total - 1, 0)


class SourceReader:
    """Sequential reader over row ranges of one source file.

    Consecutive ``rows()`` calls with ascending ranges continue from the
    current position; a range that starts behind the cursor reopens the
    file.
    """

    def __init__(self, file_path: Path, encoding: str | None = None) -> None:
        self.file_path = Path(file_path)
        self.encoding = encoding or detect_encoding(self.file_path)
        self._handle: BinaryIO | None = None
        self._lines: Iterator[bytes] | None = None
        self._cursor = 0
        self.header: list[str] = []
        self.delimiter = ";"
        self._open()
        logger.debug(
            f"Opened {self.file_path} encoding={self.encoding} delimiter={self.delimiter!r} "
            f"columns={len(self.header)}"
        )

    @property
    def layout(self) -> ColumnLayout:
        return detect_layout(len(self.header))

    def _open(self) -> None:
        self.close()
        self._handle = self.file_path.open("rb")
        self._lines = _iter_data_lines(self._handle)
        self._cursor = 0
        header_bytes = next(self._lines, None)
        if header_bytes is None:
            self.header = []
            return
        header_text = header_bytes.decode(self.encoding, errors="replace").lstrip("﻿")
        self.delimiter = detect_delimiter(header_text)
        self.header = [h.strip() for h in next(csv.reader([header_text], delimiter=self.delimiter))]

    def _decode(self, index: int, line: bytes) -> SourceRow:
        try:
            text = line.decode(self.encoding)
        except UnicodeDecodeError as e:
            raw = line.decode(self.encoding, errors="replace")
            return SourceRow(
                index,
                raw,
                error=RowError(index + 1, RowErrorType.ENCODING_ERROR, f"Cannot decode row: {e}", truncate_raw(raw)),
            )
        if "\x00" in text:
            return SourceRow(
                index,
                text,
                error=RowError(
                    index + 1, RowErrorType.ENCODING_ERROR, "Row contains NUL bytes", truncate_raw(text)
                ),
            )
        try:
            fields = next(csv.reader([text], delimiter=self.delimiter, quotechar='"'))
        except csv.Error as e:
            return SourceRow(
                index, text, error=RowError(index + 1, RowErrorType.PARSE_ERROR, str(e), truncate_raw(text))
            )
        return SourceRow(index, text, fields=fields)

    def rows(self, start: int, end: int) -> Iterator[SourceRow]:
        """Yield data rows with index in ``[start, end)``."""
        if self._lines is None or start < self._cursor:
            self._open()
        assert self._lines is not None
        while self._cursor < end:
            line = next(self._lines, None)
            if line is None:
                return
            index = self._cursor
            self._cursor += 1
            if index < start:
                continue
            yield self._decode(index, line)

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
        self._handle = None
        self._lines = None

    def __enter__(self) -> "SourceReader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
