"""Unit tests for the source CSV reader."""

from pathlib import Path

import pytest

from election_importer.lib.importer.parser import LEGACY_LAYOUT, MODERN_LAYOUT, RowErrorType
from election_importer.lib.importer.reader import SourceReader, count_rows, detect_delimiter, detect_encoding


class TestDetectEncoding:
    def test_utf8(self, tmp_path: Path) -> None:
        f = tmp_path / "a.csv"
        f.write_text("ANO;UF\n2022;SÃO PAULO\n", encoding="utf-8")
        assert detect_encoding(f) == "utf-8"

    def test_latin1_late_in_file(self, tmp_path: Path) -> None:
        f = tmp_path / "a.csv"
        f.write_bytes(b"ANO;UF\n" + b"2022;SP\n" * 50_000 + b"2022;S\xc3O\n")
        assert detect_encoding(f) == "latin-1"


class TestDetectDelimiter:
    @pytest.mark.parametrize("delimiter", [";", ",", "|", "\t"])
    def test_candidates(self, delimiter: str) -> None:
        assert detect_delimiter(delimiter.join(["A", "B", "C"])) == delimiter

    def test_no_delimiter_raises(self) -> None:
        with pytest.raises(ValueError, match="Cannot detect delimiter"):
            detect_delimiter("single_column")


class TestCountRows:
    def test_excludes_header_and_blank_lines(self, tmp_path: Path) -> None:
        f = tmp_path / "a.csv"
        f.write_text("H1;H2\n1;2\n\n3;4\n   \n5;6\n")
        assert count_rows(f) == 3

    def test_header_only(self, tmp_path: Path) -> None:
        f = tmp_path / "a.csv"
        f.write_text("H1;H2\n")
        assert count_rows(f) == 0

    def test_empty_file(self, tmp_path: Path) -> None:
        f = tmp_path / "a.csv"
        f.write_bytes(b"")
        assert count_rows(f) == 0


class TestSourceReader:
    """Tests for SourceReader."""

    def test_layout_and_encoding(self, tmp_path: Path, tse) -> None:
        path = tse["csv"](tmp_path / "modern.csv", tse["rows"](3))
        with SourceReader(path) as reader:
            assert reader.encoding == "latin-1"
            assert reader.delimiter == ";"
            assert reader.layout is MODERN_LAYOUT
            rows = list(reader.rows(0, 3))
        assert [r.row_number for r in rows] == [1, 2, 3]
        assert rows[0].fields[14] == "SÃO PAULO"

    def test_legacy_layout(self, tmp_path: Path, tse) -> None:
        path = tse["csv"](tmp_path / "legacy.csv", [tse["fields"](LEGACY_LAYOUT)], layout=LEGACY_LAYOUT)
        with SourceReader(path) as reader:
            assert reader.layout is LEGACY_LAYOUT

    def test_ranges_are_sequential_and_disjoint(self, tmp_path: Path, tse) -> None:
        path = tse["csv"](tmp_path / "a.csv", tse["rows"](10))
        with SourceReader(path) as reader:
            first = [r.index for r in reader.rows(0, 4)]
            second = [r.index for r in reader.rows(4, 8)]
            third = [r.index for r in reader.rows(8, 20)]
        assert first == [0, 1, 2, 3]
        assert second == [4, 5, 6, 7]
        assert third == [8, 9]

    def test_rewinds_for_earlier_range(self, tmp_path: Path, tse) -> None:
        path = tse["csv"](tmp_path / "a.csv", tse["rows"](6))
        with SourceReader(path) as reader:
            list(reader.rows(0, 6))
            again = [r.index for r in reader.rows(2, 4)]
        assert again == [2, 3]

    def test_invalid_bytes_in_utf8_file(self, tmp_path: Path) -> None:
        path = tmp_path / "a.csv"
        path.write_bytes(b"A;B\n1;2\n3;4\n")
        with SourceReader(path, encoding="utf-8") as reader:
            rows = list(reader.rows(0, 2))
        assert all(r.error is None for r in rows)

        bad = tmp_path / "b.csv"
        bad.write_bytes(b"A;B\n1;2\n3;\xff\n")
        with SourceReader(bad, encoding="utf-8") as reader:
            rows = list(reader.rows(0, 2))
        assert rows[0].error is None
        assert rows[1].error.error_type == RowErrorType.ENCODING_ERROR
        assert rows[1].error.row_number == 2

    def test_nul_bytes_are_encoding_errors(self, tmp_path: Path) -> None:
        path = tmp_path / "a.csv"
        path.write_bytes(b"A;B\n1;\x002\n")
        with SourceReader(path) as reader:
            rows = list(reader.rows(0, 1))
        assert rows[0].error.error_type == RowErrorType.ENCODING_ERROR
