"""Unit tests for the TSE row parser."""

import pytest

from election_importer.lib.importer.parser import (
    LEGACY_LAYOUT,
    MODERN_LAYOUT,
    RAW_DATA_MAX_LENGTH,
    RowErrorType,
    build_natural_key,
    clean_value,
    detect_layout,
    parse_row,
)


class TestDetectLayout:
    def test_legacy_up_to_38_columns(self) -> None:
        assert detect_layout(38) is LEGACY_LAYOUT
        assert detect_layout(30) is LEGACY_LAYOUT

    def test_modern_above_38_columns(self) -> None:
        assert detect_layout(50) is MODERN_LAYOUT


class TestCleanValue:
    @pytest.mark.parametrize("value", ["", "  ", "#NULO", "#NE", "#NULO#", "#nulo"])
    def test_sentinels_are_null(self, value: str) -> None:
        assert clean_value(value) is None

    def test_strips_whitespace(self) -> None:
        assert clean_value("  SP ") == "SP"

    def test_none_passthrough(self) -> None:
        assert clean_value(None) is None


class TestParseRow:
    """Tests for parse_row."""

    def test_valid_modern_row(self, tse) -> None:
        outcome = parse_row(tse["fields"](), row_number=1, layout=MODERN_LAYOUT)
        assert outcome.error is None
        assert outcome.filtered is False
        record = outcome.record
        assert record["election_year"] == 2022
        assert record["votes"] == 100
        assert record["party_acronym"] == "PDT"
        assert record["result_status"] == "ELEITO POR QP"
        assert record["natural_key"] == "2022|546|1|SP|71072|1|6|1234"

    def test_valid_legacy_row(self, tse) -> None:
        fields = tse["fields"](LEGACY_LAYOUT, election_year=2010, votes=7)
        outcome = parse_row(fields, row_number=3, layout=LEGACY_LAYOUT)
        assert outcome.record is not None
        assert outcome.record["election_year"] == 2010
        assert outcome.record["votes"] == 7

    def test_short_row_is_parse_error(self) -> None:
        outcome = parse_row(["2022", "SP"], row_number=5, layout=MODERN_LAYOUT)
        assert outcome.record is None
        assert outcome.error.error_type == RowErrorType.PARSE_ERROR
        assert outcome.error.row_number == 5
        assert outcome.error.raw_data == "2022;SP"

    def test_missing_required_field(self, tse) -> None:
        outcome = parse_row(tse["fields"](votes="#NULO"), row_number=1, layout=MODERN_LAYOUT)
        assert outcome.error.error_type == RowErrorType.MISSING_FIELD
        assert "votes" in outcome.error.message

    def test_optional_field_null(self, tse) -> None:
        outcome = parse_row(tse["fields"](party_name="#NE"), row_number=1, layout=MODERN_LAYOUT)
        assert outcome.record["party_name"] is None

    def test_non_numeric_votes(self, tse) -> None:
        outcome = parse_row(tse["fields"](votes="abc"), row_number=1, layout=MODERN_LAYOUT)
        assert outcome.error.error_type == RowErrorType.INVALID_NUMBER

    def test_number_out_of_range(self, tse) -> None:
        outcome = parse_row(tse["fields"](votes="99999999999"), row_number=1, layout=MODERN_LAYOUT)
        assert outcome.error.error_type == RowErrorType.INVALID_NUMBER

    def test_negative_votes(self, tse) -> None:
        outcome = parse_row(tse["fields"](votes="-3"), row_number=1, layout=MODERN_LAYOUT)
        assert outcome.error.error_type == RowErrorType.INVALID_NUMBER

    def test_year_out_of_range(self, tse) -> None:
        outcome = parse_row(tse["fields"](election_year="1850"), row_number=1, layout=MODERN_LAYOUT)
        assert outcome.error.error_type == RowErrorType.INVALID_FORMAT

    def test_invalid_region(self, tse) -> None:
        outcome = parse_row(tse["fields"](region="S1"), row_number=1, layout=MODERN_LAYOUT)
        assert outcome.error.error_type == RowErrorType.INVALID_FORMAT

    def test_region_uppercased(self, tse) -> None:
        outcome = parse_row(tse["fields"](region="sp"), row_number=1, layout=MODERN_LAYOUT)
        assert outcome.record["region"] == "SP"

    def test_value_too_long(self, tse) -> None:
        outcome = parse_row(tse["fields"](party_acronym="X" * 21), row_number=1, layout=MODERN_LAYOUT)
        assert outcome.error.error_type == RowErrorType.INVALID_FORMAT

    def test_cargo_filter_excludes_other_cargos(self, tse) -> None:
        outcome = parse_row(tse["fields"](cargo_code=7), row_number=1, layout=MODERN_LAYOUT, cargo_filter=6)
        assert outcome.filtered is True
        assert outcome.record is None
        assert outcome.error is None

    def test_cargo_filter_keeps_matching_rows(self, tse) -> None:
        outcome = parse_row(tse["fields"](cargo_code=6), row_number=1, layout=MODERN_LAYOUT, cargo_filter=6)
        assert outcome.record is not None

    def test_raw_data_truncated(self) -> None:
        raw = "x" * (RAW_DATA_MAX_LENGTH + 500)
        outcome = parse_row(["x"], row_number=1, layout=MODERN_LAYOUT, raw=raw)
        assert len(outcome.error.raw_data) == RAW_DATA_MAX_LENGTH


class TestNaturalKey:
    def test_same_row_same_key(self, tse) -> None:
        a = parse_row(tse["fields"](), row_number=1, layout=MODERN_LAYOUT).record
        b = parse_row(tse["fields"](votes=5), row_number=9, layout=MODERN_LAYOUT).record
        assert build_natural_key(a) == build_natural_key(b)

    def test_different_zone_different_key(self, tse) -> None:
        a = parse_row(tse["fields"](zone=1), row_number=1, layout=MODERN_LAYOUT).record
        b = parse_row(tse["fields"](zone=2), row_number=2, layout=MODERN_LAYOUT).record
        assert a["natural_key"] != b["natural_key"]
