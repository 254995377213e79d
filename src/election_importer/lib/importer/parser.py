"""TSE candidate-vote row parser.

Converts one raw ``votacao_candidato_munzona`` record (already split on
``;``) into a typed record dict or a structured row error. Pure and
stateless: no I/O, no database access.

Two column layouts exist. Files published for 2002-2014 carry at most 38
columns; later files carry 50, with judgement, federation and valid-vote
columns inserted before the party block.
"""

import enum
import re
from dataclasses import dataclass
from typing import Any

NULL_SENTINELS = frozenset({"", "#NULO", "#NE", "#NULO#"})

RAW_DATA_MAX_LENGTH = 1000

LEGACY_MAX_COLUMNS = 38

INT32_MAX = 2_147_483_647

_REGION_RE = re.compile(r"^[A-Z]{2}$")


class RowErrorType(enum.StrEnum):
    """Classification of a row-level failure."""

    PARSE_ERROR = "parse_error"
    INVALID_FORMAT = "invalid_format"
    MISSING_FIELD = "missing_field"
    # Never recorded by the batch processor: duplicates are counted as skipped rows
    DUPLICATE_ENTRY = "duplicate_entry"
    INVALID_NUMBER = "invalid_number"
    ENCODING_ERROR = "encoding_error"
    OTHER = "other"


@dataclass(frozen=True)
class ColumnLayout:
    """Positions of the fields the importer keeps, for one file generation."""

    name: str
    columns: dict[str, int]

    @property
    def min_columns(self) -> int:
        return max(self.columns.values()) + 1


_SHARED_COLUMNS: dict[str, int] = {
    "election_year": 2,
    "round_number": 5,
    "election_code": 6,
    "election_date": 8,
    "region": 10,
    "electoral_unit": 11,
    "municipality_code": 13,
    "municipality_name": 14,
    "zone": 15,
    "cargo_code": 16,
    "cargo_name": 17,
    "candidate_sequence": 18,
    "candidate_number": 19,
    "candidate_name": 20,
    "ballot_name": 21,
}

LEGACY_LAYOUT = ColumnLayout(
    name="legacy",
    columns={
        **_SHARED_COLUMNS,
        "party_number": 28,
        "party_acronym": 29,
        "party_name": 30,
        "result_status": 35,
        "votes": 37,
    },
)

MODERN_LAYOUT = ColumnLayout(
    name="modern",
    columns={
        **_SHARED_COLUMNS,
        "party_number": 34,
        "party_acronym": 35,
        "party_name": 36,
        "votes": 45,
        "result_status": 49,
    },
)

REQUIRED_FIELDS = (
    "election_year",
    "election_code",
    "round_number",
    "region",
    "municipality_code",
    "zone",
    "cargo_code",
    "candidate_number",
    "votes",
)

INTEGER_FIELDS = frozenset(
    {
        "election_year",
        "election_code",
        "round_number",
        "municipality_code",
        "zone",
        "cargo_code",
        "candidate_number",
        "party_number",
        "votes",
    }
)

# Column widths of the candidate_votes table
MAX_LENGTHS: dict[str, int] = {
    "election_date": 20,
    "electoral_unit": 10,
    "municipality_name": 100,
    "cargo_name": 100,
    "candidate_sequence": 20,
    "candidate_name": 200,
    "ballot_name": 100,
    "party_acronym": 20,
    "party_name": 200,
    "result_status": 50,
}

NATURAL_KEY_FIELDS = (
    "election_year",
    "election_code",
    "round_number",
    "region",
    "municipality_code",
    "zone",
    "cargo_code",
    "candidate_number",
)


@dataclass
class RowError:
    """A row that could not be turned into a record."""

    row_number: int | None
    error_type: RowErrorType
    message: str
    raw_data: str | None = None


@dataclass
class ParseOutcome:
    """Result of parsing one row.

    Exactly one of ``record`` / ``error`` is set, unless ``filtered`` is
    true, in which case the row was well-formed but excluded by the job's
    category filter.
    """

    record: dict[str, Any] | None = None
    error: RowError | None = None
    filtered: bool = False


def detect_layout(column_count: int) -> ColumnLayout:
    """Pick the column layout for a file from its header width."""
    return LEGACY_LAYOUT if column_count <= LEGACY_MAX_COLUMNS else MODERN_LAYOUT


def clean_value(value: str | None) -> str | None:
    """Strip a raw field and map TSE null sentinels to ``None``."""
    if value is None:
        return None
    value = value.strip()
    if value.upper() in NULL_SENTINELS:
        return None
    return value


def truncate_raw(raw: str | None) -> str | None:
    """Cap raw row text stored on error records."""
    if raw is None:
        return None
    return raw[:RAW_DATA_MAX_LENGTH]


def build_natural_key(record: dict[str, Any]) -> str:
    """Build the deduplication key shared by every import of the same row."""
    return "|".join(str(record[field]) for field in NATURAL_KEY_FIELDS)


def parse_row(
    fields: list[str],
    *,
    row_number: int | None,
    layout: ColumnLayout,
    cargo_filter: int | None = None,
    raw: str | None = None,
) -> ParseOutcome:
    """Parse and validate one source row.

    Args:
        fields: Raw field values, as split by the CSV reader.
        row_number: 1-based data row number (header excluded).
        layout: Column layout detected from the file header.
        cargo_filter: When set, rows for other cargo codes are filtered out.
        raw: Original row text, kept on error records.

    Returns:
        ParseOutcome carrying either the typed record, a RowError, or the
        filtered flag.
    """
    raw_text = truncate_raw(raw if raw is not None else ";".join(fields))

    def _error(error_type: RowErrorType, message: str) -> ParseOutcome:
        return ParseOutcome(error=RowError(row_number, error_type, message, raw_text))

    if len(fields) < layout.min_columns:
        return _error(
            RowErrorType.PARSE_ERROR,
            f"Expected at least {layout.min_columns} columns for {layout.name} layout, got {len(fields)}",
        )

    record: dict[str, Any] = {}
    for field, index in layout.columns.items():
        value = clean_value(fields[index])
        if value is None:
            if field in REQUIRED_FIELDS:
                return _error(RowErrorType.MISSING_FIELD, f"Missing required field: {field}")
            record[field] = None
            continue
        if field in INTEGER_FIELDS:
            try:
                number = int(value)
            except ValueError:
                return _error(RowErrorType.INVALID_NUMBER, f"Invalid number for {field}: {value!r}")
            if abs(number) > INT32_MAX:
                return _error(RowErrorType.INVALID_NUMBER, f"Number out of range for {field}: {value}")
            record[field] = number
        else:
            limit = MAX_LENGTHS.get(field)
            if limit is not None and len(value) > limit:
                return _error(RowErrorType.INVALID_FORMAT, f"Value too long for {field}: {len(value)} > {limit}")
            record[field] = value

    year = record["election_year"]
    if year < 1900 or year > 2100:
        return _error(RowErrorType.INVALID_FORMAT, f"Invalid election_year: {year}")
    if record["votes"] < 0:
        return _error(RowErrorType.INVALID_NUMBER, f"Negative vote count: {record['votes']}")
    region = record["region"].upper()
    if not _REGION_RE.match(region):
        return _error(RowErrorType.INVALID_FORMAT, f"Invalid region code: {record['region']!r}")
    record["region"] = region

    if cargo_filter is not None and record["cargo_code"] != cargo_filter:
        return ParseOutcome(filtered=True)

    record["natural_key"] = build_natural_key(record)
    return ParseOutcome(record=record)
