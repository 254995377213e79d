"""Unit tests for common Pydantic schemas."""

import pytest
from pydantic import ValidationError

from election_importer.schemas.common import ErrorResponse, PaginationParams


class TestPaginationParams:
    """Tests for PaginationParams validation."""

    def test_defaults(self) -> None:
        params = PaginationParams()
        assert params.page == 1
        assert params.page_size == 20

    def test_page_zero_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PaginationParams(page=0)

    def test_page_size_over_max_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PaginationParams(page_size=201)


class TestErrorResponse:
    def test_duplicate_fields_optional(self) -> None:
        body = ErrorResponse(detail="Not found")
        assert body.model_dump() == {"detail": "Not found", "code": None, "existing_job_id": None}
