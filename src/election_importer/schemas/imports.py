"""Import job Pydantic v2 request/response schemas."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from election_importer.schemas.common import PaginationMeta


class ImportFilters(BaseModel):
    """Filters applied when rows are ingested; part of the duplicate key."""

    election_year: int | None = Field(default=None, ge=1900, le=2100, description="Election year of the file")
    region: str | None = Field(default=None, min_length=2, max_length=2, description="UF (state) code")
    cargo_filter: int | None = Field(default=None, ge=0, description="Only import rows with this CD_CARGO")

    @field_validator("region")
    @classmethod
    def upper_region(cls, v: str | None) -> str | None:
        return v.upper() if v else v


class UrlImportRequest(ImportFilters):
    """Submit a remote TSE archive for import."""

    url: str = Field(description="HTTPS URL of a .zip archive on an allowed TSE host")
    selected_file: str | None = Field(default=None, description="Archive member to import")


class SelectFilesRequest(BaseModel):
    """Resolve a job waiting for an archive member choice."""

    file_name: str | None = Field(default=None, description="Archive member to import")
    import_all: bool = Field(default=False, description="Create one import job per archive member")

    @model_validator(mode="after")
    def one_choice(self) -> "SelectFilesRequest":
        if bool(self.file_name) == self.import_all:
            msg = "Provide either file_name or import_all=true"
            raise ValueError(msg)
        return self


class VerifyRequest(BaseModel):
    expected_rows: int | None = Field(default=None, ge=0, description="Reference row count from another source")


class ProgressResponse(BaseModel):
    """Derived progress; computed at read time, never stored."""

    percent: float | None = None
    is_indeterminate: bool = False
    rows_done: int = 0
    rows_per_second: float | None = None
    eta_seconds: float | None = None
    elapsed_seconds: float | None = None
    outcome: str | None = None

    model_config = {"from_attributes": True}


class ImportJobResponse(BaseModel):
    """Import job status, counters and metadata."""

    id: int
    file_name: str
    source_type: str
    source_url: str | None = None
    selected_file: str | None = None
    parent_job_id: int | None = None
    election_year: int | None = None
    region: str | None = None
    cargo_filter: int | None = None
    status: str
    file_size: int
    downloaded_bytes: int
    total_rows: int | None = None
    total_file_rows: int | None = None
    processed_rows: int
    skipped_rows: int
    error_count: int
    error_message: str | None = None
    status_message: str | None = None
    available_files: list[str] | None = None
    validation_status: str
    validation_message: str | None = None
    validated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    queue_position: int | None = Field(default=None, description="0 while processing, 1.. while waiting")
    progress: ProgressResponse | None = None

    model_config = {"from_attributes": True}


class PaginatedImportJobResponse(BaseModel):
    """Paginated list of import jobs."""

    items: list[ImportJobResponse]
    pagination: PaginationMeta


class SelectFilesResponse(BaseModel):
    job: ImportJobResponse
    children: list[ImportJobResponse] = Field(default_factory=list)


class ImportBatchResponse(BaseModel):
    """One batch of a job's rows."""

    id: int
    job_id: int
    batch_index: int
    row_start: int
    row_end: int
    total_rows: int
    status: str
    processed_rows: int
    inserted_rows: int
    skipped_rows: int
    error_count: int
    error_summary: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


class BatchStatsResponse(BaseModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class ImportBatchListResponse(BaseModel):
    items: list[ImportBatchResponse]
    stats: BatchStatsResponse


class ImportErrorResponse(BaseModel):
    """One rejected source row."""

    id: int
    job_id: int
    row_number: int | None = None
    error_type: str
    error_message: str
    raw_data: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class PaginatedImportErrorResponse(BaseModel):
    items: list[ImportErrorResponse]
    pagination: PaginationMeta


class BatchRowSummaryResponse(BaseModel):
    """Per-row outcome counts of one batch; ``pending`` rows were never read."""

    total: int
    inserted: int
    skipped: int
    failed: int
    pending: int


class ImportBatchDetailResponse(BaseModel):
    batch: ImportBatchResponse
    summary: BatchRowSummaryResponse
    failed_rows: list[ImportErrorResponse]


class IntegrityResponse(BaseModel):
    """Result of a manual integrity verification."""

    job_id: int
    is_valid: bool
    validation_message: str
    persisted_rows: int
    recorded_rows: int
    expected_rows: int
    failed_batches: int
    validated_at: datetime

    model_config = {"from_attributes": True}


class QueueEntryResponse(BaseModel):
    job_id: int
    position: int
    is_processing: bool

    model_config = {"from_attributes": True}


class QueueStatusResponse(BaseModel):
    """Scheduler snapshot."""

    is_processing: bool
    queue_length: int
    current_job_id: int | None = None
    active_job_ids: list[int]
    queue: list[QueueEntryResponse]

    model_config = {"from_attributes": True}
