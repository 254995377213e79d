"""ImportJob model: one requested ingestion of an election data file."""

from datetime import datetime

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from election_importer.models.base import Base, IntegerIDMixin, TimestampMixin


class ImportJob(Base, IntegerIDMixin, TimestampMixin):
    """Tracks an import from an uploaded file or a remote archive URL.

    Counters are written by the acquisition stage (bytes) and the batch
    processor (rows) as work advances, so readers always see a live,
    partial picture.
    """

    __tablename__ = "import_jobs"

    # Source descriptor
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_type: Mapped[str] = mapped_column(String(10), nullable=False, default="upload")
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_key: Mapped[str] = mapped_column(String(600), nullable=False)
    selected_file: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parent_job_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("import_jobs.id", ondelete="SET NULL"), nullable=True
    )

    # Ingestion filters
    election_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    region: Mapped[str | None] = mapped_column(String(2), nullable=True)
    cargo_filter: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", server_default="pending", index=True
    )

    # Byte counters
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    downloaded_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")

    # Row counters
    total_rows: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_file_rows: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    skipped_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    available_files: Mapped[list[str] | None] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )

    # Local artifacts produced by acquisition
    local_archive_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    local_csv_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Integrity verification
    validation_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="not_run", server_default="not_run"
    )
    validation_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_import_jobs_source_filters", "source_key", "election_year", "region", "cargo_filter"),)
