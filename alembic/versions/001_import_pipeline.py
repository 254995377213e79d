"""Add import_jobs, import_batches, import_errors and candidate_votes tables.

Revision ID: 001
Revises:
Create Date: 2026-10-16
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Create import_jobs table
    op.create_table(
        "import_jobs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("source_type", sa.String(10), nullable=False),
        sa.Column("source_url", sa.Text, nullable=True),
        sa.Column("source_key", sa.String(600), nullable=False),
        sa.Column("selected_file", sa.String(255), nullable=True),
        sa.Column(
            "parent_job_id",
            sa.Integer,
            sa.ForeignKey("import_jobs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("election_year", sa.Integer, nullable=True),
        sa.Column("region", sa.String(2), nullable=True),
        sa.Column("cargo_filter", sa.Integer, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("file_size", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("downloaded_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("total_rows", sa.Integer, nullable=True),
        sa.Column("total_file_rows", sa.Integer, nullable=True),
        sa.Column("processed_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("status_message", sa.Text, nullable=True),
        sa.Column("available_files", sa.JSON().with_variant(JSONB(), "postgresql"), nullable=True),
        sa.Column("local_archive_path", sa.String(500), nullable=True),
        sa.Column("local_csv_path", sa.String(500), nullable=True),
        sa.Column("validation_status", sa.String(20), nullable=False, server_default="not_run"),
        sa.Column("validation_message", sa.Text, nullable=True),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_import_jobs_status", "import_jobs", ["status"])
    op.create_index("ix_import_jobs_created_at", "import_jobs", ["created_at"])
    op.create_index(
        "ix_import_jobs_source_filters",
        "import_jobs",
        ["source_key", "election_year", "region", "cargo_filter"],
    )

    # Create import_batches table
    op.create_table(
        "import_batches",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.Integer, sa.ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("batch_index", sa.Integer, nullable=False),
        sa.Column("row_start", sa.Integer, nullable=False),
        sa.Column("row_end", sa.Integer, nullable=False),
        sa.Column("total_rows", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("processed_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("inserted_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped_rows", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_summary", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("job_id", "batch_index", name="uq_import_batches_job_index"),
    )
    op.create_index("ix_import_batches_job_status", "import_batches", ["job_id", "status"])
    op.create_index("ix_import_batches_created_at", "import_batches", ["created_at"])

    # Create import_errors table
    op.create_table(
        "import_errors",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.Integer, sa.ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("row_number", sa.Integer, nullable=True),
        sa.Column("error_type", sa.String(30), nullable=False),
        sa.Column("error_message", sa.Text, nullable=False),
        sa.Column("raw_data", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_import_errors_job_row", "import_errors", ["job_id", "row_number"])

    # Create candidate_votes table
    op.create_table(
        "candidate_votes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "import_job_id",
            sa.Integer,
            sa.ForeignKey("import_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_row", sa.Integer, nullable=False),
        sa.Column("natural_key", sa.String(160), nullable=False),
        sa.Column("election_year", sa.Integer, nullable=False),
        sa.Column("election_code", sa.Integer, nullable=False),
        sa.Column("round_number", sa.Integer, nullable=False),
        sa.Column("election_date", sa.String(20), nullable=True),
        sa.Column("region", sa.String(2), nullable=False),
        sa.Column("electoral_unit", sa.String(10), nullable=True),
        sa.Column("municipality_code", sa.Integer, nullable=False),
        sa.Column("municipality_name", sa.String(100), nullable=True),
        sa.Column("zone", sa.Integer, nullable=False),
        sa.Column("cargo_code", sa.Integer, nullable=False),
        sa.Column("cargo_name", sa.String(100), nullable=True),
        sa.Column("candidate_sequence", sa.String(20), nullable=True),
        sa.Column("candidate_number", sa.Integer, nullable=False),
        sa.Column("candidate_name", sa.String(200), nullable=True),
        sa.Column("ballot_name", sa.String(100), nullable=True),
        sa.Column("party_number", sa.Integer, nullable=True),
        sa.Column("party_acronym", sa.String(20), nullable=True),
        sa.Column("party_name", sa.String(200), nullable=True),
        sa.Column("result_status", sa.String(50), nullable=True),
        sa.Column("votes", sa.Integer, nullable=False),
        sa.UniqueConstraint("natural_key", name="uq_candidate_votes_natural_key"),
    )
    op.create_index("ix_candidate_votes_import_job_id", "candidate_votes", ["import_job_id"])
    op.create_index(
        "ix_candidate_votes_year_region_cargo",
        "candidate_votes",
        ["election_year", "region", "cargo_code"],
    )


def downgrade() -> None:
    op.drop_table("candidate_votes")
    op.drop_table("import_errors")
    op.drop_table("import_batches")
    op.drop_table("import_jobs")
