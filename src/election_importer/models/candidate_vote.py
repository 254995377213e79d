"""CandidateVote model: per-zone candidate vote totals imported from TSE files."""

from sqlalchemy import ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from election_importer.models.base import Base, IntegerIDMixin


class CandidateVote(Base, IntegerIDMixin):
    """One row of a ``votacao_candidato_munzona`` file.

    ``natural_key`` identifies the row independently of the job that
    imported it and is the deduplication key for re-imports and reprocessing.
    ``source_row`` is the one-based data row the record came from.
    """

    __tablename__ = "candidate_votes"

    import_job_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_row: Mapped[int] = mapped_column(Integer, nullable=False)
    natural_key: Mapped[str] = mapped_column(String(160), nullable=False, unique=True)

    election_year: Mapped[int] = mapped_column(Integer, nullable=False)
    election_code: Mapped[int] = mapped_column(Integer, nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    election_date: Mapped[str | None] = mapped_column(String(20), nullable=True)
    region: Mapped[str] = mapped_column(String(2), nullable=False)
    electoral_unit: Mapped[str | None] = mapped_column(String(10), nullable=True)
    municipality_code: Mapped[int] = mapped_column(Integer, nullable=False)
    municipality_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    zone: Mapped[int] = mapped_column(Integer, nullable=False)
    cargo_code: Mapped[int] = mapped_column(Integer, nullable=False)
    cargo_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    candidate_sequence: Mapped[str | None] = mapped_column(String(20), nullable=True)
    candidate_number: Mapped[int] = mapped_column(Integer, nullable=False)
    candidate_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    ballot_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    party_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    party_acronym: Mapped[str | None] = mapped_column(String(20), nullable=True)
    party_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    result_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    votes: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("ix_candidate_votes_year_region_cargo", "election_year", "region", "cargo_code"),)
