"""ORM model registry. Import all models so Alembic autogenerate discovers them."""

from election_importer.models.base import Base
from election_importer.models.candidate_vote import CandidateVote
from election_importer.models.import_batch import ImportBatch
from election_importer.models.import_error import ImportRowError
from election_importer.models.import_job import ImportJob

__all__ = [
    "Base",
    "CandidateVote",
    "ImportBatch",
    "ImportJob",
    "ImportRowError",
]
