"""Import job and batch unit status enums with their allowed transitions."""

import enum
from typing import Any, Protocol

from election_importer.lib.importer.errors import InvalidTransitionError


class ImportStatus(enum.StrEnum):
    """Lifecycle status of an import job."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    AWAITING_SELECTION = "awaiting_selection"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def _missing_(cls, value: object) -> "ImportStatus | None":
        # Older rows and clients use "processing" for the batch phase.
        if isinstance(value, str) and value.lower() == "processing":
            return cls.RUNNING
        return None


class BatchStatus(enum.StrEnum):
    """Lifecycle status of a single batch unit."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ValidationStatus(enum.StrEnum):
    """Outcome of the manual integrity verification."""

    NOT_RUN = "not_run"
    PASSED = "passed"
    FAILED = "failed"


# Statuses in which the job owns the active processing slot
ACTIVE_STATUSES = frozenset({ImportStatus.DOWNLOADING, ImportStatus.EXTRACTING, ImportStatus.RUNNING})

# Statuses that can still be cancelled by an operator
CANCELLABLE_STATUSES = frozenset(
    {
        ImportStatus.PENDING,
        ImportStatus.DOWNLOADING,
        ImportStatus.EXTRACTING,
        ImportStatus.AWAITING_SELECTION,
        ImportStatus.RUNNING,
    }
)

TERMINAL_STATUSES = frozenset({ImportStatus.COMPLETED, ImportStatus.FAILED, ImportStatus.CANCELLED})

RESTARTABLE_STATUSES = frozenset({ImportStatus.FAILED, ImportStatus.CANCELLED})

JOB_TRANSITIONS: dict[ImportStatus, frozenset[ImportStatus]] = {
    ImportStatus.PENDING: frozenset(
        {
            ImportStatus.DOWNLOADING,
            ImportStatus.EXTRACTING,
            ImportStatus.RUNNING,
            ImportStatus.FAILED,
            ImportStatus.CANCELLED,
        }
    ),
    ImportStatus.DOWNLOADING: frozenset(
        {ImportStatus.EXTRACTING, ImportStatus.RUNNING, ImportStatus.FAILED, ImportStatus.CANCELLED}
    ),
    ImportStatus.EXTRACTING: frozenset(
        {ImportStatus.RUNNING, ImportStatus.AWAITING_SELECTION, ImportStatus.FAILED, ImportStatus.CANCELLED}
    ),
    ImportStatus.AWAITING_SELECTION: frozenset(
        {ImportStatus.EXTRACTING, ImportStatus.COMPLETED, ImportStatus.FAILED, ImportStatus.CANCELLED}
    ),
    ImportStatus.RUNNING: frozenset({ImportStatus.COMPLETED, ImportStatus.FAILED, ImportStatus.CANCELLED}),
    ImportStatus.COMPLETED: frozenset(),
    ImportStatus.FAILED: frozenset({ImportStatus.PENDING}),
    ImportStatus.CANCELLED: frozenset({ImportStatus.PENDING}),
}

BATCH_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.PROCESSING}),
    BatchStatus.PROCESSING: frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset({BatchStatus.PROCESSING}),
}


class _HasStatus(Protocol):
    status: Any


def can_transition(current: str, target: str) -> bool:
    """Check whether a job may move from ``current`` to ``target``."""
    return ImportStatus(target) in JOB_TRANSITIONS[ImportStatus(current)]


def transition(job: _HasStatus, target: ImportStatus) -> None:
    """Move a job to ``target`` status in place.

    Args:
        job: Object with a ``status`` attribute (normally an ImportJob).
        target: Desired status.

    Raises:
        InvalidTransitionError: If the move is not allowed from the current status.
    """
    current = ImportStatus(job.status)
    if target not in JOB_TRANSITIONS[current]:
        raise InvalidTransitionError("import job", current.value, target.value)
    job.status = target.value


def transition_batch(batch: _HasStatus, target: BatchStatus) -> None:
    """Move a batch unit to ``target`` status in place.

    Raises:
        InvalidTransitionError: If the move is not allowed from the current status.
    """
    current = BatchStatus(batch.status)
    if target not in BATCH_TRANSITIONS[current]:
        raise InvalidTransitionError("batch", current.value, target.value)
    batch.status = target.value
