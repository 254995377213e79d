"""Exception hierarchy for the import pipeline.

Operator-facing conditions subclass ``ValueError`` so the application's
generic handler maps anything not explicitly translated to a 400.
"""


class ImportPipelineError(Exception):
    """Base class for import pipeline errors."""


class InvalidTransitionError(ImportPipelineError, ValueError):
    """Raised when a job or batch status change is not allowed."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"Cannot move {entity} from '{current}' to '{target}'")
        self.current = current
        self.target = target


class InvalidOperationError(ImportPipelineError, ValueError):
    """Raised when an operator action is invoked in the wrong state."""


class JobNotFoundError(ImportPipelineError, LookupError):
    """Raised when an import job does not exist."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Import job {job_id} not found")
        self.job_id = job_id


class BatchNotFoundError(ImportPipelineError, LookupError):
    """Raised when a batch does not exist or belongs to another job."""

    def __init__(self, job_id: int, batch_id: int) -> None:
        super().__init__(f"Batch {batch_id} not found for import job {job_id}")
        self.job_id = job_id
        self.batch_id = batch_id


class DuplicateImportError(ImportPipelineError, ValueError):
    """Raised when a submission matches an existing job's source and filters."""

    code = "duplicate_import"

    def __init__(self, message: str, existing_job_id: int) -> None:
        super().__init__(message)
        self.existing_job_id = existing_job_id


class ImportAlreadyCompletedError(DuplicateImportError):
    """The same source and filters were already imported successfully."""

    code = "already_imported"


class ImportInProgressError(DuplicateImportError):
    """The same source and filters are currently being imported."""

    code = "in_progress"


class ImportCancelledError(ImportPipelineError):
    """Raised inside a running job when the operator cancels it."""


class SourceUnavailableError(ImportPipelineError, ValueError):
    """Raised when the local copy of a job's source rows no longer exists."""


class FilesInUseError(ImportPipelineError, ValueError):
    """Raised when deleting temporary files of a job that is still active."""


class JobAlreadyQueuedError(ImportPipelineError, ValueError):
    """Raised when a job is submitted to the scheduler twice."""


class InvalidSourceError(ImportPipelineError, ValueError):
    """Raised when a submitted upload or URL is not an acceptable source."""


class FileGroupNotFoundError(ImportPipelineError, LookupError):
    """Raised when a temporary file group does not exist."""
