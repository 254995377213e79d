"""In-process import job scheduler.

Owns the FIFO queue of submitted import jobs and the bounded set of
active processing slots. All queue state lives on one asyncio event loop
and is only mutated in synchronous sections, so no locking is needed.
Work runs via ``asyncio.create_task()`` in the API process.
"""

import asyncio
import itertools
from collections import deque
from collections.abc import Callable, Coroutine, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from election_importer.lib.importer.errors import ImportCancelledError, JobAlreadyQueuedError


class CancellationToken:
    """Cooperative cancellation flag shared with a running job.

    The job checks it between download chunks, batches and rows; nothing
    is preempted and already persisted work is not rolled back.
    """

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self, message: str = "Import cancelled by operator") -> None:
        """Raise ImportCancelledError once cancellation has been requested."""
        if self._cancelled:
            raise ImportCancelledError(message)


JobRunner = Callable[[int, CancellationToken], Coroutine[Any, Any, Any]]


@dataclass
class QueueEntry:
    """A submitted job waiting for or holding a processing slot."""

    job_id: int
    sequence: int
    is_processing: bool = False
    token: CancellationToken = field(default_factory=CancellationToken)


@dataclass
class QueuePosition:
    job_id: int
    position: int
    is_processing: bool


@dataclass
class QueueSnapshot:
    """Read-only view of the scheduler at one instant.

    Active jobs have position 0; waiting jobs are numbered from 1 in
    admission order.
    """

    is_processing: bool
    queue_length: int
    active_job_ids: list[int]
    queue: list[QueuePosition]

    @property
    def current_job_id(self) -> int | None:
        return self.active_job_ids[0] if self.active_job_ids else None


class ImportScheduler:
    """FIFO scheduler admitting at most ``max_active`` jobs at a time."""

    def __init__(self, runner: JobRunner | None = None, max_active: int = 1) -> None:
        self._runner = runner
        self._max_active = max_active
        self._sequence = itertools.count(1)
        self._waiting: deque[QueueEntry] = deque()
        self._active: dict[int, QueueEntry] = {}
        self._tasks: dict[int, asyncio.Task[Any]] = {}
        # Jobs busy with work done outside the queue (batch reprocessing)
        self._reserved: set[int] = set()

    def configure(self, runner: JobRunner, max_active: int = 1) -> None:
        """Set the coroutine factory that processes one job, and the slot count."""
        if max_active < 1:
            msg = f"max_active must be at least 1, got {max_active}"
            raise ValueError(msg)
        self._runner = runner
        self._max_active = max_active

    @property
    def max_active(self) -> int:
        return self._max_active

    def is_active(self, job_id: int) -> bool:
        return job_id in self._active or job_id in self._reserved

    def is_queued(self, job_id: int) -> bool:
        return any(entry.job_id == job_id for entry in self._waiting)

    def submit(self, job_id: int) -> int:
        """Enqueue a job and admit it immediately if a slot is free.

        Args:
            job_id: ID of a job in ``pending`` status.

        Returns:
            Queue position after admission (0 when the job is already active).

        Raises:
            JobAlreadyQueuedError: If the job is already queued or active.
        """
        if self.is_active(job_id) or self.is_queued(job_id):
            msg = f"Import job {job_id} is already queued"
            raise JobAlreadyQueuedError(msg)
        self._waiting.append(QueueEntry(job_id=job_id, sequence=next(self._sequence)))
        logger.info(f"Queued import job {job_id} (waiting={len(self._waiting)}, active={len(self._active)})")
        self.tick()
        return self.position(job_id)

    def position(self, job_id: int) -> int:
        """Return 0 for an active job, the 1-based wait position otherwise, or -1."""
        if job_id in self._active:
            return 0
        for i, entry in enumerate(self._waiting, start=1):
            if entry.job_id == job_id:
                return i
        return -1

    def tick(self) -> list[int]:
        """Promote queue heads into free processing slots.

        Returns:
            IDs of the jobs admitted by this call.
        """
        admitted: list[int] = []
        while self._waiting and len(self._active) < self._max_active:
            if self._runner is None:
                msg = "Scheduler has no job runner configured"
                raise RuntimeError(msg)
            entry = self._waiting.popleft()
            entry.is_processing = True
            self._active[entry.job_id] = entry
            self._tasks[entry.job_id] = asyncio.create_task(self._run(entry))
            admitted.append(entry.job_id)
            logger.info(f"Admitted import job {entry.job_id}")
        return admitted

    async def _run(self, entry: QueueEntry) -> None:
        assert self._runner is not None
        try:
            await self._runner(entry.job_id, entry.token)
        except asyncio.CancelledError:
            logger.warning(f"Import job {entry.job_id} task cancelled")
            raise
        except Exception:
            logger.exception(f"Import job {entry.job_id} runner failed")
        finally:
            self._active.pop(entry.job_id, None)
            self._tasks.pop(entry.job_id, None)
            if self._runner is not None:
                self.tick()

    def cancel(self, job_id: int) -> bool:
        """Cancel a queued or active job.

        A waiting job is dropped from the queue; an active job has its
        cancellation token set and stops at its next checkpoint.

        Returns:
            True if the scheduler knew the job.
        """
        active = self._active.get(job_id)
        if active is not None:
            active.token.cancel()
            logger.info(f"Cancellation requested for active import job {job_id}")
            return True
        for entry in list(self._waiting):
            if entry.job_id == job_id:
                self._waiting.remove(entry)
                logger.info(f"Removed import job {job_id} from the queue")
                return True
        return False

    @contextmanager
    def reserve(self, job_id: int) -> Iterator[None]:
        """Mark a job busy while it is worked on outside the queue.

        While reserved the job counts as active, so restart, delete,
        submit and a second reservation are rejected. No processing slot
        is taken.

        Raises:
            JobAlreadyQueuedError: If the job is queued, active or already reserved.
        """
        if self.is_active(job_id) or self.is_queued(job_id):
            msg = f"Import job {job_id} is already being processed"
            raise JobAlreadyQueuedError(msg)
        self._reserved.add(job_id)
        try:
            yield
        finally:
            self._reserved.discard(job_id)

    def status(self) -> QueueSnapshot:
        """Return a point-in-time snapshot of active and waiting jobs."""
        queue = [
            QueuePosition(job_id=e.job_id, position=0, is_processing=True)
            for e in sorted(self._active.values(), key=lambda e: e.sequence)
        ]
        queue.extend(
            QueuePosition(job_id=e.job_id, position=i, is_processing=False)
            for i, e in enumerate(self._waiting, start=1)
        )
        return QueueSnapshot(
            is_processing=bool(self._active),
            queue_length=len(self._waiting),
            active_job_ids=[p.job_id for p in queue if p.is_processing],
            queue=queue,
        )

    async def wait_idle(self) -> None:
        """Wait until no job is active or waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Drop waiting jobs and cancel running tasks."""
        self._waiting.clear()
        tasks = list(self._tasks.values())
        for entry in self._active.values():
            entry.token.cancel()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._active.clear()
        self._tasks.clear()


# Singleton instance for the application
scheduler = ImportScheduler()
