"""Job queue for codexgate.

A FIFO, capacity-bounded list of prompts with a single logical
consumer. drain() pops jobs one at a time and awaits the supplied
runner, so at most one job is ever executing.

Key classes:
    Job: One queued prompt and its reply destination.
    ActiveJob: Runtime attributes of the job currently executing.
    JobQueue: Bounded FIFO with an idempotent drain loop.
"""

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Deque, Iterator, Optional

import structlog

from .exceptions import QueueFull

logger = structlog.get_logger("codexgate.gateway")

_sequence = itertools.count(1)


def new_job_id() -> str:
    """Time-seeded, monotonically increasing job id."""
    return f"{int(time.time() * 1000)}-{next(_sequence)}"


@dataclass
class Job:
    """One prompt waiting to be run."""
    reply_to: str
    prompt: str
    id: str = field(default_factory=new_job_id)
    enqueued_at: float = field(default_factory=time.time)

    @property
    def short_id(self) -> str:
        return self.id[-6:]


@dataclass
class ActiveJob:
    """The job currently executing, plus its process bookkeeping."""
    job: Job
    output_file: Path
    process: Optional[asyncio.subprocess.Process] = None
    pid: Optional[int] = None
    started_at: float = field(default_factory=time.monotonic)
    manually_stopped: bool = False

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def short_id(self) -> str:
        return self.job.short_id

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class JobQueue:
    """Bounded FIFO of jobs with a single drain loop.

    Args:
        max_size: Maximum number of waiting jobs. The job currently
            running does not count against it.
    """

    def __init__(self, max_size: int):
        self.max_size = max_size
        self._jobs: Deque[Job] = deque()
        self._draining = False
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[Job]:
        return iter(list(self._jobs))

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def enqueue(self, job: Job) -> int:
        """Append a job and return its 1-based position.

        Raises:
            QueueFull: If the queue already holds max_size jobs. The
                queue is left unchanged.
        """
        if self._shutting_down or len(self._jobs) >= self.max_size:
            raise QueueFull(max_size=self.max_size, job_id=job.id)
        self._jobs.append(job)
        logger.debug("job_enqueued", job_id=job.id, position=len(self._jobs))
        return len(self._jobs)

    def clear(self) -> int:
        """Discard all waiting jobs. Returns how many were dropped."""
        dropped = len(self._jobs)
        self._jobs.clear()
        if dropped:
            logger.info("queue_cleared", dropped=dropped)
        return dropped

    def shutdown(self) -> int:
        """Stop accepting and running jobs; discard what is waiting."""
        self._shutting_down = True
        return self.clear()

    async def drain(self, run: Callable[[Job], Awaitable[None]]) -> None:
        """Run waiting jobs one at a time until the queue is empty.

        Calling drain() while a drain is already in progress returns
        immediately. An exception from run() is logged and the loop
        moves on to the next job.

        Args:
            run: Async callable that executes a single job to completion.
        """
        if self._draining:
            return
        self._draining = True
        try:
            while self._jobs and not self._shutting_down:
                job = self._jobs.popleft()
                waiting_ms = int((time.time() - job.enqueued_at) * 1000)
                logger.info("job_dequeued", job_id=job.id, waiting_ms=waiting_ms)
                try:
                    await run(job)
                except Exception as e:
                    logger.error(
                        "job_run_failed",
                        job_id=job.id,
                        error=str(e),
                        exc_type=type(e).__name__,
                    )
        finally:
            self._draining = False
