"""
Initial generation pool.

Turns queued emails into a summary plus, for emails that need a reply, a
first draft. Up to `max_concurrent` jobs run at once; when one finishes the
next queued job is started, so the pool keeps itself busy after the first
enqueue.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from shared.logging import get_logger

from .models import Email, EmailDraft

log = get_logger("triage", "generation")

GenerationCompleteCallback = Callable[[str, str, Optional[EmailDraft]], None]
GenerationFailedCallback = Callable[[str, Exception], None]


class JobStatus(str, Enum):
    """Job lifecycle states."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)


@dataclass
class GenerationJob:
    """Summary/draft generation for one email."""
    item_id: str
    email: Email
    status: JobStatus = JobStatus.QUEUED

    # Result (populated on completion)
    summary: Optional[str] = None
    draft: Optional[EmailDraft] = None
    error: Optional[str] = None

    # Timestamps
    created_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def __post_init__(self):
        if not self.created_at:
            self.created_at = time.time()


def notify(callbacks: list, event: str, *args):
    """Call every subscriber; one failing subscriber never stops the rest."""
    for callback in list(callbacks):
        try:
            callback(*args)
        except Exception as e:
            log.exception(e, event, {"callback": getattr(callback, "__name__", repr(callback))})


class GenerationScheduler:
    """
    Bounded pool for initial summaries and drafts.

    `generator` must provide `async summarize(email) -> str` and
    `async generate_draft(email) -> str`. Jobs start in enqueue order.
    Failed jobs are final; callers re-enqueue if they want another try.
    """

    def __init__(self, generator, max_concurrent: int = 3):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self.generator = generator
        self.max_concurrent = max_concurrent

        self._jobs: dict[str, GenerationJob] = {}
        self._queue: deque[GenerationJob] = deque()
        self._active = 0
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

        self._on_complete: list[GenerationCompleteCallback] = []
        self._on_failed: list[GenerationFailedCallback] = []

    async def enqueue(self, email: Email):
        """Queue an email, replacing any earlier job for it, and fill free slots."""
        job = GenerationJob(item_id=email.id, email=email)
        self._jobs[email.id] = job
        self._queue.append(job)
        self._idle.clear()

        log.info("triage.generation.enqueued",
                 item_id=email.id,
                 needs_reply=email.needs_reply,
                 queue_depth=len(self._queue))

        self._process_next()

    def _process_next(self):
        """Start queued jobs while there are free slots."""
        while self._active < self.max_concurrent and self._queue:
            job = self._queue.popleft()

            # Superseded by a later enqueue for the same email
            if self._jobs.get(job.item_id) is not job or job.status != JobStatus.QUEUED:
                continue

            job.status = JobStatus.PROCESSING
            job.started_at = time.time()
            self._active += 1

            task = asyncio.create_task(self._run(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        self._update_idle()

    async def _run(self, job: GenerationJob):
        try:
            await self._process_job(job)
        finally:
            self._active -= 1
            self._process_next()

    async def _process_job(self, job: GenerationJob):
        """Generate the summary and, if needed, the draft for one email."""
        log.info("triage.generation.processing", item_id=job.item_id)

        try:
            summary = await self.generator.summarize(job.email)
            job.summary = summary

            draft = None
            if job.email.needs_reply:
                draft_content = await self.generator.generate_draft(job.email)
                draft = EmailDraft(email_id=job.item_id, draft_content=draft_content)
                job.draft = draft

            job.status = JobStatus.COMPLETE
            job.completed_at = time.time()

            log.info("triage.generation.completed",
                     item_id=job.item_id,
                     has_draft=draft is not None,
                     elapsed_seconds=round(job.completed_at - job.started_at, 2))

        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            job.completed_at = time.time()

            log.exception(e, "triage.generation.failed", {"item_id": job.item_id})
            notify(self._on_failed, "triage.generation.failed_callback_error", job.item_id, e)
            return

        notify(self._on_complete, "triage.generation.complete_callback_error",
               job.item_id, summary, draft)

    def _update_idle(self):
        if self._active == 0 and self.pending_count() == 0:
            self._idle.set()
        else:
            self._idle.clear()

    # --- Subscriptions ---

    def on_complete(self, callback: GenerationCompleteCallback):
        """Register callback(item_id, summary, draft_or_none)."""
        self._on_complete.append(callback)

    def on_failed(self, callback: GenerationFailedCallback):
        """Register callback(item_id, error)."""
        self._on_failed.append(callback)

    # --- Queries ---

    def pending_count(self) -> int:
        """Jobs queued or processing, including superseded jobs still running."""
        queued = sum(1 for job in self._jobs.values() if job.status == JobStatus.QUEUED)
        return queued + self._active

    def active_count(self) -> int:
        """Jobs currently processing."""
        return self._active

    def get_job(self, item_id: str) -> Optional[GenerationJob]:
        return self._jobs.get(item_id)

    def is_ready(self, item_id: str) -> bool:
        job = self._jobs.get(item_id)
        return job is not None and job.status == JobStatus.COMPLETE

    def result(self, item_id: str) -> Optional[tuple[str, Optional[EmailDraft]]]:
        """(summary, draft) for a completed job, else None."""
        job = self._jobs.get(item_id)
        if job and job.status == JobStatus.COMPLETE and job.summary is not None:
            return job.summary, job.draft
        return None

    async def wait_idle(self):
        """Wait until nothing is queued or processing."""
        await self._idle.wait()

    def cleanup(self):
        """Forget all jobs and subscribers. Running jobs finish on their own."""
        self._jobs.clear()
        self._queue.clear()
        self._on_complete = []
        self._on_failed = []
        self._update_idle()
        log.info("triage.generation.cleanup")
