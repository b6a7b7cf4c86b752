"""
Refinement pipeline.

Refinements for different emails run in parallel up to `max_concurrent`;
refinements for the same email run strictly one after another, in the order
they were enqueued. Each email gets its own channel and worker task. The
worker pulls the next job, waits for a global slot, runs it, and repeats
until the channel is closed.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from shared.logging import get_logger

from .channel import ChannelClosedError, KeyedChannel
from .generation import ACTIVE_STATUSES, JobStatus, notify
from .models import Email
from .prompts import build_refinement_prompt
from .sessions import SessionTracker

log = get_logger("triage", "refinement")


class RefinementError(Exception):
    """Raised when the refiner returns no usable draft."""
    pass


@dataclass
class RefinementJob:
    """One round of feedback for one email's draft."""
    item_id: str
    current_draft: str
    feedback: str
    email: Email
    status: JobStatus = JobStatus.QUEUED

    # Result (populated on completion)
    result: Optional[str] = None
    error: Optional[str] = None
    prompt: Optional[str] = None
    turn: int = 0
    cost: float = 0.0
    duration: float = 0.0

    # Timestamps
    created_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def __post_init__(self):
        if not self.created_at:
            self.created_at = time.time()


RefinementCompleteCallback = Callable[[str, str, RefinementJob], None]
RefinementFailedCallback = Callable[[str, Exception], None]


class RefinementScheduler:
    """
    Bounded, per-email serialized pool for draft refinements.

    `refiner` must provide `async refine(prompt, resume=None)` returning an
    LLMResponse-like object (`success`, `text`, `session_id`, `cost_usd`,
    `duration_ms`). `style` is the user's writing-style text for first-turn
    prompts. Failed jobs are final; callers re-enqueue if they want
    another try.
    """

    def __init__(
        self,
        sessions: SessionTracker,
        refiner,
        max_concurrent: int = 3,
        style: str = "",
    ):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self.sessions = sessions
        self.refiner = refiner
        self.max_concurrent = max_concurrent
        self.style = style

        self._channel = KeyedChannel()
        self._slots = asyncio.Semaphore(max_concurrent)
        self._active = 0
        self._closed = False

        self._jobs: dict[str, RefinementJob] = {}  # latest job per email
        self._history: list[RefinementJob] = []    # every job, in enqueue order
        self._workers: dict[str, asyncio.Task] = {}
        self._idle = asyncio.Event()
        self._idle.set()

        self._on_complete: list[RefinementCompleteCallback] = []
        self._on_failed: list[RefinementFailedCallback] = []

    async def enqueue(self, item_id: str, current_draft: str, feedback: str, email: Email):
        """
        Queue a refinement for an email.

        Raises ChannelClosedError once the scheduler has been cleaned up.
        """
        if self._closed:
            raise ChannelClosedError("Refinement scheduler is closed")

        job = RefinementJob(
            item_id=item_id,
            current_draft=current_draft,
            feedback=feedback,
            email=email,
        )

        if self._channel.register(item_id):
            self._start_worker(item_id)

        self._channel.push(item_id, job)
        self._jobs[item_id] = job
        self._history.append(job)
        self._idle.clear()

        log.info("triage.refinement.enqueued",
                 item_id=item_id,
                 item_depth=self._channel.depth(item_id),
                 pending=self.pending_count())

    def _start_worker(self, item_id: str):
        task = asyncio.create_task(self._worker(item_id))
        self._workers[item_id] = task
        log.debug("triage.refinement.worker_started", item_id=item_id)

    async def _worker(self, item_id: str):
        """Process one email's jobs in order until its channel closes."""
        try:
            async for job in self._channel.consume(item_id):
                async with self._slots:
                    if self._closed:
                        log.debug("triage.refinement.dropped_after_close", item_id=item_id)
                        continue

                    self._active += 1
                    job.status = JobStatus.PROCESSING
                    job.started_at = time.time()
                    try:
                        await self._process_job(job)
                    finally:
                        self._active -= 1
                        self._update_idle()
        finally:
            self._channel.discard(item_id)
            self._workers.pop(item_id, None)
            log.debug("triage.refinement.worker_stopped", item_id=item_id)

    async def _process_job(self, job: RefinementJob):
        """Run one refinement round against the email's session."""
        try:
            session = self.sessions.get_or_create(job.item_id)
            self.sessions.increment_turn(job.item_id)
            job.turn = session.turn_count

            job.prompt = build_refinement_prompt(
                job.email,
                job.current_draft,
                job.feedback,
                session.turn_count,
                resumable=session.resume_handle is not None,
                style=self.style,
            )

            log.info("triage.refinement.processing",
                     item_id=job.item_id,
                     turn=job.turn,
                     resumed=session.resume_handle is not None)

            response = await self.refiner.refine(job.prompt, resume=session.resume_handle)
            self.sessions.update(job.item_id, response)

            if not getattr(response, "success", False) or not getattr(response, "text", None):
                message = getattr(response, "message", None) or "No result received from refiner"
                raise RefinementError(message)

            job.result = response.text.strip()
            job.cost = getattr(response, "cost_usd", 0.0) or 0.0
            job.duration = getattr(response, "duration_ms", 0.0) or 0.0
            job.status = JobStatus.COMPLETE
            job.completed_at = time.time()

            log.info("triage.refinement.completed",
                     item_id=job.item_id,
                     turn=job.turn,
                     cost_usd=round(job.cost, 6),
                     duration_ms=round(job.duration))

        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            job.completed_at = time.time()

            log.exception(e, "triage.refinement.failed", {"item_id": job.item_id, "turn": job.turn})
            notify(self._on_failed, "triage.refinement.failed_callback_error", job.item_id, e)
            return

        notify(self._on_complete, "triage.refinement.complete_callback_error",
               job.item_id, job.result, job)

    def _update_idle(self):
        if self._active == 0 and self.pending_count() == 0:
            self._idle.set()
        else:
            self._idle.clear()

    # --- Subscriptions ---

    def on_complete(self, callback: RefinementCompleteCallback):
        """Register callback(item_id, result_text, job)."""
        self._on_complete.append(callback)

    def on_failed(self, callback: RefinementFailedCallback):
        """Register callback(item_id, error)."""
        self._on_failed.append(callback)

    # --- Queries ---

    def pending_count(self) -> int:
        """Jobs queued or processing, across all emails."""
        return sum(1 for job in self._history if job.status in ACTIVE_STATUSES)

    def active_count(self) -> int:
        """Jobs currently processing."""
        return self._active

    def get_job(self, item_id: str) -> Optional[RefinementJob]:
        """The most recently enqueued job for an email."""
        return self._jobs.get(item_id)

    def pending_for(self, item_id: str) -> int:
        """Jobs queued or processing for one email."""
        return sum(
            1 for job in self._history
            if job.item_id == item_id and job.status in ACTIVE_STATUSES
        )

    def jobs_by_status(self, status: JobStatus) -> list[RefinementJob]:
        return [job for job in self._history if job.status == status]

    def total_cost(self) -> float:
        return sum(job.cost for job in self._history)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def remove_job(self, item_id: str):
        """Forget an email's finished jobs."""
        job = self._jobs.get(item_id)
        if job and job.status in ACTIVE_STATUSES:
            return
        self._jobs.pop(item_id, None)
        self._history = [
            j for j in self._history
            if j.item_id != item_id or j.status in ACTIVE_STATUSES
        ]

    def clear_completed_jobs(self):
        """Forget every finished job."""
        self._history = [j for j in self._history if j.status in ACTIVE_STATUSES]
        self._jobs = {
            item_id: job for item_id, job in self._jobs.items()
            if job.status in ACTIVE_STATUSES
        }

    async def wait_idle(self):
        """Wait until nothing is queued or processing."""
        await self._idle.wait()

    def cleanup(self):
        """
        Close every email's channel and forget all state.

        Workers wake up and exit; a job already running finishes normally.
        Further enqueues raise ChannelClosedError.
        """
        self._closed = True
        self._channel.close_all()
        self._jobs.clear()
        self._history.clear()
        self._on_complete = []
        self._on_failed = []
        self._update_idle()
        log.info("triage.refinement.cleanup", workers=len(self._workers))
