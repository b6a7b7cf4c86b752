"""
Triage pipeline - wires the schedulers to the item state tracker.

Generation results land in the tracker as summaries and drafts; refinement
results land in the refined-ready queue; failures of either kind are
surfaced there too.
"""

import copy
from dataclasses import asdict
from typing import Optional

from shared.logging import get_logger

from .channel import ChannelClosedError
from .config import DEFAULTS, resolve_path
from .generation import GenerationScheduler
from .models import TERMINAL_STATES, Email, EmailDraft, QueueItem, QueueStats, QueueStatus
from .refinement import RefinementJob, RefinementScheduler
from .sessions import SessionStore, SessionTracker
from .sources import LocalInboxSource, MailSource
from .tracker import ItemStateTracker

log = get_logger("triage", "pipeline")


class MaxTurnsExceededError(Exception):
    """Raised when an email has used up its refinement rounds."""

    def __init__(self, item_id: str, max_turns: int):
        super().__init__(f"Email {item_id} reached the limit of {max_turns} refinements")
        self.item_id = item_id
        self.max_turns = max_turns


class TriagePipeline:
    """
    One review run over a batch of emails.

    Usage:
        pipeline = TriagePipeline(emails, generator, config=config)
        await pipeline.start()
        item = pipeline.next_item()
        await pipeline.request_refinement(item.email_id, "More formal")
        ...
        pipeline.accept(item.email_id)
        pipeline.shutdown()

    `generator` provides summarize, generate_draft, refine and forget;
    DraftGenerator is the model-backed one. `style` is the writing-style
    text used in first-turn refinement prompts.
    """

    def __init__(
        self,
        emails: list[Email],
        generator,
        sessions: Optional[SessionTracker] = None,
        config: Optional[dict] = None,
        style: str = "",
    ):
        config = config if config is not None else copy.deepcopy(DEFAULTS)
        self.config = config

        self.generator = generator
        self.tracker = ItemStateTracker(emails)
        self.sessions = sessions if sessions is not None else SessionTracker()
        self.max_turns = config.get("refinement", {}).get("max_turns", 10)

        self.generation = GenerationScheduler(
            generator,
            max_concurrent=config.get("generation", {}).get("max_concurrent", 3),
        )
        self.refinement = RefinementScheduler(
            self.sessions,
            generator,
            max_concurrent=config.get("refinement", {}).get("max_concurrent", 3),
            style=style,
        )

        self.generation.on_complete(self._on_generation_complete)
        self.generation.on_failed(self._on_failed)
        self.refinement.on_complete(self._on_refinement_complete)
        self.refinement.on_failed(self._on_failed)

        self._started = False

    @classmethod
    def from_config(
        cls,
        config: dict,
        generator,
        source: Optional[MailSource] = None,
        style: str = "",
    ) -> tuple["TriagePipeline", MailSource]:
        """
        Build a pipeline over the configured inbox and session file.

        Returns the pipeline and the mail source it was loaded from.
        """
        if source is None:
            source = LocalInboxSource(resolve_path(config["inbox"]["path"]))
        store = SessionStore(resolve_path(config["sessions"]["path"]))
        pipeline = cls(
            source.list_unprocessed(),
            generator,
            sessions=SessionTracker(store),
            config=config,
            style=style,
        )
        return pipeline, source

    # --- Callbacks ---

    def _on_generation_complete(self, item_id: str, summary: str, draft: Optional[EmailDraft]):
        self.tracker.update_summary(item_id, summary)
        if draft is not None:
            self.tracker.update_draft(item_id, draft)

    def _on_refinement_complete(self, item_id: str, result: str, job: RefinementJob):
        self.tracker.mark_refined(item_id, result)

    def _on_failed(self, item_id: str, error: Exception):
        self.tracker.mark_failed(item_id, error)

    # --- Lifecycle ---

    async def start(self):
        """Queue every email for summary and draft generation."""
        if self._started:
            return
        self._started = True

        items = self.tracker.all_items()
        for item in items:
            await self.generation.enqueue(item.email)

        log.info("triage.pipeline.started",
                 emails=len(items),
                 needs_reply=sum(1 for item in items if item.email.needs_reply))

    async def wait_idle(self):
        """Wait until neither scheduler has work queued or running."""
        await self.generation.wait_idle()
        await self.refinement.wait_idle()

    def shutdown(self):
        """Stop accepting refinements and release in-memory state."""
        self.refinement.cleanup()
        self.generation.cleanup()
        for item_id in self.sessions.active_sessions():
            session = self.sessions.get(item_id)
            if session.resume_handle:
                self.generator.forget(session.resume_handle)
        self.sessions.cleanup()
        log.info("triage.pipeline.shutdown", **asdict(self.stats()))

    # --- Review ---

    def next_item(self) -> Optional[QueueItem]:
        return self.tracker.get_next()

    def previous_item(self) -> Optional[QueueItem]:
        return self.tracker.get_previous()

    def next_in_sequence(self) -> Optional[QueueItem]:
        return self.tracker.get_next_in_sequence()

    def ready_count(self) -> int:
        return self.tracker.ready_count()

    async def request_refinement(self, item_id: str, feedback: str) -> bool:
        """
        Send an email's draft back for another round.

        Returns False for unknown ids and for emails already accepted or
        skipped. Raises MaxTurnsExceededError when the email already used
        (or has queued) `max_turns` rounds, and ChannelClosedError after
        shutdown. The email's state is untouched whenever it raises.
        """
        item = self.tracker.get_item(item_id)
        if item is None:
            return False
        if item.state in TERMINAL_STATES:
            log.warning("triage.pipeline.refinement_after_completion",
                        item_id=item_id, state=item.state.value)
            return False
        if self.refinement.is_closed:
            raise ChannelClosedError(f"Refinement is shut down; cannot refine {item_id}")

        session = self.sessions.get_or_create(item_id)
        if session.turn_count + self.refinement.pending_for(item_id) >= self.max_turns:
            raise MaxTurnsExceededError(item_id, self.max_turns)

        current_draft = item.draft.draft_content if item.draft else ""
        self.tracker.mark_refining(item_id, feedback)
        await self.refinement.enqueue(item_id, current_draft, feedback, item.email)
        return True

    def accept(self, item_id: str, edited_content: Optional[str] = None):
        self.tracker.mark_accepted(item_id, edited_content)
        self._finalize(item_id)

    def skip(self, item_id: str):
        self.tracker.mark_skipped(item_id)
        self._finalize(item_id)

    def _finalize(self, item_id: str):
        """Close out an email's session and drop its model conversation."""
        self.sessions.finalize(item_id)
        session = self.sessions.get(item_id)
        if session and session.resume_handle:
            self.generator.forget(session.resume_handle)

    def mark_completed_read(self, source: MailSource) -> list[str]:
        """Mark accepted and skipped emails read on the source."""
        ids = [item.email_id for item in self.tracker.completed()]
        if ids:
            source.mark_read(ids)
        return ids

    # --- Queries ---

    def status(self) -> QueueStatus:
        return self.tracker.status()

    def stats(self) -> QueueStats:
        return self.tracker.stats()

    def total_cost(self) -> float:
        """Refinement spend recorded in this run."""
        return self.refinement.total_cost()
