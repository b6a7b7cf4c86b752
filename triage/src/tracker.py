"""
Item state tracker - the review flow's master state machine.

Three queues:
- unprocessed: emails not reviewed yet, in arrival order
- refined_ready: emails whose refinement finished (or failed), shown first
- completed: accepted or skipped emails, append-only

An email is in at most one queue at a time. The id lookup and the
navigation sequence always hold every email, whatever queue it is in.
"""

from collections import deque
from typing import Optional

from shared.logging import get_logger

from .models import (
    TERMINAL_STATES,
    ConversationEntry,
    DraftStatus,
    Email,
    EmailDraft,
    EntryKind,
    ItemState,
    QueueItem,
    QueueStats,
    QueueStatus,
)

log = get_logger("triage", "tracker")

UNPROCESSED = "unprocessed"
REFINED_READY = "refined_ready"
COMPLETED = "completed"


class ItemStateTracker:
    """
    Owns every QueueItem and moves it between queues.

    Operations on unknown ids do nothing. Items are only changed through
    these methods so queue membership and state stay consistent.
    """

    def __init__(self, emails: list[Email]):
        self._items: dict[str, QueueItem] = {}
        self._sequence: list[str] = []
        self._unprocessed: list[str] = []
        self._refined_ready: deque[str] = deque()
        self._completed: list[str] = []
        self._cursor = -1
        self._current: Optional[str] = None

        for email in emails:
            if email.id in self._items:
                log.warning("triage.tracker.duplicate_email", item_id=email.id)
                continue
            self._items[email.id] = QueueItem(email=email)
            self._sequence.append(email.id)
            self._unprocessed.append(email.id)

        log.info("triage.tracker.initialized", items=len(self._items))

    # --- Queue membership ---

    def _detach(self, item_id: str):
        """Take an id out of whichever queue holds it."""
        if item_id in self._unprocessed:
            self._unprocessed.remove(item_id)
        if item_id in self._refined_ready:
            self._refined_ready.remove(item_id)
        if item_id in self._completed:
            self._completed.remove(item_id)

    def location(self, item_id: str) -> Optional[str]:
        """Name of the queue holding an id, or None if it is in none."""
        if item_id in self._unprocessed:
            return UNPROCESSED
        if item_id in self._refined_ready:
            return REFINED_READY
        if item_id in self._completed:
            return COMPLETED
        return None

    def _make_current(self, item: QueueItem) -> QueueItem:
        if item.state not in TERMINAL_STATES:
            item.state = ItemState.REVIEWING
        self._current = item.email_id
        self._cursor = self._sequence.index(item.email_id)
        return item

    def _clear_current(self, item_id: str):
        if self._current == item_id:
            self._current = None

    # --- Navigation ---

    def get_next(self) -> Optional[QueueItem]:
        """
        Next email to review.

        Refined-ready emails come first. Otherwise the first unprocessed
        email whose summary has arrived. None means nothing is ready yet,
        not that the queues are exhausted.
        """
        if self._refined_ready:
            item_id = self._refined_ready.popleft()
            item = self._items[item_id]
            # A failed refinement stays visible as failed
            if item.state == ItemState.FAILED:
                self._current = item_id
                self._cursor = self._sequence.index(item_id)
                return item
            return self._make_current(item)

        for item_id in self._unprocessed:
            item = self._items[item_id]
            if item.summary:
                self._unprocessed.remove(item_id)
                return self._make_current(item)

        return None

    def get_previous(self) -> Optional[QueueItem]:
        """Step back in the original order. None at the start."""
        if self._cursor <= 0:
            return None
        self._cursor -= 1
        return self._make_current(self._items[self._sequence[self._cursor]])

    def get_next_in_sequence(self) -> Optional[QueueItem]:
        """Step forward in the original order. None at the end."""
        if self._cursor + 1 >= len(self._sequence):
            return None
        self._cursor += 1
        return self._make_current(self._items[self._sequence[self._cursor]])

    def current(self) -> Optional[QueueItem]:
        if self._current is None:
            return None
        return self._items.get(self._current)

    @property
    def cursor(self) -> int:
        return self._cursor

    # --- Transitions ---

    def mark_refining(self, item_id: str, feedback: str):
        """Send an email off for refinement with the reviewer's feedback."""
        item = self._items.get(item_id)
        if not item:
            return
        if item.state in TERMINAL_STATES:
            log.debug("triage.tracker.ignored", item_id=item_id, transition="refining", state=item.state.value)
            return

        item.state = ItemState.REFINING
        item.refinement_feedback = feedback
        item.error = None
        item.conversation.append(ConversationEntry(kind=EntryKind.USER, content=feedback))

        self._detach(item_id)
        self._clear_current(item_id)

        log.info("triage.tracker.refining", item_id=item_id, round=item.refinement_count + 1)

    def mark_refined(self, item_id: str, refined_draft: str):
        """Store a refined draft and queue the email for re-review."""
        item = self._items.get(item_id)
        if not item:
            return
        if item.state in TERMINAL_STATES:
            log.debug("triage.tracker.ignored", item_id=item_id, transition="refined", state=item.state.value)
            return

        item.state = ItemState.REFINED
        item.refined_draft = refined_draft
        item.refinement_count += 1
        item.error = None
        item.conversation.append(ConversationEntry(kind=EntryKind.REFINEMENT, content=refined_draft))

        if item.draft:
            item.draft.draft_content = refined_draft
            item.draft.status = DraftStatus.PENDING
            item.draft.edited_content = None
        else:
            item.draft = EmailDraft(email_id=item_id, draft_content=refined_draft)

        self._detach(item_id)
        self._refined_ready.append(item_id)

        log.info("triage.tracker.refined",
                 item_id=item_id,
                 refinement_count=item.refinement_count,
                 refined_waiting=len(self._refined_ready))

    def mark_failed(self, item_id: str, error):
        """Record a failure and surface the email in the refined-ready queue."""
        item = self._items.get(item_id)
        if not item:
            return
        if item.state in TERMINAL_STATES:
            log.debug("triage.tracker.ignored", item_id=item_id, transition="failed", state=item.state.value)
            return

        item.state = ItemState.FAILED
        item.error = str(error)

        self._detach(item_id)
        self._refined_ready.append(item_id)

        log.warning("triage.tracker.failed", item_id=item_id, error=item.error)

    def _complete(self, item_id: str, state: ItemState, draft_status: DraftStatus,
                  edited_content: Optional[str] = None):
        item = self._items.get(item_id)
        if not item:
            return
        if item.state in TERMINAL_STATES:
            log.debug("triage.tracker.already_completed", item_id=item_id, state=item.state.value)
            return

        item.state = state
        if item.draft:
            item.draft.status = draft_status
            if edited_content is not None:
                item.draft.edited_content = edited_content

        self._detach(item_id)
        self._completed.append(item_id)
        self._clear_current(item_id)

        log.info("triage.tracker.completed",
                 item_id=item_id,
                 state=state.value,
                 completed=len(self._completed))

    def mark_accepted(self, item_id: str, edited_content: Optional[str] = None):
        """Accept the draft, optionally with the reviewer's edits."""
        status = DraftStatus.EDITED if edited_content is not None else DraftStatus.ACCEPTED
        self._complete(item_id, ItemState.ACCEPTED, status, edited_content)

    def mark_skipped(self, item_id: str):
        self._complete(item_id, ItemState.SKIPPED, DraftStatus.SKIPPED)

    def update_summary(self, item_id: str, summary: str):
        item = self._items.get(item_id)
        if item:
            item.summary = summary

    def update_draft(self, item_id: str, draft: EmailDraft):
        """Set the draft; the first draft also opens the conversation log."""
        item = self._items.get(item_id)
        if not item:
            return
        item.draft = draft
        if not any(entry.kind == EntryKind.DRAFT for entry in item.conversation):
            item.conversation.insert(
                0, ConversationEntry(kind=EntryKind.DRAFT, content=draft.draft_content)
            )

    # --- Queries ---

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        return self._items.get(item_id)

    def ready_count(self) -> int:
        """How many emails `get_next()` could hand out right now."""
        return len(self._refined_ready) + sum(
            1 for item_id in self._unprocessed if self._items[item_id].summary
        )

    def has_more(self) -> bool:
        """True while anything is still waiting in unprocessed or refined-ready."""
        return bool(self._unprocessed or self._refined_ready)

    def status(self) -> QueueStatus:
        current = self.current()
        return QueueStatus(
            primary_remaining=len(self._unprocessed),
            refined_waiting=len(self._refined_ready),
            completed=len(self._completed),
            refining=sum(1 for item in self._items.values() if item.state == ItemState.REFINING),
            current_state=current.state if current else None,
        )

    def stats(self) -> QueueStats:
        counts = {state: 0 for state in ItemState}
        for item in self._items.values():
            counts[item.state] += 1

        accepted = counts[ItemState.ACCEPTED]
        skipped = counts[ItemState.SKIPPED]
        return QueueStats(
            total=len(self._items),
            processed=accepted + skipped,
            accepted=accepted,
            skipped=skipped,
            refining=counts[ItemState.REFINING],
            refined=counts[ItemState.REFINED],
            failed=counts[ItemState.FAILED],
        )

    def completed(self) -> list[QueueItem]:
        return [self._items[item_id] for item_id in self._completed]

    def accepted_drafts(self) -> list[EmailDraft]:
        return [
            item.draft for item in self.completed()
            if item.state == ItemState.ACCEPTED and item.draft is not None
        ]

    def refining_items(self) -> list[QueueItem]:
        return [item for item in self._items.values() if item.state == ItemState.REFINING]

    def all_items(self) -> list[QueueItem]:
        """Every item in the original order."""
        return [self._items[item_id] for item_id in self._sequence]

    def __len__(self) -> int:
        return len(self._items)
