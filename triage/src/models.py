"""Data models for the triage core."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class EmailSender(BaseModel):
    """Who an email came from."""
    model_config = ConfigDict(frozen=True)

    name: str
    email: str

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"


class Email(BaseModel):
    """An inbound email. Immutable once loaded."""
    model_config = ConfigDict(frozen=True)

    id: str
    sender: EmailSender = Field(validation_alias=AliasChoices("sender", "from"))
    subject: str
    date: datetime
    body: str
    unread: bool = True
    needs_reply: bool = Field(
        default=False, validation_alias=AliasChoices("needs_reply", "requiresResponse")
    )


class DraftStatus(str, Enum):
    """Review outcome of a reply draft."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    EDITED = "edited"
    SKIPPED = "skipped"


@dataclass
class EmailDraft:
    """A reply draft for one email."""
    email_id: str
    draft_content: str
    status: DraftStatus = DraftStatus.PENDING
    edited_content: Optional[str] = None

    @property
    def final_content(self) -> str:
        """The text that would actually be sent."""
        return self.edited_content if self.edited_content is not None else self.draft_content


class ItemState(str, Enum):
    """Where an email is in the review flow."""
    QUEUED = "queued"          # Waiting in the unprocessed queue
    REVIEWING = "reviewing"    # Shown to the reviewer
    REFINING = "refining"      # Refinement running in the background
    REFINED = "refined"        # Refinement done, waiting for re-review
    FAILED = "failed"          # Generation or refinement failed
    ACCEPTED = "accepted"
    SKIPPED = "skipped"


TERMINAL_STATES = frozenset({ItemState.ACCEPTED, ItemState.SKIPPED})


class EntryKind(str, Enum):
    """Kinds of conversation log entries."""
    DRAFT = "draft"
    USER = "user"
    REFINEMENT = "refinement"


@dataclass
class ConversationEntry:
    """One timestamped step in an email's draft conversation."""
    kind: EntryKind
    content: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class QueueItem:
    """An email plus everything the review flow knows about it."""
    email: Email
    summary: str = ""
    draft: Optional[EmailDraft] = None
    state: ItemState = ItemState.QUEUED
    refinement_count: int = 0
    refinement_feedback: Optional[str] = None
    refined_draft: Optional[str] = None
    error: Optional[str] = None
    conversation: list[ConversationEntry] = field(default_factory=list)

    @property
    def email_id(self) -> str:
        return self.email.id


@dataclass
class QueueStatus:
    """Queue counts for display."""
    primary_remaining: int
    refined_waiting: int
    completed: int
    refining: int
    current_state: Optional[ItemState] = None


@dataclass
class QueueStats:
    """Totals by state across every tracked email."""
    total: int
    processed: int
    accepted: int
    skipped: int
    refining: int
    refined: int
    failed: int
