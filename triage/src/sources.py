"""
Mail sources.

Every backend implements the same small interface: list unread mail, mark
mail read, search. The pipeline only ever talks to `MailSource`.
"""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Iterable, Optional

from pydantic import BaseModel, ValidationError

from shared.logging import get_logger

from .models import Email

log = get_logger("triage", "sources")


class InboxLoadError(Exception):
    """Raised when an inbox file cannot be read or parsed."""
    pass


class MailSource(ABC):
    """Where emails come from."""

    @abstractmethod
    def list_unprocessed(self) -> list[Email]:
        """Unread emails, in source order."""

    @abstractmethod
    def mark_read(self, ids: Iterable[str]):
        """Mark emails read. Unknown ids are ignored."""

    @abstractmethod
    def search(
        self,
        query: Optional[str] = None,
        sender: Optional[str] = None,
        needs_reply: Optional[bool] = None,
    ) -> list[Email]:
        """
        Find emails matching every given criterion.

        Args:
            query: Case-insensitive substring of subject or body
            sender: Case-insensitive substring of sender name or address
            needs_reply: Exact match on the needs-reply flag
        """

    @abstractmethod
    def get(self, email_id: str) -> Optional[Email]:
        pass


class InboxFile(BaseModel):
    """On-disk layout of a local inbox."""
    emails: list[Email] = []


def matches(
    email: Email,
    query: Optional[str] = None,
    sender: Optional[str] = None,
    needs_reply: Optional[bool] = None,
) -> bool:
    if query:
        q = query.lower()
        if q not in email.subject.lower() and q not in email.body.lower():
            return False
    if sender:
        s = sender.lower()
        if s not in email.sender.name.lower() and s not in email.sender.email.lower():
            return False
    if needs_reply is not None and email.needs_reply != needs_reply:
        return False
    return True


class LocalInboxSource(MailSource):
    """
    Inbox backed by a JSON file of the form {"emails": [...]}.

    The file is loaded lazily on first use and rewritten whenever read
    flags change.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._emails: Optional[list[Email]] = None
        self._lock = Lock()

    def _load(self) -> list[Email]:
        if self._emails is not None:
            return self._emails

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            inbox = InboxFile.model_validate(raw)
        except FileNotFoundError as e:
            raise InboxLoadError(f"Inbox file not found: {self.path}") from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise InboxLoadError(f"Failed to load inbox data from {self.path}: {e}") from e

        self._emails = list(inbox.emails)
        log.info("triage.sources.loaded",
                 path=str(self.path),
                 total=len(self._emails),
                 unread=sum(1 for e in self._emails if e.unread))
        return self._emails

    def _save(self):
        data = {"emails": [e.model_dump(mode="json") for e in self._emails or []]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".inbox-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _set_unread(self, ids: Optional[set[str]], unread: bool) -> int:
        with self._lock:
            emails = self._load()
            changed = 0
            for i, email in enumerate(emails):
                if (ids is None or email.id in ids) and email.unread != unread:
                    emails[i] = email.model_copy(update={"unread": unread})
                    changed += 1
            if changed:
                self._save()
            return changed

    def list_unprocessed(self) -> list[Email]:
        return [e for e in self._load() if e.unread]

    def mark_read(self, ids: Iterable[str]):
        ids = set(ids)
        if not ids:
            return
        changed = self._set_unread(ids, unread=False)
        log.info("triage.sources.marked_read", requested=len(ids), changed=changed)

    def search(
        self,
        query: Optional[str] = None,
        sender: Optional[str] = None,
        needs_reply: Optional[bool] = None,
    ) -> list[Email]:
        return [e for e in self._load() if matches(e, query, sender, needs_reply)]

    def get(self, email_id: str) -> Optional[Email]:
        for email in self._load():
            if email.id == email_id:
                return email
        return None

    def total_count(self) -> int:
        return len(self._load())

    def reset(self):
        """Mark every email unread again."""
        changed = self._set_unread(None, unread=True)
        log.info("triage.sources.reset", changed=changed)
