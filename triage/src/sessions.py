"""
Per-email refinement sessions.

A session carries what a multi-turn refinement needs between rounds: the
resume handle of the model conversation, the turn count, and accumulated
cost/duration. Metrics are persisted to a single JSON file keyed by email
id; the message transcript never is.
"""

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Optional

from shared.logging import get_logger

log = get_logger("triage", "sessions")

# Fields written to disk; the transcript is never written.
SNAPSHOT_FIELDS = ("resume_handle", "item_id", "turn_count", "total_cost", "total_duration")


@dataclass
class Session:
    """Refinement session for one email."""
    item_id: str
    resume_handle: Optional[str] = None
    turn_count: int = 0
    total_cost: float = 0.0
    total_duration: float = 0.0
    transcript: list[Any] = field(default_factory=list)

    def to_snapshot(self) -> dict:
        """Metrics-only view for persistence."""
        return {name: getattr(self, name) for name in SNAPSHOT_FIELDS}

    @classmethod
    def from_snapshot(cls, data: dict) -> "Session":
        return cls(
            item_id=data["item_id"],
            resume_handle=data.get("resume_handle"),
            turn_count=int(data.get("turn_count", 0)),
            total_cost=float(data.get("total_cost", 0.0)),
            total_duration=float(data.get("total_duration", 0.0)),
        )


class SessionStore:
    """
    JSON file of session snapshots keyed by email id.

    Every write is a full read-modify-write of the file under one lock, so
    saves for different emails never clobber each other.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = Lock()

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("session file is not a JSON object")
            return data
        except Exception as e:
            log.warning("triage.sessions.load_failed", path=str(self.path), error=str(e))
            return {}

    def _write(self, data: dict):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".sessions-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def save(self, session: Session):
        """Write (or overwrite) the snapshot for a session."""
        with self._lock:
            try:
                data = self._read()
                data[session.item_id] = session.to_snapshot()
                self._write(data)
            except Exception as e:
                log.error("triage.sessions.save_failed", item_id=session.item_id, error=str(e))

    def load(self, item_id: str) -> Optional[Session]:
        """Load a snapshot, or None if there isn't one."""
        with self._lock:
            snapshot = self._read().get(item_id)
        if not snapshot:
            return None
        try:
            return Session.from_snapshot(snapshot)
        except (KeyError, TypeError, ValueError) as e:
            log.warning("triage.sessions.snapshot_invalid", item_id=item_id, error=str(e))
            return None

    def load_all(self) -> dict[str, dict]:
        with self._lock:
            return self._read()

    def delete(self, item_id: str):
        """Remove the snapshot for an email."""
        with self._lock:
            try:
                data = self._read()
                if data.pop(item_id, None) is not None:
                    self._write(data)
            except Exception as e:
                log.error("triage.sessions.delete_failed", item_id=item_id, error=str(e))

    def clear_all(self):
        with self._lock:
            try:
                self._write({})
            except Exception as e:
                log.error("triage.sessions.clear_failed", error=str(e))

    def total_cost(self) -> float:
        return sum(s.get("total_cost", 0.0) for s in self.load_all().values())

    def metrics(self) -> dict:
        """Summary across every persisted session."""
        snapshots = list(self.load_all().values())
        total_cost = sum(s.get("total_cost", 0.0) for s in snapshots)
        total_turns = sum(s.get("turn_count", 0) for s in snapshots)
        return {
            "total_sessions": len(snapshots),
            "total_cost": total_cost,
            "total_turns": total_turns,
            "avg_cost_per_session": total_cost / len(snapshots) if snapshots else 0.0,
        }


class SessionTracker:
    """
    One session per email for multi-turn refinement.

    The tracker enforces no turn limit; callers check
    `has_reached_max_turns()` before asking for another round. Operations on
    unknown ids do nothing.
    """

    def __init__(self, store: Optional[SessionStore] = None):
        self.store = store
        self._sessions: dict[str, Session] = {}

    def get(self, item_id: str) -> Optional[Session]:
        return self._sessions.get(item_id)

    def get_or_create(self, item_id: str) -> Session:
        """Return the live session, else the persisted one, else a fresh one."""
        session = self._sessions.get(item_id)
        if session:
            return session

        if self.store:
            session = self.store.load(item_id)
            if session:
                log.info("triage.sessions.restored",
                         item_id=item_id,
                         turn_count=session.turn_count,
                         has_resume_handle=session.resume_handle is not None)

        if session is None:
            session = Session(item_id=item_id)

        self._sessions[item_id] = session
        return session

    def increment_turn(self, item_id: str):
        session = self._sessions.get(item_id)
        if session:
            session.turn_count += 1

    def update(self, item_id: str, response):
        """
        Fold a refinement response into the session.

        `response` is an LLMResponse-like object with `success`,
        `session_id`, `cost_usd` and `duration_ms`. The first handle seen
        becomes the resume handle. Successful responses add to the totals
        and persist the snapshot.
        """
        session = self._sessions.get(item_id)
        if not session:
            return

        session.transcript.append(response)

        if session.resume_handle is None and getattr(response, "session_id", None):
            session.resume_handle = response.session_id

        if getattr(response, "success", False):
            session.total_cost += getattr(response, "cost_usd", 0.0) or 0.0
            session.total_duration += getattr(response, "duration_ms", 0.0) or 0.0
            if self.store:
                self.store.save(session)

    def turn_count(self, item_id: str) -> int:
        session = self._sessions.get(item_id)
        return session.turn_count if session else 0

    def has_reached_max_turns(self, item_id: str, max_turns: int = 10) -> bool:
        return self.turn_count(item_id) >= max_turns

    def metrics(self, item_id: str) -> Optional[dict]:
        session = self._sessions.get(item_id)
        if not session:
            return None
        return {
            "cost": session.total_cost,
            "duration": session.total_duration,
            "turns": session.turn_count,
        }

    def finalize(self, item_id: str):
        """Free the transcript once an email is done; metrics are kept."""
        session = self._sessions.get(item_id)
        if not session:
            return
        session.transcript.clear()
        if self.store and session.turn_count > 0:
            self.store.save(session)
        log.debug("triage.sessions.finalized", item_id=item_id, turns=session.turn_count)

    def destroy(self, item_id: str):
        """Forget a session entirely, including its snapshot."""
        session = self._sessions.pop(item_id, None)
        if session:
            session.transcript.clear()
        if self.store:
            self.store.delete(item_id)

    def active_sessions(self) -> list[str]:
        return list(self._sessions)

    def total_cost(self) -> float:
        return sum(s.total_cost for s in self._sessions.values())

    def cleanup(self):
        for session in self._sessions.values():
            session.transcript.clear()
        self._sessions.clear()
