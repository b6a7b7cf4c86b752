"""Shared fixtures for triage tests."""

import json

import pytest

from .fakes import FakeGenerator, make_email


@pytest.fixture
def sample_email():
    return make_email()


@pytest.fixture
def sample_emails():
    """Five emails; every other one needs a reply."""
    return [make_email(f"email-{i}", needs_reply=(i % 2 == 0)) for i in range(5)]


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def inbox_file(tmp_path):
    """A local inbox JSON file with two unread emails and one read."""
    path = tmp_path / "inbox.json"
    data = {
        "emails": [
            {
                "id": "e1",
                "sender": {"name": "Sarah Chen", "email": "sarah@acme.com"},
                "subject": "Q3 budget review",
                "date": "2024-05-01T09:00:00Z",
                "body": "Please review the attached budget before Friday.",
                "unread": True,
                "needs_reply": True,
            },
            {
                "id": "e2",
                "from": {"name": "Build Bot", "email": "ci@example.com"},
                "subject": "Nightly build passed",
                "date": "2024-05-01T10:00:00Z",
                "body": "All 412 tests passed.",
                "unread": True,
                "requiresResponse": False,
            },
            {
                "id": "e3",
                "sender": {"name": "Marcus Lee", "email": "marcus@acme.com"},
                "subject": "Lunch on Friday?",
                "date": "2024-04-30T12:00:00Z",
                "body": "Are you free for lunch this Friday?",
                "unread": False,
                "needs_reply": True,
            },
        ]
    }
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


@pytest.fixture
def sample_config(tmp_path):
    """Configuration for tests, with all paths under tmp_path."""
    return {
        "generation": {"max_concurrent": 3},
        "refinement": {"max_concurrent": 3, "max_turns": 3},
        "sessions": {"path": str(tmp_path / "sessions" / "sessions.json")},
        "inbox": {"path": str(tmp_path / "inbox.json")},
        "style": {"path": None},
        "llm": {
            "model": "claude-sonnet-4-20250514",
            "max_tokens": 512,
            "pricing": {"input_per_mtok": 3.0, "output_per_mtok": 15.0},
        },
        "logging": {"level": "DEBUG", "dir": None},
    }
