"""Shared fixtures for LLM library tests."""

from unittest.mock import MagicMock

import pytest

from .fakes import make_message


@pytest.fixture
def mock_anthropic_client():
    """Anthropic client whose messages.create returns a canned reply."""
    client = MagicMock()
    client.messages.create.return_value = make_message()
    return client
