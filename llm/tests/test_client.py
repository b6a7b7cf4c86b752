"""Tests for LLM client."""

import os
from unittest.mock import MagicMock, patch

import pytest

from llm.src.client import DEFAULT_MODEL, LLMClient
from llm.src.models import Pricing

from .fakes import make_message


class TestLLMClientInit:
    """Tests for LLMClient initialization."""

    def test_defaults(self):
        client = LLMClient(anthropic_api_key="test-key")
        assert client.model == DEFAULT_MODEL
        assert client.max_tokens == 1024
        assert client.pricing == Pricing()

    def test_anthropic_key_from_arg(self):
        client = LLMClient(anthropic_api_key="test-key")
        assert client._anthropic_key == "test-key"
        assert client.is_configured

    def test_anthropic_key_from_env(self):
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "env-key"}):
            client = LLMClient()
            assert client._anthropic_key == "env-key"

    def test_lazy_anthropic_client(self):
        client = LLMClient(anthropic_api_key="test-key")
        assert client._anthropic_client is None

    def test_from_config(self):
        client = LLMClient.from_config({
            "llm": {
                "model": "claude-opus-4-20250514",
                "max_tokens": 256,
                "pricing": {"input_per_mtok": 15.0, "output_per_mtok": 75.0},
            }
        })

        assert client.model == "claude-opus-4-20250514"
        assert client.max_tokens == 256
        assert client.pricing.output_per_mtok == 75.0


class TestLLMClientAnthropicClient:
    """Tests for Anthropic client management."""

    def test_get_anthropic_client_creates_client(self):
        client = LLMClient(anthropic_api_key="test-key")

        with patch("anthropic.Anthropic") as mock_anthropic:
            mock_client = MagicMock()
            mock_anthropic.return_value = mock_client

            result = client._get_anthropic_client()
            again = client._get_anthropic_client()

            mock_anthropic.assert_called_once_with(api_key="test-key")
            assert result == mock_client
            assert again is result

    def test_get_anthropic_client_returns_none_without_key(self):
        client = LLMClient()
        client._anthropic_key = None

        assert client._get_anthropic_client() is None


class TestSend:
    """Tests for single-shot prompts."""

    @pytest.mark.asyncio
    async def test_send_success(self, mock_anthropic_client):
        client = LLMClient(anthropic_api_key="test-key")

        with patch.object(client, "_get_anthropic_client", return_value=mock_anthropic_client):
            response = await client.send("Test prompt")

        assert response.success is True
        assert response.text == "Claude response"
        assert response.usage.input_tokens == 100
        assert response.cost_usd == pytest.approx((100 * 3.0 + 50 * 15.0) / 1_000_000)
        assert response.session_id is None
        kwargs = mock_anthropic_client.messages.create.call_args.kwargs
        assert kwargs["messages"] == [{"role": "user", "content": "Test prompt"}]
        assert kwargs["model"] == DEFAULT_MODEL

    @pytest.mark.asyncio
    async def test_send_no_api_key(self):
        client = LLMClient()
        client._anthropic_key = None

        response = await client.send("Test prompt")

        assert response.success is False
        assert response.error == "auth_required"

    @pytest.mark.asyncio
    async def test_send_rate_limit(self, mock_anthropic_client):
        mock_anthropic_client.messages.create.side_effect = Exception("Error 429: rate limit exceeded")
        client = LLMClient(anthropic_api_key="test-key")

        with patch.object(client, "_get_anthropic_client", return_value=mock_anthropic_client):
            response = await client.send("Test prompt")

        assert response.success is False
        assert response.error == "rate_limited"
        assert response.retry_after_seconds == 60

    @pytest.mark.asyncio
    async def test_send_api_error(self, mock_anthropic_client):
        mock_anthropic_client.messages.create.side_effect = Exception("Internal server error")
        client = LLMClient(anthropic_api_key="test-key")

        with patch.object(client, "_get_anthropic_client", return_value=mock_anthropic_client):
            response = await client.send("Test prompt")

        assert response.error == "api_error"
        assert "Internal server error" in response.message

    @pytest.mark.asyncio
    async def test_send_empty_response(self, mock_anthropic_client):
        mock_anthropic_client.messages.create.return_value = make_message(text="   ")
        client = LLMClient(anthropic_api_key="test-key")

        with patch.object(client, "_get_anthropic_client", return_value=mock_anthropic_client):
            response = await client.send("Test prompt")

        assert response.success is False
        assert response.error == "empty_response"


class TestConverse:
    """Tests for multi-turn conversations."""

    @pytest.mark.asyncio
    async def test_new_conversation_gets_session_id(self, mock_anthropic_client):
        client = LLMClient(anthropic_api_key="test-key")

        with patch.object(client, "_get_anthropic_client", return_value=mock_anthropic_client):
            response = await client.converse("Refine this")

        assert response.success
        assert response.session_id
        assert client.conversation_count == 1

    @pytest.mark.asyncio
    async def test_follow_up_sends_history(self, mock_anthropic_client):
        client = LLMClient(anthropic_api_key="test-key")

        with patch.object(client, "_get_anthropic_client", return_value=mock_anthropic_client):
            first = await client.converse("Refine this")
            mock_anthropic_client.messages.create.return_value = make_message(text="Shorter draft")
            second = await client.converse("Shorter", session_id=first.session_id)

        assert second.session_id == first.session_id
        messages = mock_anthropic_client.messages.create.call_args.kwargs["messages"]
        assert messages == [
            {"role": "user", "content": "Refine this"},
            {"role": "assistant", "content": "Claude response"},
            {"role": "user", "content": "Shorter"},
        ]

    @pytest.mark.asyncio
    async def test_unknown_session_starts_fresh(self, mock_anthropic_client):
        client = LLMClient(anthropic_api_key="test-key")

        with patch.object(client, "_get_anthropic_client", return_value=mock_anthropic_client):
            response = await client.converse("Hello", session_id="stale")

        assert response.session_id != "stale"
        messages = mock_anthropic_client.messages.create.call_args.kwargs["messages"]
        assert len(messages) == 1

    @pytest.mark.asyncio
    async def test_failed_turn_not_recorded(self, mock_anthropic_client):
        mock_anthropic_client.messages.create.side_effect = Exception("boom")
        client = LLMClient(anthropic_api_key="test-key")

        with patch.object(client, "_get_anthropic_client", return_value=mock_anthropic_client):
            response = await client.converse("Hello")

        assert response.success is False
        assert client.conversation_count == 0

    @pytest.mark.asyncio
    async def test_forget(self, mock_anthropic_client):
        client = LLMClient(anthropic_api_key="test-key")

        with patch.object(client, "_get_anthropic_client", return_value=mock_anthropic_client):
            response = await client.converse("Hello")

        client.forget(response.session_id)
        client.forget("never-existed")

        assert client.conversation_count == 0
