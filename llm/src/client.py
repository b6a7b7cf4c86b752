"""
LLM Client - Claude access for the triage pipeline.

Single-shot prompts go through `send()`. Multi-turn conversations go through
`converse()`, which returns a session id that continues the same
conversation on the next call.
"""

import asyncio
import os
import time
import uuid
from typing import Optional

from dotenv import load_dotenv

from shared.logging import get_logger

from .models import LLMResponse, Pricing, Usage

load_dotenv()

log = get_logger("llm", "client")

DEFAULT_MODEL = "claude-sonnet-4-20250514"


class LLMClient:
    """
    Client for the Anthropic Messages API.

    The API itself is stateless, so conversation history for `converse()`
    is held here, keyed by the session id handed back to the caller.

    Usage:
        client = LLMClient()
        response = await client.send("Summarize this...")

        first = await client.converse("Refine this draft...")
        second = await client.converse("Shorter please", session_id=first.session_id)
    """

    def __init__(
        self,
        anthropic_api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 1024,
        pricing: Optional[Pricing] = None,
    ):
        """
        Initialize the client.

        Args:
            anthropic_api_key: API key for Claude (or uses ANTHROPIC_API_KEY env var)
            model: Model name
            max_tokens: Completion token cap per call
            pricing: Token prices used to compute cost_usd
        """
        self._anthropic_key = anthropic_api_key or os.environ.get("ANTHROPIC_API_KEY")
        self.model = model
        self.max_tokens = max_tokens
        self.pricing = pricing or Pricing()

        # Lazy-loaded API client
        self._anthropic_client = None

        # session id -> message list
        self._conversations: dict[str, list[dict]] = {}

    @classmethod
    def from_config(cls, config: dict) -> "LLMClient":
        """Build a client from the `llm` config section."""
        llm_config = config.get("llm", {})
        return cls(
            model=llm_config.get("model", DEFAULT_MODEL),
            max_tokens=llm_config.get("max_tokens", 1024),
            pricing=Pricing.from_dict(llm_config.get("pricing")),
        )

    def _get_anthropic_client(self):
        """Get or create Anthropic client."""
        if self._anthropic_client is None and self._anthropic_key:
            import anthropic
            self._anthropic_client = anthropic.Anthropic(api_key=self._anthropic_key)
        return self._anthropic_client

    @property
    def is_configured(self) -> bool:
        return bool(self._anthropic_key)

    async def _call(self, messages: list[dict]) -> LLMResponse:
        """Send a message list to Claude."""
        client = self._get_anthropic_client()
        if not client:
            return LLMResponse(
                success=False,
                error="auth_required",
                message="ANTHROPIC_API_KEY not configured",
            )

        start_time = time.time()

        try:
            # Run sync API call in thread pool
            response = await asyncio.to_thread(
                client.messages.create,
                model=self.model,
                max_tokens=self.max_tokens,
                messages=messages,
            )
        except Exception as e:
            error_str = str(e)
            log.error("llm.claude.request_failed", model=self.model, error=error_str)
            if "rate" in error_str.lower() or "429" in error_str:
                return LLMResponse(
                    success=False,
                    error="rate_limited",
                    message=error_str,
                    retry_after_seconds=60,
                )
            return LLMResponse(
                success=False,
                error="api_error",
                message=error_str,
            )

        elapsed_ms = (time.time() - start_time) * 1000
        text = "".join(
            getattr(block, "text", "") for block in response.content
        ).strip()

        usage = Usage(
            input_tokens=getattr(response.usage, "input_tokens", 0) or 0,
            output_tokens=getattr(response.usage, "output_tokens", 0) or 0,
        )

        if not text:
            return LLMResponse(
                success=False,
                error="empty_response",
                message="Claude returned no text",
                model=self.model,
                usage=usage,
                duration_ms=elapsed_ms,
            )

        return LLMResponse(
            success=True,
            text=text,
            model=self.model,
            usage=usage,
            cost_usd=self.pricing.cost(usage.input_tokens, usage.output_tokens),
            duration_ms=elapsed_ms,
        )

    async def send(self, prompt: str) -> LLMResponse:
        """Send a single prompt with no conversation context."""
        return await self._call([{"role": "user", "content": prompt}])

    async def converse(self, prompt: str, session_id: Optional[str] = None) -> LLMResponse:
        """
        Send the next turn of a conversation.

        Args:
            prompt: The user turn
            session_id: Handle from a previous response; a new conversation
                is started when it is None or unknown

        Returns:
            LLMResponse whose session_id continues this conversation
        """
        if session_id is None or session_id not in self._conversations:
            if session_id is not None:
                log.warning("llm.conversation.unknown_session", session_id=session_id)
            session_id = uuid.uuid4().hex
            history = []
        else:
            history = self._conversations[session_id]

        messages = history + [{"role": "user", "content": prompt}]
        response = await self._call(messages)

        if response.success:
            self._conversations[session_id] = messages + [
                {"role": "assistant", "content": response.text}
            ]
            response.session_id = session_id
            log.info("llm.conversation.turn",
                     session_id=session_id,
                     turns=len(messages) // 2 + 1,
                     cost_usd=round(response.cost_usd, 6))

        return response

    def forget(self, session_id: str):
        """Drop the stored history for a conversation."""
        self._conversations.pop(session_id, None)

    @property
    def conversation_count(self) -> int:
        return len(self._conversations)
