"""
Draft generator - the model-backed collaborator for both schedulers.

Summaries and first drafts are single-shot calls. Refinements continue one
conversation per email through the resume handle, which is forgotten once
the email is done.
"""

from typing import Optional

from llm.src.client import LLMClient
from llm.src.models import LLMResponse
from shared.logging import get_logger

from .models import Email
from .prompts import build_draft_prompt, build_summary_prompt

log = get_logger("triage", "generator")


class GenerationError(Exception):
    """Raised when the model call does not produce usable text."""

    def __init__(self, message: str, error: Optional[str] = None):
        super().__init__(message)
        self.error = error


def _check(response: LLMResponse, what: str) -> LLMResponse:
    if not response.success or not response.text:
        message = response.message or f"No {what} received"
        raise GenerationError(f"{what} failed: {message}", error=response.error)
    return response


class DraftGenerator:
    """
    Wraps an LLMClient into summarize / generate_draft / refine.

    Usage:
        generator = DraftGenerator(LLMClient.from_config(config))
        summary = await generator.summarize(email)
    """

    def __init__(self, client: LLMClient, style: str = ""):
        self.client = client
        self.style = style

    async def summarize(self, email: Email) -> str:
        response = _check(await self.client.send(build_summary_prompt(email)), "Summary")
        log.debug("triage.generator.summary", item_id=email.id, cost_usd=round(response.cost_usd, 6))
        return response.text.strip()

    async def generate_draft(self, email: Email) -> str:
        response = _check(await self.client.send(build_draft_prompt(email, self.style)), "Draft")
        log.debug("triage.generator.draft", item_id=email.id, cost_usd=round(response.cost_usd, 6))
        return response.text.strip()

    async def refine(self, prompt: str, resume: Optional[str] = None) -> LLMResponse:
        """
        Run one refinement turn.

        Args:
            prompt: Full-context prompt on the first turn, feedback afterwards
            resume: Session id from an earlier turn, if any

        Returns:
            The successful LLMResponse; its session_id is the resume handle
        """
        return _check(await self.client.converse(prompt, session_id=resume), "Refinement")

    def forget(self, resume: str):
        """Drop the conversation behind a resume handle."""
        self.client.forget(resume)
