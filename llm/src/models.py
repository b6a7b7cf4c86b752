"""Data models for the LLM library."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Pricing:
    """Per-million-token prices in USD."""
    input_per_mtok: float = 3.0
    output_per_mtok: float = 15.0

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self.input_per_mtok + output_tokens * self.output_per_mtok
        ) / 1_000_000

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Pricing":
        data = data or {}
        return cls(
            input_per_mtok=float(data.get("input_per_mtok", 3.0)),
            output_per_mtok=float(data.get("output_per_mtok", 15.0)),
        )


@dataclass
class Usage:
    """Token usage reported by the API."""
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class LLMResponse:
    """Response from an LLM request."""
    success: bool
    text: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None

    # Metadata
    model: Optional[str] = None
    session_id: Optional[str] = None  # Conversation handle for follow-up turns
    usage: Usage = field(default_factory=Usage)
    cost_usd: float = 0.0
    duration_ms: float = 0.0

    # Rate limiting
    retry_after_seconds: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "text": self.text,
            "error": self.error,
            "message": self.message,
            "model": self.model,
            "session_id": self.session_id,
            "usage": {
                "input_tokens": self.usage.input_tokens,
                "output_tokens": self.usage.output_tokens,
            },
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "retry_after_seconds": self.retry_after_seconds,
        }
