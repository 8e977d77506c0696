from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


class GenerationError(Exception):
    """Text generation backend failed."""


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for prompt-to-completion providers."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: int = 800,
    ) -> LLMResponse:
        """Generate a completion for a single prompt."""
        pass
