from mchatly.services.llm.base import GenerationError, LLMProvider, LLMResponse
from mchatly.services.llm.openai_provider import OpenAIProvider

__all__ = ["GenerationError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
