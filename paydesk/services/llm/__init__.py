from paydesk.services.llm.base import LLMProvider, LLMResponse
from paydesk.services.llm.openai_provider import OpenAIError, OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIError", "OpenAIProvider"]
