from relay.services.llm.base import ConversationTurn, InlineMediaPart, LLMError, LLMProvider, LLMResponse, TextPart
from relay.services.llm.gemini_provider import GeminiProvider

__all__ = [
    "ConversationTurn",
    "GeminiProvider",
    "InlineMediaPart",
    "LLMError",
    "LLMProvider",
    "LLMResponse",
    "TextPart",
]
