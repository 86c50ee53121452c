import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Union


@dataclass
class TextPart:
    text: str

    def to_api(self) -> dict:
        return {"text": self.text}


@dataclass
class InlineMediaPart:
    mime_type: str
    data: bytes

    def to_api(self) -> dict:
        return {
            "inline_data": {
                "mime_type": self.mime_type,
                "data": base64.b64encode(self.data).decode("ascii"),
            }
        }


Part = Union[TextPart, InlineMediaPart]


@dataclass
class ConversationTurn:
    role: Literal["user", "model"]
    parts: List[Part] = field(default_factory=list)

    @property
    def text_length(self) -> int:
        return sum(len(part.text) for part in self.parts if isinstance(part, TextPart))

    def to_api(self) -> dict:
        return {"role": self.role, "parts": [part.to_api() for part in self.parts]}


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    finish_reason: Optional[str] = None


class LLMError(Exception):
    def __init__(self, message: str, reason: Optional[str] = None):
        self.message = message
        self.reason = reason
        super().__init__(message)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        turns: List[ConversationTurn],
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> LLMResponse:
        """Generate a complete response from the LLM."""
        pass

    @abstractmethod
    def generate_raw(
        self,
        turns: List[ConversationTurn],
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> str:
        """Generate a response and return the undecoded, chunk-structured body."""
        pass
