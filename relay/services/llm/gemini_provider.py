import json
from typing import List, Optional

import httpx

from relay.config import Settings
from relay.logging_config import get_logger
from relay.services.llm.base import ConversationTurn, LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.gemini")

BODY_PREVIEW_CHARS = 1000

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class GeminiProvider(LLMProvider):
    """Google Gemini API provider."""

    def __init__(
        self,
        api_key: Optional[str],
        default_model: str = "gemini-2.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: float = 120.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiProvider":
        return cls(
            settings.gemini_api_key,
            default_model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.llm_timeout_seconds,
        )

    def build_payload(
        self,
        turns: List[ConversationTurn],
        system_instruction: Optional[str],
        temperature: float,
        max_tokens: int,
    ) -> dict:
        payload = {
            "contents": [turn.to_api() for turn in turns if turn.parts],
            "generation_config": {
                "temperature": temperature,
                "max_output_tokens": max_tokens,
            },
            "safety_settings": [
                {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"} for category in SAFETY_CATEGORIES
            ],
        }
        if system_instruction:
            payload["system_instruction"] = {"parts": [{"text": system_instruction}]}
        return payload

    def _post(self, action: str, payload: dict) -> httpx.Response:
        if not self.api_key:
            logger.error("Gemini API key is missing (GEMINI_API_KEY not set)")
            raise LLMError("Gemini API key is not configured", reason="not_configured")

        url = f"{self.base_url}/models/{self.default_model}:{action}"
        logger.debug(f"Gemini request: action={action}, turns_count={len(payload['contents'])}")
        logger.debug(f"Gemini request body: {json.dumps(payload, ensure_ascii=False)[:BODY_PREVIEW_CHARS]}")
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    url,
                    headers={
                        "x-goog-api-key": self.api_key,
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"Gemini transport error: {e}")
            raise LLMError(f"Gemini API transport error: {e}", reason="transport") from e

        logger.debug(f"Gemini response status: {response.status_code}")
        logger.debug(f"Gemini response body: {response.text[:BODY_PREVIEW_CHARS]}")
        if response.status_code != 200:
            logger.error(f"Gemini error: {response.text}")
            raise LLMError(f"Gemini API error: {response.status_code} - {response.text}", reason="http_error")
        return response

    def generate(
        self,
        turns: List[ConversationTurn],
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> LLMResponse:
        """Generate a complete response from Gemini."""
        payload = self.build_payload(turns, system_instruction, temperature, max_tokens)
        data = self._post("generateContent", payload).json()

        content = ""
        finish_reason = None
        candidates = data.get("candidates") or []
        if candidates:
            candidate = candidates[0]
            finish_reason = candidate.get("finishReason")
            parts = (candidate.get("content") or {}).get("parts") or []
            content = "".join(part.get("text", "") for part in parts)
        logger.debug(f"Gemini content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("modelVersion", self.default_model),
            usage=data.get("usageMetadata"),
            finish_reason=finish_reason,
        )

    def generate_raw(
        self,
        turns: List[ConversationTurn],
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> str:
        """Request chunked generation and return the whole body as one string.

        Without ``alt=sse`` the stream endpoint answers with a single JSON
        array of chunk objects once generation is complete.
        """
        payload = self.build_payload(turns, system_instruction, temperature, max_tokens)
        body = self._post("streamGenerateContent", payload).text
        logger.debug(f"Gemini raw body: {len(body)} chars")
        return body
