"""Google Gemini client over the Generative Language REST API.

Implements the BaseAIClient interface with plain httpx calls; used for
persona chat and for receipt vision.
"""

import base64
from typing import Any

import httpx

from kitakita.config import settings
from kitakita.core.errors import UpstreamUnavailable
from kitakita.logging_config import get_logger
from kitakita.schemas.ai_response import AIMessage, AIProviderType, AIResponse, AIUsage
from kitakita.services.ai_client import BaseAIClient

logger = get_logger(__name__)

# Gemini names the assistant role "model"
_ROLE_MAP = {"user": "user", "assistant": "model"}


class GeminiError(UpstreamUnavailable):
    """Gemini returned an error or could not be reached."""


class GeminiClient(BaseAIClient):
    """Gemini AI client using the REST generateContent endpoint."""

    provider = AIProviderType.GEMINI

    def _url(self) -> str:
        return f"{settings.gemini_api_base}/models/{self.model}:generateContent"

    async def _generate_content(self, body: dict[str, Any]) -> AIResponse:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self._url(),
                    json=body,
                    headers={"x-goog-api-key": self._api_key},
                )
        except httpx.HTTPError as e:
            logger.error("Gemini API connection error", error=repr(e))
            raise GeminiError(f"Gemini request failed: {e!r}") from e

        if response.status_code == 429:
            logger.warning("Gemini API rate limited")
            raise GeminiError("Gemini rate limit exceeded")
        if response.status_code != 200:
            logger.error(
                "Gemini API error",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GeminiError(f"Gemini API error: {response.status_code}")

        data = response.json()
        candidates = data.get("candidates") or []
        parts = candidates[0].get("content", {}).get("parts", []) if candidates else []
        content = "".join(part.get("text", "") for part in parts)

        usage_data = data.get("usageMetadata") or {}
        usage = AIUsage(
            input_tokens=usage_data.get("promptTokenCount", 0),
            output_tokens=usage_data.get("candidatesTokenCount", 0),
        )

        return AIResponse(
            content=content,
            model=data.get("modelVersion") or self.model,
            provider=AIProviderType.GEMINI,
            usage=usage,
        )

    async def generate(
        self,
        messages: list[AIMessage],
        system_prompt: str | None = None,
        max_tokens: int = 1024,
    ) -> AIResponse:
        """Generate a response using Gemini generateContent.

        Args:
            messages: List of conversation messages.
            system_prompt: Optional system-level instruction.
            max_tokens: Maximum tokens in the response.

        Returns:
            Normalized AIResponse.
        """
        body: dict[str, Any] = {
            "contents": [
                {"role": _ROLE_MAP.get(m.role, "user"), "parts": [{"text": m.content}]}
                for m in messages
            ],
            "generationConfig": {"maxOutputTokens": max_tokens},
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        return await self._generate_content(body)

    async def analyze_image(
        self,
        prompt: str,
        image: bytes,
        mime_type: str = "image/jpeg",
        max_tokens: int = 1024,
    ) -> AIResponse:
        """Send an image with an instruction as inline data."""
        body = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": mime_type,
                                "data": base64.b64encode(image).decode("ascii"),
                            }
                        },
                    ],
                }
            ],
            "generationConfig": {"maxOutputTokens": max_tokens},
        }
        return await self._generate_content(body)
