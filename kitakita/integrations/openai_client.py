"""OpenAI client integration.

Implements the BaseAIClient interface for OpenAI chat models.
"""

import base64
from typing import Any

import openai

from kitakita.logging_config import get_logger
from kitakita.schemas.ai_response import AIMessage, AIProviderType, AIResponse, AIUsage
from kitakita.services.ai_client import BaseAIClient

logger = get_logger(__name__)


class OpenAIClient(BaseAIClient):
    """OpenAI AI client using the OpenAI SDK."""

    provider = AIProviderType.OPENAI

    async def _complete(
        self,
        openai_messages: list[dict[str, Any]],
        max_tokens: int,
    ) -> AIResponse:
        client = openai.AsyncOpenAI(api_key=self._api_key, timeout=self._timeout)

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=openai_messages,
                max_tokens=max_tokens,
            )
        except openai.AuthenticationError:
            logger.error("OpenAI rejected the configured API key", model=self.model)
            raise
        except openai.RateLimitError:
            logger.warning("OpenAI quota or rate limit reached", model=self.model)
            raise
        except openai.APIConnectionError as e:
            logger.error("Could not reach OpenAI", model=self.model, error=str(e))
            raise

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        tokens = response.usage
        return AIResponse(
            content=content,
            model=response.model,
            provider=self.provider,
            usage=AIUsage(
                input_tokens=tokens.prompt_tokens if tokens else 0,
                output_tokens=(tokens.completion_tokens or 0) if tokens else 0,
            ),
        )

    async def generate(
        self,
        messages: list[AIMessage],
        system_prompt: str | None = None,
        max_tokens: int = 1024,
    ) -> AIResponse:
        """Generate a response using the Chat Completions API.

        Args:
            messages: List of conversation messages.
            system_prompt: Optional system-level instruction.
            max_tokens: Maximum tokens in the response.

        Returns:
            Normalised AIResponse.
        """
        openai_messages: list[dict[str, Any]] = []
        if system_prompt:
            openai_messages.append({"role": "system", "content": system_prompt})
        openai_messages.extend({"role": m.role, "content": m.content} for m in messages)

        return await self._complete(openai_messages, max_tokens)

    async def analyze_image(
        self,
        prompt: str,
        image: bytes,
        mime_type: str = "image/jpeg",
        max_tokens: int = 1024,
    ) -> AIResponse:
        """Send the image as a base64 data URL content part."""
        data_url = f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"
        openai_messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }
        ]
        return await self._complete(openai_messages, max_tokens)
