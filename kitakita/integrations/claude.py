"""Claude (Anthropic) client integration.

Implements the BaseAIClient interface for Claude models.
"""

import base64
from typing import Any

import anthropic

from kitakita.logging_config import get_logger
from kitakita.schemas.ai_response import AIMessage, AIProviderType, AIResponse, AIUsage
from kitakita.services.ai_client import BaseAIClient

logger = get_logger(__name__)


class ClaudeClient(BaseAIClient):
    """Claude AI client using the Anthropic SDK."""

    provider = AIProviderType.CLAUDE

    async def _create(self, kwargs: dict[str, Any]) -> AIResponse:
        client = anthropic.AsyncAnthropic(api_key=self._api_key, timeout=self._timeout)

        try:
            response = await client.messages.create(**kwargs)
        except anthropic.AuthenticationError:
            logger.error("Anthropic rejected the configured API key", model=self.model)
            raise
        except anthropic.RateLimitError:
            logger.warning("Anthropic rate limit reached", model=self.model)
            raise
        except anthropic.APIConnectionError as e:
            logger.error("Could not reach Anthropic", model=self.model, error=str(e))
            raise

        text_blocks = [b.text for b in response.content if b.type == "text"]
        tokens = response.usage
        return AIResponse(
            content="".join(text_blocks),
            model=response.model,
            provider=self.provider,
            usage=AIUsage(
                input_tokens=tokens.input_tokens if tokens else 0,
                output_tokens=tokens.output_tokens if tokens else 0,
            ),
        )

    async def generate(
        self,
        messages: list[AIMessage],
        system_prompt: str | None = None,
        max_tokens: int = 1024,
    ) -> AIResponse:
        """Generate a response using the Anthropic Messages API."""
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        return await self._create(kwargs)

    async def analyze_image(
        self,
        prompt: str,
        image: bytes,
        mime_type: str = "image/jpeg",
        max_tokens: int = 1024,
    ) -> AIResponse:
        """Send the image as a base64 image block ahead of the prompt."""
        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": mime_type,
                                "data": base64.b64encode(image).decode("ascii"),
                            },
                        },
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
        }
        return await self._create(kwargs)
