"""AI provider abstraction layer.

Abstract base class and factory for LLM clients, so persona chat and
receipt vision work the same regardless of the configured provider
(Gemini, OpenAI or Claude). Also holds the JSON extraction used for
every structured LLM answer.
"""

import abc
import json
import re
from typing import Any

from kitakita.config import settings
from kitakita.logging_config import get_logger
from kitakita.schemas.ai_response import (
    AIMessage,
    AIProviderType,
    AIResponse,
    Parsed,
    ParseResult,
    Unparseable,
)

logger = get_logger(__name__)

# Default models when AI_MODEL is not set
DEFAULT_MODELS: dict[AIProviderType, str] = {
    AIProviderType.GEMINI: "gemini-1.5-flash",
    AIProviderType.OPENAI: "gpt-4o-mini",
    AIProviderType.CLAUDE: "claude-sonnet-4-5-20250929",
}

# Largest LLM answer we try to parse as JSON
MAX_JSON_RESPONSE_CHARS = 100_000
MAX_JSON_DEPTH = 10

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL | re.IGNORECASE)
_BARE_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class AIConfigurationError(Exception):
    """The configured AI provider is unknown or has no API key."""


class BaseAIClient(abc.ABC):
    """Abstract base class for AI provider clients.

    Subclasses implement provider-specific API calls while
    returning a normalized AIResponse.
    """

    provider: AIProviderType

    def __init__(self, api_key: str, model: str, timeout: float | None = None) -> None:
        self._api_key = api_key
        self.model = model
        self._timeout = timeout or settings.ai_timeout_seconds

    @abc.abstractmethod
    async def generate(
        self,
        messages: list[AIMessage],
        system_prompt: str | None = None,
        max_tokens: int = 1024,
    ) -> AIResponse:
        """Generate an AI response.

        Args:
            messages: List of conversation messages.
            system_prompt: Optional system-level instruction.
            max_tokens: Maximum tokens in the response.

        Returns:
            Normalized AIResponse with content, model, provider, and usage.
        """

    @abc.abstractmethod
    async def analyze_image(
        self,
        prompt: str,
        image: bytes,
        mime_type: str = "image/jpeg",
        max_tokens: int = 1024,
    ) -> AIResponse:
        """Ask the model about an image.

        Args:
            prompt: Instruction sent alongside the image.
            image: Raw image bytes.
            mime_type: Image MIME type.
            max_tokens: Maximum tokens in the response.

        Returns:
            Normalized AIResponse.
        """


def get_ai_client(provider: str | None = None) -> BaseAIClient:
    """Factory that returns the configured AI client.

    Args:
        provider: Provider name; defaults to ``settings.ai_provider``.

    Raises:
        AIConfigurationError: Unknown provider or missing API key.
    """
    from kitakita.integrations.claude import ClaudeClient
    from kitakita.integrations.gemini import GeminiClient
    from kitakita.integrations.openai_client import OpenAIClient

    try:
        provider_type = AIProviderType(provider or settings.ai_provider)
    except ValueError:
        raise AIConfigurationError(f"Unsupported AI provider: {provider}")

    model = settings.ai_model or DEFAULT_MODELS[provider_type]

    if provider_type == AIProviderType.GEMINI:
        client_cls, api_key = GeminiClient, settings.gemini_api_key
    elif provider_type == AIProviderType.OPENAI:
        client_cls, api_key = OpenAIClient, settings.openai_api_key
    else:
        client_cls, api_key = ClaudeClient, settings.anthropic_api_key

    if not api_key:
        raise AIConfigurationError(f"No API key configured for {provider_type.value}")

    return client_cls(api_key=api_key, model=model)


def _depth(value: Any) -> int:
    if isinstance(value, dict):
        return 1 + max((_depth(v) for v in value.values()), default=0)
    if isinstance(value, list):
        return 1 + max((_depth(v) for v in value), default=0)
    return 0


def parse_json_response(text: str) -> ParseResult:
    """Extract a JSON object from an LLM answer.

    Accepts a bare object, an object inside a ```json fence, or an object
    surrounded by prose. Anything else, including oversized or deeply
    nested payloads, is returned as ``Unparseable`` with the raw text.
    """
    if len(text) > MAX_JSON_RESPONSE_CHARS:
        return Unparseable(raw_text=text[:500], error="response too large")

    match = _FENCED_JSON.search(text) or _BARE_OBJECT.search(text)
    if match is None:
        return Unparseable(raw_text=text, error="no JSON object found")

    candidate = match.group(1) if match.re is _FENCED_JSON else match.group(0)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        return Unparseable(raw_text=text, error=f"invalid JSON: {e.msg}")

    if not isinstance(data, dict):
        return Unparseable(raw_text=text, error="JSON is not an object")
    if _depth(data) > MAX_JSON_DEPTH:
        return Unparseable(raw_text=text, error="JSON nested too deeply")

    return Parsed(data=data)
