"""AI response schemas.

Common response types shared across all AI providers, plus the tagged
result used wherever an LLM is asked for JSON.
"""

import enum
from dataclasses import dataclass
from typing import Generic, TypeVar

from pydantic import BaseModel, Field


class AIProviderType(str, enum.Enum):
    """Supported LLM providers."""

    GEMINI = "gemini"
    OPENAI = "openai"
    CLAUDE = "claude"


class AIMessage(BaseModel):
    """A single message in an AI conversation."""

    role: str = Field(..., description="Message role: 'user' or 'assistant'")
    content: str = Field(..., description="Message content")


class AIUsage(BaseModel):
    """Token usage information from an AI provider response."""

    input_tokens: int = Field(default=0, description="Tokens in the prompt")
    output_tokens: int = Field(default=0, description="Tokens in the response")


class AIResponse(BaseModel):
    """Normalised response from any AI provider."""

    content: str = Field(..., description="Generated text content")
    model: str = Field(..., description="Model that generated the response")
    provider: AIProviderType = Field(..., description="AI provider used")
    usage: AIUsage = Field(
        default_factory=AIUsage, description="Token usage information"
    )


T = TypeVar("T")


@dataclass(frozen=True)
class Parsed(Generic[T]):
    """The model returned usable structured data (a JSON object or a model)."""

    data: T


@dataclass(frozen=True)
class Unparseable:
    """The model's text could not be read as the expected JSON object."""

    raw_text: str
    error: str


# Every caller handles both variants; there is no default object.
ParseResult = Parsed | Unparseable
