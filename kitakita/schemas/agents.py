"""AI agent (persona) schemas."""

from pydantic import BaseModel, Field


class PersonaResponse(BaseModel):
    """A persona as listed by GET /api/agents."""

    persona: str
    display_name: str
    role: str
    expertise: list[str]


class PersonaListResponse(BaseModel):
    """Response schema for GET /api/agents."""

    personas: list[PersonaResponse]


class AgentChatRequest(BaseModel):
    """Request body for POST /api/agents/{persona}/chat."""

    message: str = Field(..., min_length=1, max_length=2000)


class AgentChatResponse(BaseModel):
    """Response schema for POST /api/agents/{persona}/chat."""

    persona: str
    content: str
    model: str
