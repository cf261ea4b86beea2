"""AI agent router: list personas and ask one a question."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from kitakita.core.auth import CurrentUser
from kitakita.database import get_db
from kitakita.logging_config import get_logger
from kitakita.schemas.agents import (
    AgentChatRequest,
    AgentChatResponse,
    PersonaListResponse,
    PersonaResponse,
)
from kitakita.services.agents import PERSONAS, Persona, ask_agent
from kitakita.services.ai_client import AIConfigurationError

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/agents",
    tags=["agents"],
)


@router.get(
    "",
    response_model=PersonaListResponse,
)
async def list_personas(user: CurrentUser) -> PersonaListResponse:
    """List the available agents."""
    return PersonaListResponse(
        personas=[
            PersonaResponse(
                persona=persona.value,
                display_name=config.display_name,
                role=config.role,
                expertise=list(config.expertise),
            )
            for persona, config in PERSONAS.items()
        ]
    )


@router.post(
    "/{persona}/chat",
    response_model=AgentChatResponse,
    responses={
        502: {"description": "AI provider request failed"},
        503: {"description": "No AI provider configured"},
    },
)
async def chat_with_agent(
    persona: Persona,
    body: AgentChatRequest,
    user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> AgentChatResponse:
    """Ask one agent a question about the user's finances."""
    try:
        response = await ask_agent(db, user, persona, body.message)
    except AIConfigurationError as e:
        logger.error("AI provider configuration error", detail=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI agents are not configured",
        )
    except Exception:
        logger.error(
            "AI provider error in agent chat",
            user_id=user.id,
            persona=persona.value,
            exc_info=True,
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Unable to get a response from the AI provider",
        )

    content = response.content.strip()
    if not content:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="The AI provider returned an empty response",
        )

    return AgentChatResponse(
        persona=persona.value,
        content=content,
        model=response.model,
    )
