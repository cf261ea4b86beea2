"""Financial-advice AI agents.

A closed table of personas, each a system prompt over the same hosted
LLM. ``ask_agent`` adds the user's recent transactions as context and
relays a single question; there is no conversation history.
"""

import enum
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kitakita.config import settings
from kitakita.logging_config import get_logger
from kitakita.models.transaction import Transaction, TransactionType
from kitakita.models.user import User
from kitakita.schemas.ai_response import AIMessage, AIResponse
from kitakita.services.ai_client import get_ai_client

logger = get_logger(__name__)

# Maximum characters we accept from user input before truncating
MAX_USER_MESSAGE_LENGTH = 2000

AGENT_MAX_RESPONSE_TOKENS = 1000

CONTEXT_WINDOW_DAYS = 30
CONTEXT_MAX_TRANSACTIONS = 20


class Persona(str, enum.Enum):
    """Available agents. Values match the identifiers used by the web app."""

    IPON_COACH = "iponCoach"
    GASTOS_GUARDIAN = "gastosGuardian"
    PERA_PLANNER = "peraPlanner"
    CASHFLOW_OPTIMIZER = "cashflowOptimizer"
    DEBT_DEMOLISHER = "debtDemolisher"
    WEALTH_BUILDER = "wealthBuilder"


@dataclass(frozen=True)
class PersonaConfig:
    display_name: str
    role: str
    expertise: tuple[str, ...]
    language: str = "Filipino/English mix"


PERSONAS: dict[Persona, PersonaConfig] = {
    Persona.IPON_COACH: PersonaConfig(
        display_name="Ipon Coach",
        role="Filipino savings coach",
        expertise=("budgeting", "emergency funds", "cultural financial habits"),
    ),
    Persona.GASTOS_GUARDIAN: PersonaConfig(
        display_name="Gastos Guardian",
        role="Expense monitoring specialist",
        expertise=("spending analysis", "budget alerts", "fraud detection"),
    ),
    Persona.PERA_PLANNER: PersonaConfig(
        display_name="Pera Planner",
        role="Comprehensive financial planner",
        expertise=("investment planning", "retirement", "goal setting"),
    ),
    Persona.CASHFLOW_OPTIMIZER: PersonaConfig(
        display_name="Cashflow Optimizer",
        role="Cash flow analyst",
        expertise=("income timing", "bill scheduling", "payday budgeting"),
    ),
    Persona.DEBT_DEMOLISHER: PersonaConfig(
        display_name="Debt Demolisher",
        role="Debt elimination strategist",
        expertise=("debt snowball and avalanche", "loan consolidation", "credit"),
    ),
    Persona.WEALTH_BUILDER: PersonaConfig(
        display_name="Wealth Builder",
        role="Long-term wealth advisor",
        expertise=("index funds", "MP2 and Pag-IBIG savings", "compounding"),
    ),
}

_SYSTEM_PROMPT_TEMPLATE = """\
You are {display_name}, a {role} in the Kita-kita personal finance app.
Your expertise: {expertise}.
Respond in a {language}, warm and practical.

Guidelines:
- Keep answers under 250 words
- Base advice on the user's actual transactions when they are relevant
- Give concrete next steps, amounts in {currency} where it helps
- Do not recommend specific stocks or guarantee returns
- Use plain text, no markdown

"""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _format_amount(amount: Decimal) -> str:
    return f"{amount:,.2f}"


async def build_financial_context(
    db: AsyncSession,
    user_id: str,
    today: date | None = None,
) -> str:
    """Summarize the user's recent transactions as plain text."""
    today = today or _utcnow().date()
    since = today - timedelta(days=CONTEXT_WINDOW_DAYS)

    result = await db.execute(
        select(Transaction)
        .where(
            Transaction.user_id == user_id,
            Transaction.transaction_date >= since,
        )
        .order_by(Transaction.transaction_date.desc(), Transaction.created_at.desc())
    )
    transactions = list(result.scalars().all())

    if not transactions:
        return f"No transactions recorded in the last {CONTEXT_WINDOW_DAYS} days."

    income = Decimal("0")
    expenses = Decimal("0")
    by_category: dict[str, Decimal] = defaultdict(Decimal)
    for transaction in transactions:
        if transaction.type == TransactionType.INCOME:
            income += transaction.amount
        else:
            expenses += transaction.amount
            by_category[transaction.category] += transaction.amount

    lines = [
        f"Last {CONTEXT_WINDOW_DAYS} days:",
        f"- Income: {_format_amount(income)}",
        f"- Expenses: {_format_amount(expenses)}",
        f"- Net: {_format_amount(income - expenses)}",
    ]
    if by_category:
        lines.append("Expenses by category:")
        for category, total in sorted(
            by_category.items(), key=lambda item: item[1], reverse=True
        ):
            lines.append(f"- {category}: {_format_amount(total)}")

    lines.append("Recent transactions:")
    for transaction in transactions[:CONTEXT_MAX_TRANSACTIONS]:
        lines.append(
            f"- {transaction.transaction_date.isoformat()} "
            f"{transaction.type.value} {transaction.name} "
            f"({transaction.category}): {_format_amount(transaction.amount)}"
        )

    return "\n".join(lines)


def build_system_prompt(persona: Persona, financial_context: str) -> str:
    config = PERSONAS[persona]
    prefix = _SYSTEM_PROMPT_TEMPLATE.format(
        display_name=config.display_name,
        role=config.role,
        expertise=", ".join(config.expertise),
        language=config.language,
        currency=settings.default_currency,
    )
    return prefix + "User's financial data:\n" + financial_context


async def ask_agent(
    db: AsyncSession,
    user: User,
    persona: Persona,
    message: str,
) -> AIResponse:
    """Ask one persona a question about the user's finances.

    Args:
        db: Database session.
        user: Authenticated web account.
        persona: Agent to answer.
        message: The user's question.

    Returns:
        The provider's response.

    Raises:
        AIConfigurationError: No usable AI provider is configured.
    """
    client = get_ai_client()

    try:
        financial_context = await build_financial_context(db, user.id)
    except Exception:
        logger.error(
            "Failed to build financial context for agent",
            user_id=user.id,
            persona=persona.value,
            exc_info=True,
        )
        financial_context = "Financial data: unavailable due to a temporary error."

    response = await client.generate(
        messages=[AIMessage(role="user", content=message[:MAX_USER_MESSAGE_LENGTH])],
        system_prompt=build_system_prompt(persona, financial_context),
        max_tokens=AGENT_MAX_RESPONSE_TOKENS,
    )

    logger.info(
        "Agent response generated",
        user_id=user.id,
        persona=persona.value,
        model=response.model,
        provider=response.provider.value,
        input_tokens=response.usage.input_tokens,
        output_tokens=response.usage.output_tokens,
    )
    return response
