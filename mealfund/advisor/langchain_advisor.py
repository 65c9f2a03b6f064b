"""
AI advisor backed by a LangChain chat model (any OpenAI-compatible endpoint).
"""

from typing import Optional

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from mealfund.advisor.base import AIAdvisor
from mealfund.config import settings
from mealfund.errors import AIProviderError

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You assess how urgently a school's meal-delivery problems need attention. "
    "Answer only in the requested format."
)


def _get_llm(model: Optional[str] = None) -> ChatOpenAI:
    if not settings.AI_API_KEY:
        raise ValueError("AI_API_KEY must be set for the LangChain advisor")
    return ChatOpenAI(
        model=model or settings.AI_MODEL,
        temperature=settings.AI_TEMPERATURE,
        api_key=settings.AI_API_KEY,
        base_url=settings.AI_BASE_URL,
        max_retries=0,
    )


def _text_of(content) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class LangChainAdvisor(AIAdvisor):

    def __init__(self, llm: Optional[ChatOpenAI] = None, model: Optional[str] = None):
        self._llm = llm or _get_llm(model)

    @property
    def advisor_name(self) -> str:
        return "langchain"

    async def complete(self, prompt: str, max_tokens: int) -> str:
        try:
            response = await self._llm.bind(max_tokens=max_tokens).ainvoke([
                SystemMessage(content=SYSTEM_PROMPT),
                HumanMessage(content=prompt),
            ])
        except Exception as e:
            logger.warning("advisor_call_failed", advisor=self.advisor_name, error=str(e))
            raise AIProviderError(f"Advisor call failed: {e}") from e

        return _text_of(response.content)
