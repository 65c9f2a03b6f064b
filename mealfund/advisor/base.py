"""
Abstract AI advisor.
"""

from abc import ABC, abstractmethod


class AIAdvisor(ABC):
    """
    Every advisor must:
    1. Return the model's raw text for a prompt
    2. Raise AIProviderError on transport or provider failures
    3. Hold no per-call state (one instance is shared across a batch)

    Callers bound the call with their own timeout and must cope with text
    that does not follow the requested format.
    """

    @property
    @abstractmethod
    def advisor_name(self) -> str:
        ...

    @abstractmethod
    async def complete(self, prompt: str, max_tokens: int) -> str:
        ...
