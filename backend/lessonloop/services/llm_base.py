"""
LessonLoop Backend — Abstract LLM Service Interface
=====================================================

What:  The contract LoopAssist relies on to turn a user's request into an
       action proposal.
How:   Concrete providers inherit from LLMService and implement
       propose_action() and health_check().
Who:   Called by AssistantService when a user asks LoopAssist for something.

AssistantService only ever sees the parsed proposal dict, so a provider
can be swapped (or replaced by a mock in tests) without touching it.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict


class LLMService(ABC):
    """
    Abstract interface for LoopAssist action proposal providers.

    Contract:
        - propose_action() returns a dict with keys
          action_type, description, params, entities
        - Implementations handle their own retry logic and error translation
        - Provider errors surface as LLMServiceError / CircuitBreakerOpenError
    """

    @abstractmethod
    async def propose_action(self, message: str, context: Dict[str, Any]) -> Dict[str, Any]:
        """
        Ask the model which action would satisfy `message`.

        Args:
            message: The user's request, verbatim.
            context: Organisation facts the model may use (name, today's
                     date, the user's role, supported action types).

        Returns:
            {"action_type": str, "description": str,
             "params": dict, "entities": [{"type": str, "id": str, "label": str}]}

        Raises:
            LLMServiceError: The provider failed after all retries, or its
                answer was not a JSON proposal.
            CircuitBreakerOpenError: Too many consecutive failures recently.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Lightweight reachability test. Called by GET /health."""
        ...
