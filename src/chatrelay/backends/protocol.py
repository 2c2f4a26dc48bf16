"""Protocol definitions for LLM backends.

This module defines the interface that all LLM backends must implement.
Using Python's Protocol for structural subtyping allows backends to be swapped
without requiring explicit inheritance.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..conversation import (
        Action,
        AskRequest,
        Conversation,
        ConversationOptions,
        Exchange,
    )


@runtime_checkable
class LLMBackend(Protocol):
    """Protocol that all LLM backends must implement.

    A backend owns the network exchange with one remote model service and
    the persistence of the conversations it answers.
    """

    # ===== Backend Identity =====

    @property
    def name(self) -> str:
        """Registry name of the backend (e.g., 'bing')."""
        ...

    @property
    def supported_actions(self) -> frozenset[Action]:
        """Actions the backend can perform (next, variant, continue)."""
        ...

    # ===== Lifecycle =====

    async def start(self) -> None:
        """Acquire credentials and connections. Called before registration."""
        ...

    async def stop(self) -> None:
        """Release everything acquired by start()."""
        ...

    # ===== Conversations =====

    async def create(self, options: ConversationOptions | None = None) -> Conversation:
        """Create a conversation, seeded with options.initial_prompts.

        Args:
            options: Model, expiry and initial prompts.

        Returns:
            The new conversation, its tip being the reply to the last seed prompt.
        """
        ...

    async def query(self, conversation_id: str) -> Conversation | None:
        """Load a persisted conversation.

        Args:
            conversation_id: Backend-assigned conversation id.

        Returns:
            The live conversation, or None if unknown or expired.
        """
        ...

    async def clear(self, conversation_id: str) -> None:
        """Delete persisted state and, where supported, the remote conversation.

        Args:
            conversation_id: Backend-assigned conversation id.
        """
        ...

    # ===== Exchange =====

    async def ask(self, conversation: Conversation, request: AskRequest) -> Exchange:
        """Perform one network exchange.

        Must not modify ``conversation``; the caller commits the returned
        exchange into a fork.

        Args:
            conversation: Conversation the request belongs to.
            request: Prompt, parent and action.

        Returns:
            The prompt and answer messages as the backend identified them.

        Raises:
            LLMError: If the backend refused or failed the exchange.
        """
        ...

    async def save(self, conversation: Conversation) -> None:
        """Persist a conversation and its backend session state."""
        ...
