"""Base class and shared plumbing for backends.

Both backends persist conversations the same way; they differ in how a
conversation is opened, in the session state they keep beside the record,
and in the network exchange itself.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from ..config import ConversationConfig
from ..conversation import (
    Action,
    Conversation,
    ConversationOptions,
    ConversationRecord,
    Expiry,
    seed,
)
from ..persistence import ConversationStore

if TYPE_CHECKING:
    from ..cache import CacheTable
    from ..conversation import AskRequest, Exchange

logger = logging.getLogger(__name__)


class BaseBackend(ABC):
    """Abstract base class for backends with common persistence logic.

    Subclasses implement opening a conversation and the exchange itself, and
    may keep session state next to the persisted record by overriding the
    _save_state/_load_state/_delete_state hooks.
    """

    name: str = ""
    supported_actions: frozenset[Action] = frozenset({Action.NEXT})

    def __init__(
        self,
        conversations: CacheTable,
        conversation_config: ConversationConfig | None = None,
    ):
        self.store = ConversationStore(conversations)
        self.conversation_config = conversation_config or ConversationConfig()

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    def default_expiry(self) -> Expiry:
        return self.conversation_config.default_expiry()

    async def create(self, options: ConversationOptions | None = None) -> Conversation:
        options = options or ConversationOptions()
        conversation = await self._open(options)
        if conversation.id is not None:
            await self.save(conversation)
        conversation = await seed(conversation, options.initial_prompts)
        logger.info(f"Created {self.name} conversation {conversation.id}")
        return conversation

    async def query(self, conversation_id: str) -> Conversation | None:
        record = await self.store.load(conversation_id)
        if record is None:
            return None
        state = await self._load_state(record)
        if state is None and self._requires_state:
            logger.warning(f"Session state of {self.name} conversation {conversation_id} is missing")
            return None
        return Conversation.from_record(self, record, state=state)

    async def clear(self, conversation_id: str) -> None:
        await self.store.delete(conversation_id)
        await self._delete_state(conversation_id)
        logger.info(f"Cleared {self.name} conversation {conversation_id}")

    async def save(self, conversation: Conversation) -> None:
        if await self.store.save(conversation):
            await self._save_state(conversation)

    @abstractmethod
    async def ask(self, conversation: Conversation, request: AskRequest) -> Exchange:
        ...

    @abstractmethod
    async def _open(self, options: ConversationOptions) -> Conversation:
        """Build the empty conversation for create()."""
        ...

    # ===== Session state hooks =====

    _requires_state: bool = False

    async def _save_state(self, conversation: Conversation) -> None:
        pass

    async def _load_state(self, record: ConversationRecord) -> object | None:
        return None

    async def _delete_state(self, conversation_id: str) -> None:
        pass
