"""Chat commands on top of a shared conversation.

Every user talks to the same conversation, seeded once with the initial
prompts. chat() keeps a branch per user: the user's next prompt is asked
under the answer they last received. ask() is stateless and always branches
from the seeded base of the conversation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Iterable

from .conversation import ConversationOptions, Expiry, new_id

if TYPE_CHECKING:
    from .backends.registry import ProviderRegistry
    from .cache import CacheTable
    from .conversation import Conversation, Message

logger = logging.getLogger(__name__)

CONVERSATION_KEY = "conversation"

# Seconds to wait for a provider that is still starting
PROVIDER_WAIT = 10.0


class ProviderUnavailable(LookupError):
    """The provider of the shared conversation is not registered."""


def _user_key(user_id: str) -> str:
    return f"user:{user_id}"


class ChatBot:
    """Shared conversation with per-user branches."""

    def __init__(
        self,
        registry: ProviderRegistry,
        cache: CacheTable,
        *,
        initial_prompts: Iterable[str] = (),
        provider: str | None = None,
        expire: Expiry | None = None,
        provider_wait: float = PROVIDER_WAIT,
    ):
        """Initialize the chat bot.

        Args:
            registry: Registry the conversation's provider is looked up in.
            cache: Table for the shared conversation id and the user tips.
            initial_prompts: Prompts seeding a new shared conversation.
            provider: Provider name, None for the registry default.
            expire: Expiry of the shared conversation, None for the backend default.
            provider_wait: Seconds to wait for the provider to be registered.
        """
        self.registry = registry
        self.cache = cache
        self.initial_prompts = list(initial_prompts)
        self.provider = provider
        self.expire = expire
        self.provider_wait = provider_wait
        self._conversation: Conversation | None = None
        self._base_id: str | None = None
        # Serializes exchanges so every answer lands in the same conversation value
        self._lock = asyncio.Lock()

    async def conversation(self) -> Conversation:
        """The shared conversation, restored from the cache or created."""
        if self._conversation is None:
            await self._wait_for_provider()
            self._conversation = await self._restore() or await self._create()
        return self._conversation

    async def _wait_for_provider(self) -> None:
        if self.registry.get(self.provider) is not None:
            return
        logger.info(f"Waiting for provider {self.provider or 'default'}")
        try:
            await self.registry.wait_for(self.provider, timeout=self.provider_wait)
        except asyncio.TimeoutError:
            raise ProviderUnavailable(
                f"Provider not available: {self.provider or 'default'}"
            ) from None

    async def _restore(self) -> Conversation | None:
        saved = await self.cache.get(CONVERSATION_KEY)
        if not saved or saved.get("provider") != self.provider:
            return None
        conversation = await self.registry.query(saved["id"], self.provider)
        if conversation is None:
            logger.info(f"Shared conversation {saved['id']} is gone, starting a new one")
            return None
        self._base_id = saved.get("base")
        return conversation

    async def _create(self) -> Conversation:
        options = ConversationOptions(
            expire=self.expire,
            initial_prompts=self.initial_prompts,
            provider=self.provider,
        )
        conversation = await self.registry.create(options)
        if conversation is None:
            raise ProviderUnavailable(f"Provider not available: {self.provider or 'default'}")
        self._base_id = conversation.latest_id
        await self._remember(conversation)
        logger.info(f"Started shared conversation {conversation.id}")
        return conversation

    async def _remember(self, conversation: Conversation) -> None:
        if conversation.id is None:
            return
        await self.cache.set(
            CONVERSATION_KEY,
            {"id": conversation.id, "provider": self.provider, "base": self._base_id},
            ttl=conversation.expire.ttl(),
        )

    async def chat(self, user_id: str, prompt: str) -> Message:
        """Continue the user's branch with a prompt and return the answer."""
        async with self._lock:
            conversation = await self.conversation()
            saved = await self.cache.get(_user_key(user_id))
            parent = None
            if saved and saved.get("conversation") == conversation.id:
                parent = saved.get("latest")

            conversation = await self._ask(conversation, prompt, parent or self._base_id)
            await self.cache.set(
                _user_key(user_id),
                {"conversation": conversation.id, "latest": conversation.latest_id},
                ttl=conversation.expire.ttl(),
            )
            return conversation.latest

    async def ask(self, prompt: str) -> Message:
        """Ask a one-off prompt under the seeded base of the conversation."""
        async with self._lock:
            conversation = await self.conversation()
            conversation = await self._ask(conversation, prompt, self._base_id)
            return conversation.latest

    async def _ask(self, conversation: Conversation, prompt: str, parent: str | None) -> Conversation:
        had_id = conversation.id is not None
        # No parent means a new root, never the tip of another branch
        conversation = await conversation.ask(prompt, parent or conversation.root_parent or new_id())
        self._conversation = conversation
        if not had_id:
            # The backend assigned the id with the first answer
            await self._remember(conversation)
        return conversation

    async def forget(self, user_id: str) -> None:
        """Drop the user's branch; their next chat starts from the base."""
        await self.cache.delete(_user_key(user_id))

    async def reset(self) -> Conversation:
        """Replace the shared conversation with a freshly seeded one."""
        async with self._lock:
            await self.cache.clear()
            self._conversation = None
            self._base_id = None
            await self._wait_for_provider()
            self._conversation = await self._create()
            return self._conversation
