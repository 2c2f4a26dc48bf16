"""Conversation persistence on top of a cache table."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .conversation import ConversationRecord

if TYPE_CHECKING:
    from .cache import CacheTable
    from .conversation import Conversation

logger = logging.getLogger(__name__)


class ConversationStore:
    """Saves and loads conversation records, keyed by conversation id.

    The TTL of a stored record is derived from the conversation's expiry:
    permanent records never expire, timed records expire at their deadline
    and ephemeral conversations are never written.
    """

    def __init__(self, table: CacheTable):
        self.table = table

    async def save(self, conversation: Conversation) -> bool:
        """Persist a conversation.

        Returns:
            True if a record was written.
        """
        if conversation.id is None:
            logger.debug("Not saving conversation without an id")
            return False
        expire = conversation.expire
        if not expire.persistent:
            return False
        if expire.is_expired():
            logger.debug(f"Conversation {conversation.id} already expired, deleting")
            await self.table.delete(conversation.id)
            return False
        await self.table.set(conversation.id, conversation.snapshot().to_dict(), ttl=expire.ttl())
        return True

    async def load(self, conversation_id: str) -> ConversationRecord | None:
        data = await self.table.get(conversation_id)
        if data is None:
            return None
        try:
            return ConversationRecord.from_dict(data)
        except (KeyError, ValueError) as e:
            logger.warning(f"Discarding unreadable conversation {conversation_id}: {e}")
            return None

    async def delete(self, conversation_id: str) -> None:
        await self.table.delete(conversation_id)
