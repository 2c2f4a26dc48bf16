"""Tests for the shared chat conversation."""

import asyncio

import pytest

from chatrelay.backends.registry import ProviderRegistry
from chatrelay.cache import MemoryCache
from chatrelay.chatbot import ChatBot, ProviderUnavailable

from conftest import FakeBackend


@pytest.fixture
def registry(backend):
    registry = ProviderRegistry()
    registry.register("fake", backend)
    return registry


class TestChatBot:
    """Tests for ChatBot."""

    @pytest.mark.asyncio
    async def test_conversation_seeded_once(self, registry, backend):
        bot = ChatBot(registry, MemoryCache(), initial_prompts=["be terse"])
        first = await bot.conversation()
        second = await bot.conversation()

        assert first is second
        assert [r.prompt for r in backend.requests] == ["be terse"]

    @pytest.mark.asyncio
    async def test_users_get_separate_branches(self, registry, backend):
        """Each user's prompt should continue their own last answer."""
        bot = ChatBot(registry, MemoryCache(), initial_prompts=["be terse"])
        base = (await bot.conversation()).latest_id

        alice_1 = await bot.chat("alice", "a1")
        bob_1 = await bot.chat("bob", "b1")
        alice_2 = await bot.chat("alice", "a2")

        conversation = await bot.conversation()
        assert conversation.messages[alice_1.parent].parent == base
        assert conversation.messages[bob_1.parent].parent == base
        assert conversation.messages[alice_2.parent].parent == alice_1.id

    @pytest.mark.asyncio
    async def test_ask_branches_from_base(self, registry):
        bot = ChatBot(registry, MemoryCache(), initial_prompts=["be terse"])
        base = (await bot.conversation()).latest_id

        await bot.chat("alice", "a1")
        answer = await bot.ask("one-off")

        conversation = await bot.conversation()
        assert conversation.messages[answer.parent].parent == base
        assert answer.text == "answer to one-off"

    @pytest.mark.asyncio
    async def test_forget_restarts_branch(self, registry):
        bot = ChatBot(registry, MemoryCache(), initial_prompts=["be terse"])
        base = (await bot.conversation()).latest_id

        await bot.chat("alice", "a1")
        await bot.forget("alice")
        answer = await bot.chat("alice", "again")

        conversation = await bot.conversation()
        assert conversation.messages[answer.parent].parent == base

    @pytest.mark.asyncio
    async def test_restored_from_cache(self, registry, backend):
        """A new bot sharing the cache should pick up the same conversation and branches."""
        cache = MemoryCache()
        bot = ChatBot(registry, cache, initial_prompts=["be terse"])
        first = await bot.chat("alice", "a1")

        restarted = ChatBot(registry, cache, initial_prompts=["be terse"])
        second = await restarted.chat("alice", "a2")

        conversation = await restarted.conversation()
        assert conversation.id == (await bot.conversation()).id
        assert conversation.messages[second.parent].parent == first.id
        assert [r.prompt for r in backend.requests].count("be terse") == 1

    @pytest.mark.asyncio
    async def test_reset_starts_new_conversation(self, registry):
        cache = MemoryCache()
        bot = ChatBot(registry, cache, initial_prompts=["be terse"])
        old = await bot.conversation()
        await bot.chat("alice", "a1")

        new = await bot.reset()
        assert new.id != old.id
        assert await cache.get("user:alice") is None

    @pytest.mark.asyncio
    async def test_id_assigned_on_first_answer(self):
        backend = FakeBackend(assign_id=False)
        registry = ProviderRegistry()
        registry.register("fake", backend)
        cache = MemoryCache()
        bot = ChatBot(registry, cache)

        await bot.chat("alice", "hi")
        saved = await cache.get("conversation")
        assert saved["id"] == (await bot.conversation()).id

    @pytest.mark.asyncio
    async def test_missing_provider(self):
        registry = ProviderRegistry()
        bot = ChatBot(registry, MemoryCache(), provider_wait=0.01)
        with pytest.raises(ProviderUnavailable):
            await bot.ask("hi")
        assert registry._waiters == {}

    @pytest.mark.asyncio
    async def test_waits_for_starting_provider(self, backend):
        """A provider registered shortly after the first prompt should still answer it."""
        registry = ProviderRegistry()
        bot = ChatBot(registry, MemoryCache(), provider="fake", provider_wait=1.0)
        pending = asyncio.create_task(bot.chat("alice", "hi"))
        await asyncio.sleep(0)
        assert not pending.done()

        registry.register("fake", backend)
        answer = await pending
        assert answer.text == "answer to hi"

    @pytest.mark.asyncio
    async def test_root_prompts_share_parent(self, registry, backend):
        """Users starting without a seeded base should branch under the same wire parent."""
        bot = ChatBot(registry, MemoryCache())
        await bot.chat("alice", "a1")
        await bot.chat("bob", "b1")

        assert backend.requests[0].parent == backend.requests[1].parent
        assert (await bot.conversation()).root_parent == backend.requests[0].parent
