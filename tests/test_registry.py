"""Tests for the provider registry."""

import asyncio
import logging

import pytest

from chatrelay.backends.protocol import LLMBackend
from chatrelay.backends.registry import ProviderRegistry, install_backends
from chatrelay.config import Config
from chatrelay.conversation import ConversationOptions

from conftest import FakeBackend


class TestRegistration:
    """Tests for registering backends."""

    def test_fake_backend_satisfies_protocol(self, backend):
        assert isinstance(backend, LLMBackend)

    def test_first_registered_is_default(self):
        registry = ProviderRegistry()
        first, second = FakeBackend(), FakeBackend()
        registry.register("one", first)
        registry.register("two", second)

        assert registry.get() is first
        assert registry.get("two") is second
        assert registry.default_name == "one"
        assert registry.names() == ["one", "two"]

    def test_get_unknown_returns_none(self):
        registry = ProviderRegistry()
        assert registry.get() is None
        assert registry.get("missing") is None
        assert registry.default_name is None

    def test_duplicate_replaces_with_warning(self, caplog):
        registry = ProviderRegistry()
        first, second = FakeBackend(), FakeBackend()
        registry.register("fake", first)
        with caplog.at_level(logging.WARNING):
            registry.register("fake", second)

        assert registry.get("fake") is second
        assert "Duplicate provider" in caplog.text

    def test_unregister(self):
        registry = ProviderRegistry()
        unregister = registry.register("fake", FakeBackend())
        assert unregister() is True
        assert registry.get("fake") is None
        assert unregister() is False

    def test_stale_unregister_keeps_replacement(self):
        """Unregistering a replaced backend should not remove its replacement."""
        registry = ProviderRegistry()
        first, second = FakeBackend(), FakeBackend()
        unregister_first = registry.register("fake", first)
        registry.register("fake", second)

        assert unregister_first() is False
        assert registry.get("fake") is second


class TestWaitFor:
    """Tests for waiting on providers."""

    @pytest.mark.asyncio
    async def test_returns_registered_immediately(self, backend):
        registry = ProviderRegistry()
        registry.register("fake", backend)
        assert await registry.wait_for("fake") is backend

    @pytest.mark.asyncio
    async def test_resolves_when_registered(self, backend):
        registry = ProviderRegistry()
        waiter = asyncio.create_task(registry.wait_for("fake", timeout=1.0))
        await asyncio.sleep(0)
        assert not waiter.done()

        registry.register("fake", backend)
        assert await waiter is backend

    @pytest.mark.asyncio
    async def test_times_out(self):
        registry = ProviderRegistry()
        with pytest.raises(asyncio.TimeoutError):
            await registry.wait_for("fake", timeout=0.01)
        assert registry._waiters == {}

    @pytest.mark.asyncio
    async def test_timeout_keeps_other_waiters(self, backend):
        """A waiter timing out should not drop the notification another waiter needs."""
        registry = ProviderRegistry()
        patient = asyncio.create_task(registry.wait_for("fake", timeout=1.0))
        await asyncio.sleep(0)
        with pytest.raises(asyncio.TimeoutError):
            await registry.wait_for("fake", timeout=0.01)
        assert "fake" in registry._waiters

        registry.register("fake", backend)
        assert await patient is backend
        assert registry._waiters == {}

    @pytest.mark.asyncio
    async def test_waits_for_default(self, backend):
        registry = ProviderRegistry()
        waiter = asyncio.create_task(registry.wait_for(timeout=1.0))
        await asyncio.sleep(0)
        assert not waiter.done()

        registry.register("fake", backend)
        assert await waiter is backend


class TestDispatch:
    """Tests for create/query/clear through the registry."""

    @pytest.mark.asyncio
    async def test_absent_provider(self):
        registry = ProviderRegistry()
        assert await registry.create(ConversationOptions(provider="missing")) is None
        assert await registry.query("c1", "missing") is None
        assert await registry.clear("c1", "missing") is False

    @pytest.mark.asyncio
    async def test_create_query_clear(self, backend):
        registry = ProviderRegistry()
        registry.register("fake", backend)

        conversation = await registry.create(ConversationOptions(initial_prompts=["hi"]))
        restored = await registry.query(conversation.id)
        assert restored.latest_id == conversation.latest_id

        assert await registry.clear(conversation.id) is True
        assert await registry.query(conversation.id) is None


class TestLifecycle:
    """Tests for installing and stopping backends."""

    @pytest.mark.asyncio
    async def test_install_starts_then_registers(self, backend):
        registry = ProviderRegistry()
        dispose = await registry.install("fake", backend)
        assert backend.started
        assert registry.get("fake") is backend

        await dispose()
        assert backend.stopped
        assert registry.get("fake") is None

    @pytest.mark.asyncio
    async def test_shutdown_stops_all(self):
        registry = ProviderRegistry()
        first, second = FakeBackend(), FakeBackend()
        await registry.install("one", first)
        await registry.install("two", second)

        await registry.shutdown()
        assert first.stopped and second.stopped
        assert registry.names() == []

    @pytest.mark.asyncio
    async def test_install_backends_skips_failing(self, caplog):
        """A backend that cannot start should be skipped with a warning."""
        config = Config.from_dict({"cache": {"backend": "memory"}, "bing": {"cookies": None}})
        registry = ProviderRegistry()
        with caplog.at_level(logging.WARNING):
            installed = await install_backends(registry, config)

        assert installed == []
        assert registry.names() == []
        assert "Failed to start Bing backend" in caplog.text
