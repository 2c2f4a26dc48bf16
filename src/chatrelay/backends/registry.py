"""Provider registry for dispatching to backends by name."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

if TYPE_CHECKING:
    from ..browser import PageFactory
    from ..config import Config
    from ..conversation import Conversation, ConversationOptions
    from .protocol import LLMBackend

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Maps provider names to live backends.

    The first registered backend is the default provider. Consumers that
    start before a backend has finished initializing can wait for it with
    wait_for() instead of failing.
    """

    def __init__(self):
        self._backends: dict[str, LLMBackend] = {}
        # Keyed by provider name, None waits for the default provider
        self._waiters: dict[str | None, asyncio.Event] = {}
        self._waiting: dict[str | None, int] = {}
        self._installed: dict[str, Callable[[], Awaitable[None]]] = {}

    # ===== Registration =====

    def register(self, name: str, backend: LLMBackend) -> Callable[[], bool]:
        """Register a backend under a name.

        A backend already registered under the same name is replaced.

        Args:
            name: Provider name (e.g., 'bing', 'chatgpt').
            backend: Backend implementing the LLMBackend protocol.

        Returns:
            A function removing this registration. It returns False if the
            name has been taken over by another backend since.
        """
        if name in self._backends:
            logger.warning(f"Duplicate provider registered: {name}, replacing it")
        self._backends[name] = backend
        logger.info(f"Registered provider: {name}")

        for key in (name, None):
            waiter = self._waiters.pop(key, None)
            if waiter is not None:
                waiter.set()

        def unregister() -> bool:
            if self._backends.get(name) is not backend:
                return False
            del self._backends[name]
            logger.info(f"Unregistered provider: {name}")
            return True

        return unregister

    def get(self, name: str | None = None) -> LLMBackend | None:
        """Get a backend by name, or the default backend if name is None.

        Returns:
            The backend, or None if no such provider is registered.
        """
        if name is None:
            return next(iter(self._backends.values()), None)
        return self._backends.get(name)

    def names(self) -> list[str]:
        """List registered provider names, default first."""
        return list(self._backends.keys())

    @property
    def default_name(self) -> str | None:
        return next(iter(self._backends), None)

    async def wait_for(self, name: str | None = None, timeout: float | None = None) -> LLMBackend:
        """Wait until a provider is registered.

        Args:
            name: Provider name, None for the default provider.
            timeout: Seconds to wait, None to wait forever.

        Returns:
            The registered backend.

        Raises:
            asyncio.TimeoutError: If the provider did not appear in time.
        """
        while True:
            backend = self.get(name)
            if backend is not None:
                return backend
            waiter = self._waiters.setdefault(name, asyncio.Event())
            self._waiting[name] = self._waiting.get(name, 0) + 1
            try:
                await asyncio.wait_for(waiter.wait(), timeout=timeout)
            finally:
                self._waiting[name] -= 1
                if not self._waiting[name]:
                    del self._waiting[name]
                    if self._waiters.get(name) is waiter:
                        del self._waiters[name]

    # ===== Dispatch =====

    async def create(self, options: ConversationOptions | None = None) -> Conversation | None:
        """Create a conversation with options.provider (or the default)."""
        backend = self.get(options.provider if options is not None else None)
        if backend is None:
            return None
        return await backend.create(options)

    async def query(self, conversation_id: str, provider: str | None = None) -> Conversation | None:
        backend = self.get(provider)
        if backend is None:
            return None
        return await backend.query(conversation_id)

    async def clear(self, conversation_id: str, provider: str | None = None) -> bool:
        """Clear a conversation.

        Returns:
            False if the provider is not registered.
        """
        backend = self.get(provider)
        if backend is None:
            return False
        await backend.clear(conversation_id)
        return True

    # ===== Lifecycle =====

    async def install(self, name: str, backend: LLMBackend) -> Callable[[], Awaitable[None]]:
        """Start a backend, then register it.

        Returns:
            An async function that stops and unregisters the backend.
        """
        await backend.start()
        unregister = self.register(name, backend)

        async def dispose() -> None:
            self._installed.pop(name, None)
            unregister()
            await backend.stop()

        self._installed[name] = dispose
        return dispose

    async def shutdown(self) -> None:
        """Stop and unregister every installed backend."""
        for dispose in list(self._installed.values()):
            try:
                await dispose()
            except Exception as e:
                logger.warning(f"Failed to stop backend: {e}")


async def install_backends(
    registry: ProviderRegistry,
    config: Config,
    page_factory: PageFactory | None = None,
) -> list[str]:
    """Build and install the backends enabled in the configuration.

    A backend that fails to start is skipped with a warning.

    Args:
        registry: Registry to install into.
        config: Application configuration.
        page_factory: Opens browser pages. Without it, only backends that
            can run without a browser are installed.

    Returns:
        Names of the installed providers.
    """
    from ..cache import open_cache

    installed = []

    if config.bing.enabled:
        try:
            from .bing import BingBackend

            backend = BingBackend(
                config.bing,
                conversations=open_cache(config.cache, "bing/conversations"),
                sessions=open_cache(config.cache, "bing/sessions"),
                conversation_config=config.conversation,
                page_factory=page_factory,
            )
            await registry.install("bing", backend)
            installed.append("bing")
        except ImportError as e:
            logger.warning(f"Bing backend not available: {e}")
        except Exception as e:
            logger.warning(f"Failed to start Bing backend: {e}")

    if config.chatgpt.enabled:
        if page_factory is None:
            logger.info("ChatGPT backend needs a browser page, skipping")
        else:
            try:
                from .chatgpt import ChatGptBackend

                backend = ChatGptBackend(
                    config.chatgpt,
                    page_factory=page_factory,
                    conversations=open_cache(config.cache, "chatgpt/conversations"),
                    credentials=open_cache(config.cache, "chatgpt/cookies"),
                    conversation_config=config.conversation,
                )
                await registry.install("chatgpt", backend)
                installed.append("chatgpt")
            except ImportError as e:
                logger.warning(f"ChatGPT backend not available: {e}")
            except Exception as e:
                logger.warning(f"Failed to start ChatGPT backend: {e}")

    return installed
