"""FastAPI server exposing the registered providers over HTTP."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .backends.registry import ProviderRegistry, install_backends
from .browser import PageFactory
from .cache import open_cache
from .chatbot import ChatBot
from .config import Config, load_config
from .routes import chatbot_router, conversations_router
from .routes.chatbot import configure_chatbot_routes
from .routes.conversations import configure_conversation_routes

logger = logging.getLogger(__name__)

# Global state for server
_config: Config | None = None
_registry: ProviderRegistry | None = None
_page_factory: PageFactory | None = None
_chatbot: ChatBot | None = None


def set_config(config: Config | None) -> None:
    """Set the configuration used by the server (None reloads it on startup)."""
    global _config
    _config = config


def get_config() -> Config:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_registry(registry: ProviderRegistry | None) -> None:
    """Use an existing registry instead of installing backends on startup."""
    global _registry, _chatbot
    _registry = registry
    _chatbot = None


def get_registry() -> ProviderRegistry:
    """Get the provider registry.

    Raises:
        RuntimeError: If the server has not been started.
    """
    if _registry is None:
        raise RuntimeError("Provider registry not initialized")
    return _registry


def set_page_factory(page_factory: PageFactory | None) -> None:
    """Set the browser page factory for backends that need a browser."""
    global _page_factory
    _page_factory = page_factory


def get_chatbot() -> ChatBot | None:
    """Get the shared chat bot, creating it on first use."""
    global _chatbot
    if _registry is None or not _registry.names():
        return None
    if _chatbot is None:
        config = get_config()
        _chatbot = ChatBot(
            _registry,
            open_cache(config.cache, "chatbot/conversation"),
            initial_prompts=config.conversation.initial_prompts,
            provider=config.conversation.provider,
        )
    return _chatbot


# FastAPI app setup


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage server lifecycle - install and stop backends."""
    global _registry, _chatbot

    config = get_config()
    owns_registry = _registry is None
    if owns_registry:
        _registry = ProviderRegistry()
        installed = await install_backends(_registry, config, page_factory=_page_factory)
        if not installed:
            logger.warning("No providers available")

    configure_conversation_routes(get_registry=get_registry, get_config=get_config)
    configure_chatbot_routes(get_chatbot=get_chatbot)

    yield

    # Shutdown
    if owns_registry:
        await _registry.shutdown()
        _registry = None
    _chatbot = None


app = FastAPI(title="chatrelay", lifespan=lifespan)

# Include routers
app.include_router(conversations_router)
app.include_router(chatbot_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    registry = _registry
    return {
        "status": "ok",
        "providers": registry.names() if registry is not None else [],
    }
