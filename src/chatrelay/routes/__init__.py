"""FastAPI route modules."""

from .chatbot import router as chatbot_router
from .conversations import router as conversations_router

__all__ = ["chatbot_router", "conversations_router"]
