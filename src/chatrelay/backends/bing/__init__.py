"""Bing chat backend (chat hub socket protocol)."""

from .backend import BingBackend
from .client import BingSession, ChatHubClient

__all__ = ["BingBackend", "BingSession", "ChatHubClient"]
