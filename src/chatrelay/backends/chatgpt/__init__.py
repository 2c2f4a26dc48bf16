"""ChatGPT web backend (event stream through a browser page)."""

from .backend import ChatGptBackend
from .tokens import TokenManager, TokenState

__all__ = ["ChatGptBackend", "TokenManager", "TokenState"]
