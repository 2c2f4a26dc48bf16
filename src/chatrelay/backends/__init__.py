"""Backend abstraction layer for web chat model providers.

This package provides a pluggable backend system. Each backend drives one
remote chat service and persists the conversations it answers.
"""

from .base import BaseBackend
from .protocol import LLMBackend
from .registry import ProviderRegistry, install_backends

__all__ = [
    "BaseBackend",
    "LLMBackend",
    "ProviderRegistry",
    "install_backends",
]
