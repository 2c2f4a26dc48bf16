"""Configuration file support.

Load configuration from TOML files. CLI arguments always take precedence
over config file values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

# Python 3.11+ has tomllib in stdlib, earlier versions need tomli
try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore[import-not-found]

from .conversation import Expiry

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "chatrelay"


@dataclass
class ServeConfig:
    """Configuration for the serve command."""

    port: int = 8765
    host: str = "127.0.0.1"
    debug: bool = False


@dataclass
class ConversationConfig:
    """Defaults for new conversations."""

    clear: bool = False  # delete conversations once they expire
    expire: int = 1440  # minutes, only used when clear is set
    initial_prompts: list[str] = field(default_factory=list)
    provider: str | None = None
    locale: str = "en"

    def default_expiry(self) -> Expiry:
        if self.clear:
            return Expiry.after(self.expire * 60)
        return Expiry.permanent()


@dataclass
class CacheConfig:
    """Where conversations and credentials are stored."""

    backend: str = "file"  # "file" or "memory"
    directory: str | None = None


@dataclass
class BingConfig:
    """Configuration for the Bing chat backend."""

    enabled: bool = True
    cookies: str | None = None  # JSON cookie export
    use_browser: bool = False
    tone: str = "balanced"
    keepalive_interval: float = 20.0
    chathub_url: str = "wss://sydney.bing.com/sydney/ChatHub"
    create_url: str = "https://www.bing.com/turing/conversation/create"
    page_url: str = "https://www.bing.com/search?q=Bing+AI&showconv=1&FORM=hpcodx"
    ready_url: str = "https://b.clarity.ms/collect"
    login_timeout: float = 600.0


@dataclass
class ChatGptConfig:
    """Configuration for the ChatGPT web backend."""

    enabled: bool = True
    model: str = "text-davinci-002-render-sha"
    base_url: str = "https://chat.openai.com"
    access_token_ttl: float = 60.0
    session_token_ttl: float = 30 * 24 * 60 * 60.0
    response_timeout: float = 120.0
    login_timeout: float = 600.0
    poll_interval: float = 0.1


@dataclass
class Config:
    """Top-level configuration container."""

    serve: ServeConfig = field(default_factory=ServeConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    bing: BingConfig = field(default_factory=BingConfig)
    chatgpt: ChatGptConfig = field(default_factory=ChatGptConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Create a Config from a dictionary (e.g., parsed TOML).

        Args:
            data: Dictionary with section keys. Unknown keys are ignored.

        Returns:
            Config instance with values from dict, defaults for missing.
        """

        def section(section_cls, name):
            known = {f.name for f in fields(section_cls)}
            values = data.get(name, {})
            return section_cls(**{k: v for k, v in values.items() if k in known})

        return cls(
            serve=section(ServeConfig, "serve"),
            conversation=section(ConversationConfig, "conversation"),
            cache=section(CacheConfig, "cache"),
            bing=section(BingConfig, "bing"),
            chatgpt=section(ChatGptConfig, "chatgpt"),
        )


# Default configuration values
DEFAULT_CONFIG: dict[str, Any] = {
    "serve": {
        "port": 8765,
        "host": "127.0.0.1",
        "debug": False,
    },
    "conversation": {
        "clear": False,
        "expire": 1440,
        "initial_prompts": [],
        "provider": None,
        "locale": "en",
    },
    "cache": {
        "backend": "file",
        "directory": None,
    },
    "bing": {
        "enabled": True,
        "use_browser": False,
        "tone": "balanced",
        "keepalive_interval": 20.0,
    },
    "chatgpt": {
        "enabled": True,
        "model": "text-davinci-002-render-sha",
        "access_token_ttl": 60.0,
        "response_timeout": 120.0,
    },
}


def get_config_paths() -> list[Path]:
    """Config files in increasing order of priority."""
    return [CONFIG_DIR / "config.toml", Path.cwd() / "chatrelay.toml"]


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary (lower priority).
        override: Override dictionary (higher priority).

    Returns:
        Merged dictionary with override values taking precedence.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_paths: list[Path] | None = None) -> Config:
    """Load configuration from TOML files.

    Loads and merges config files in order of priority (later files override
    earlier ones). Starts with DEFAULT_CONFIG as the base.

    Args:
        config_paths: List of paths to check. If None, uses get_config_paths().

    Returns:
        Config instance with merged values.
    """
    if config_paths is None:
        config_paths = get_config_paths()

    merged: dict[str, Any] = _deep_merge({}, DEFAULT_CONFIG)

    for path in config_paths:
        if not path.exists():
            continue

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
            merged = _deep_merge(merged, data)
            logger.debug(f"Loaded config from {path}")
        except Exception as e:
            logger.warning(f"Failed to parse config file {path}: {e}")

    return Config.from_dict(merged)
