"""Interface of the browser automation engine.

Backends that must look like an interactive browser session drive a page
through this protocol. The engine itself is provided by the application
(any puppeteer- or playwright-style page can be adapted to it).
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable, Protocol, runtime_checkable

# Keeps sites from detecting the automated browser
HIDE_WEBDRIVER_SCRIPT = (
    "Object.defineProperties(navigator, { webdriver: { get: () => false } })"
)


@runtime_checkable
class BrowserPage(Protocol):
    """A single browser page."""

    async def goto(self, url: str) -> None:
        ...

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        """Run a JavaScript function in the page and return its JSON result.

        Args:
            script: Source of a JavaScript function taking one argument.
            arg: JSON-compatible argument passed to the function.
        """
        ...

    async def cookies(self, *urls: str) -> list[dict]:
        """Cookies for the given URLs, as ``{"name", "value", ...}`` dicts."""
        ...

    async def set_cookie(self, **cookie: Any) -> None:
        ...

    async def wait_for_response(self, url: str, timeout: float | None = None) -> None:
        """Wait until the page receives a response from ``url``.

        Args:
            url: Response URL to wait for.
            timeout: Seconds to wait, None for the engine default.
        """
        ...

    async def add_init_script(self, script: str) -> None:
        """Run ``script`` in every new document before page scripts."""
        ...

    async def close(self) -> None:
        ...


PageFactory = Callable[[], Awaitable[BrowserPage]]


def cookie_header(cookies: Iterable[dict]) -> str:
    """Format cookies as a ``Cookie`` header value."""
    return "; ".join(f"{c['name']}={c['value']}" for c in cookies)
