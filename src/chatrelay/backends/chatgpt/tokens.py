"""Session and access token handling for the ChatGPT web backend.

The browser page holds a long-lived session cookie. Short-lived access
tokens are fetched from the session endpoint inside the page and cached for
a minute. Concurrent askers share the cached token; refreshes are not
de-duplicated.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from ...browser import HIDE_WEBDRIVER_SCRIPT
from ...config import ChatGptConfig
from ...errors import FailureKind, LLMError

if TYPE_CHECKING:
    from ...browser import BrowserPage
    from ...cache import CacheTable

logger = logging.getLogger(__name__)

SESSION_COOKIE = "__Secure-next-auth.session-token"
SESSION_TOKEN_KEY = "session-token"
ACCESS_TOKEN_KEY = "access-token"

FETCH_SESSION_SCRIPT = "(url) => fetch(url).then(r => r.json())"


class TokenState(str, Enum):
    NO_SESSION = "no_session"
    SESSION_NO_TOKEN = "session_no_token"
    TOKEN_VALID = "token_valid"
    TOKEN_EXPIRED = "token_expired"


class TokenManager:
    """Tracks the session cookie and the cached access token of one page."""

    def __init__(self, page: BrowserPage, cache: CacheTable, config: ChatGptConfig | None = None):
        self.page = page
        self.cache = cache
        self.config = config or ChatGptConfig()
        self.state = TokenState.NO_SESSION

    @property
    def session_url(self) -> str:
        return f"{self.config.base_url}/api/auth/session"

    async def start(self) -> None:
        """Open the site, waiting for a login if needed, and keep the session cookie.

        Raises:
            LLMError: If no session cookie could be obtained.
        """
        session_token = await self.cache.get(SESSION_TOKEN_KEY)
        if session_token:
            domain = self.config.base_url.split("://", 1)[-1]
            await self.page.set_cookie(
                name=SESSION_COOKIE,
                value=session_token,
                domain=domain,
                path="/",
                httpOnly=True,
                secure=True,
                sameSite="Lax",
            )

        await self.page.add_init_script(HIDE_WEBDRIVER_SCRIPT)
        await self.page.goto(f"{self.config.base_url}/chat")
        await self.page.wait_for_response(self.session_url, timeout=self.config.login_timeout)

        cookies = await self.page.cookies(self.config.base_url)
        session_token = next((c["value"] for c in cookies if c.get("name") == SESSION_COOKIE), None)
        if not session_token:
            self.state = TokenState.NO_SESSION
            raise LLMError(FailureKind.UNAUTHORIZED, "Cannot get session token")

        await self.cache.set(SESSION_TOKEN_KEY, session_token, ttl=self.config.session_token_ttl)
        self.state = TokenState.SESSION_NO_TOKEN
        logger.info("ChatGPT session established")

    async def access_token(self) -> str:
        """The cached access token, fetched first if missing or expired.

        Raises:
            LLMError: If there is no session or no token could be obtained.
        """
        if self.state is TokenState.NO_SESSION:
            raise LLMError(FailureKind.UNAUTHORIZED, "No ChatGPT session")
        token = await self.cache.get(ACCESS_TOKEN_KEY)
        if token:
            self.state = TokenState.TOKEN_VALID
            return token
        return await self.refresh()

    async def refresh(self) -> str:
        """Fetch a new access token from the session endpoint."""
        if self.state is TokenState.NO_SESSION:
            raise LLMError(FailureKind.UNAUTHORIZED, "No ChatGPT session")

        data = await self.page.evaluate(FETCH_SESSION_SCRIPT, self.session_url)
        token = data.get("accessToken") if isinstance(data, dict) else None
        if not token:
            self.state = TokenState.SESSION_NO_TOKEN
            raise LLMError(FailureKind.UNAUTHORIZED, "Session endpoint returned no access token")

        await self.cache.set(ACCESS_TOKEN_KEY, token, ttl=self.config.access_token_ttl)
        self.state = TokenState.TOKEN_VALID
        logger.debug("Refreshed ChatGPT access token")
        return token

    async def invalidate(self) -> None:
        """Drop the cached access token after the server rejected it."""
        await self.cache.delete(ACCESS_TOKEN_KEY)
        if self.state is not TokenState.NO_SESSION:
            self.state = TokenState.TOKEN_EXPIRED
