"""Bing chat backend.

Conversations are created with a plain HTTP request and answered over the
chat hub socket. Session credentials returned at creation are kept in their
own cache table, next to the conversation records.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Callable

import httpx

from ...browser import HIDE_WEBDRIVER_SCRIPT, cookie_header
from ...config import BingConfig, ConversationConfig
from ...conversation import (
    Action,
    AskRequest,
    Conversation,
    ConversationOptions,
    ConversationRecord,
    Exchange,
    Message,
    Role,
)
from ...errors import FailureKind, LLMError
from ..base import BaseBackend
from .client import TONE_OPTIONS, BingSession, ChatHubClient, create_session

if TYPE_CHECKING:
    from ...browser import PageFactory
    from ...cache import CacheTable

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/114.0.0.0 Safari/537.36 Edg/114.0.1823.51"
)

HEADERS = {
    "accept": "application/json",
    "accept-language": "en-US,en;q=0.9",
    "content-type": "application/json",
    "user-agent": USER_AGENT,
    "x-ms-client-request-id": "",
    "x-ms-useragent": "azsdk-js-api-client-factory/1.0.0-beta.1 core-rest-pipeline/1.10.0 OS/Win32",
}


def parse_cookie_export(raw: str) -> str:
    """Turn a browser cookie export (JSON list) into a Cookie header.

    Session cookies are left out.

    Raises:
        ValueError: If the export is not a JSON list of cookies.
    """
    try:
        cookies = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Cannot parse Bing cookies: {e}") from e
    if not isinstance(cookies, list):
        raise ValueError("Bing cookies must be a JSON list")
    return cookie_header(c for c in cookies if c.get("session") is not True)


class BingBackend(BaseBackend):
    """Backend for Bing chat over the chat hub socket protocol.

    The conversation model is the tone (creative, balanced or precise).
    Only plain follow-up prompts are supported.
    """

    name = "bing"
    supported_actions = frozenset({Action.NEXT})
    _requires_state = True

    def __init__(
        self,
        config: BingConfig | None = None,
        *,
        conversations: CacheTable,
        sessions: CacheTable,
        conversation_config: ConversationConfig | None = None,
        page_factory: PageFactory | None = None,
        http: httpx.AsyncClient | None = None,
        connect: Callable[..., Any] | None = None,
    ):
        """Initialize the backend.

        Args:
            config: Bing configuration.
            conversations: Cache table for conversation records.
            sessions: Cache table for chat hub session credentials.
            conversation_config: Defaults for new conversations.
            page_factory: Opens browser pages, used when config.use_browser is set.
            http: HTTP client (created on start if not given).
            connect: Replacement for websockets.connect (for tests).
        """
        super().__init__(conversations, conversation_config)
        self.config = config or BingConfig()
        self.sessions = sessions
        self.page_factory = page_factory
        self._http = http
        self._owns_http = http is None
        self._cookies: str | None = None
        self.client = ChatHubClient(
            self.config.chathub_url,
            headers={"user-agent": USER_AGENT},
            keepalive_interval=self.config.keepalive_interval,
            connect=connect,
        )

    # ===== Lifecycle =====

    async def start(self) -> None:
        self._cookies = await self._load_cookies()
        if self._http is None:
            self._http = httpx.AsyncClient(headers=HEADERS, timeout=30.0)
        logger.info("Bing backend started")

    async def stop(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def _load_cookies(self) -> str:
        if self.config.use_browser:
            if self.page_factory is None:
                raise RuntimeError("Bing use_browser requires a browser")
            return await self._browser_cookies()
        if not self.config.cookies:
            raise RuntimeError("No cookies configured for the Bing backend")
        return parse_cookie_export(self.config.cookies)

    async def _browser_cookies(self) -> str:
        """Log in through a browser page and capture its cookies."""
        page = await self.page_factory()
        try:
            await page.add_init_script(HIDE_WEBDRIVER_SCRIPT)
            await page.goto(self.config.page_url)
            logger.info("Waiting for Bing login in the browser")
            await page.wait_for_response(self.config.ready_url, timeout=self.config.login_timeout)
            cookies = await page.cookies("https://www.bing.com")
        finally:
            await page.close()
        logger.debug(f"Captured {len(cookies)} Bing cookies")
        return cookie_header(cookies)

    # ===== Conversations =====

    async def _open(self, options: ConversationOptions) -> Conversation:
        tone = options.model or self.config.tone
        if tone not in TONE_OPTIONS:
            raise ValueError(f"Unknown Bing tone: {tone}")
        if self._http is None or self._cookies is None:
            raise RuntimeError("Bing backend is not started")

        session = await create_session(self._http, self.config.create_url, self._cookies)
        return Conversation(
            self,
            id=session.conversation_id,
            model=tone,
            expire=options.expire or self.default_expiry(),
            state=session,
        )

    async def ask(self, conversation: Conversation, request: AskRequest) -> Exchange:
        session = conversation.state
        if not isinstance(session, BingSession):
            raise LLMError(FailureKind.UNKNOWN, "Conversation has no chat hub session")

        reply = await self.client.ask(session, request.prompt, conversation.model or self.config.tone)
        return Exchange(
            user=Message(reply.user_id, Role.USER, request.prompt, parent=request.parent),
            answer=Message(reply.answer_id, Role.MODEL, reply.text, parent=reply.user_id),
            conversation_id=session.conversation_id,
            state=session.advanced(),
        )

    # ===== Session state =====

    async def _save_state(self, conversation: Conversation) -> None:
        if isinstance(conversation.state, BingSession):
            await self.sessions.set(
                conversation.id, conversation.state.to_dict(), ttl=conversation.expire.ttl()
            )

    async def _load_state(self, record: ConversationRecord) -> BingSession | None:
        data = await self.sessions.get(record.id)
        if data is None:
            return None
        try:
            return BingSession.from_dict(data)
        except (KeyError, ValueError) as e:
            logger.warning(f"Discarding unreadable session of conversation {record.id}: {e}")
            return None

    async def _delete_state(self, conversation_id: str) -> None:
        await self.sessions.delete(conversation_id)
