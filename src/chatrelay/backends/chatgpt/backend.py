"""ChatGPT web backend.

Drives the ChatGPT web client through a logged-in browser page. Every
request is made from inside the page with a bearer access token.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ...config import ChatGptConfig, ConversationConfig
from ...conversation import (
    Action,
    AskRequest,
    Conversation,
    ConversationOptions,
    Exchange,
    Message,
    Role,
    new_id,
)
from ...errors import FailureKind, LLMError
from ..base import BaseBackend
from .stream import patch_conversation, post_conversation
from .tokens import TokenManager

if TYPE_CHECKING:
    from ...browser import BrowserPage, PageFactory
    from ...cache import CacheTable

logger = logging.getLogger(__name__)


class ChatGptBackend(BaseBackend):
    """Backend for the ChatGPT web client.

    Supports follow-up prompts, answer variants and continuing a truncated
    answer.
    """

    name = "chatgpt"
    supported_actions = frozenset({Action.NEXT, Action.VARIANT, Action.CONTINUE})

    def __init__(
        self,
        config: ChatGptConfig | None = None,
        *,
        page_factory: PageFactory,
        conversations: CacheTable,
        credentials: CacheTable,
        conversation_config: ConversationConfig | None = None,
    ):
        """Initialize the backend.

        Args:
            config: ChatGPT configuration.
            page_factory: Opens the browser page the backend works in.
            conversations: Cache table for conversation records.
            credentials: Cache table for the session and access tokens.
            conversation_config: Defaults for new conversations.
        """
        super().__init__(conversations, conversation_config)
        self.config = config or ChatGptConfig()
        self.page_factory = page_factory
        self.credentials = credentials
        self.page: BrowserPage | None = None
        self.tokens: TokenManager | None = None

    @property
    def conversation_url(self) -> str:
        return f"{self.config.base_url}/backend-api/conversation"

    # ===== Lifecycle =====

    async def start(self) -> None:
        page = await self.page_factory()
        tokens = TokenManager(page, self.credentials, self.config)
        try:
            await tokens.start()
        except BaseException:
            await page.close()
            raise
        self.page = page
        self.tokens = tokens
        logger.info("ChatGPT backend started")

    async def stop(self) -> None:
        if self.page is not None:
            await self.page.close()
        self.page = None
        self.tokens = None

    def _require_page(self) -> tuple[BrowserPage, TokenManager]:
        if self.page is None or self.tokens is None:
            raise RuntimeError("ChatGPT backend is not started")
        return self.page, self.tokens

    # ===== Conversations =====

    async def _open(self, options: ConversationOptions) -> Conversation:
        # The server assigns the id with the first answer
        return Conversation(
            self,
            model=options.model or self.config.model,
            expire=options.expire or self.default_expiry(),
        )

    def build_body(self, conversation: Conversation, request: AskRequest) -> dict:
        """Build the conversation request body for one exchange."""
        body: dict = {"action": request.action.value}
        if conversation.id is not None:
            body["conversation_id"] = conversation.id
        if request.action is not Action.CONTINUE:
            body["messages"] = [
                {
                    "id": request.user_id or new_id(),
                    "author": {"role": "user"},
                    "content": {"content_type": "text", "parts": [request.prompt]},
                }
            ]
        body["parent_message_id"] = request.parent
        body["model"] = conversation.model or self.config.model
        return body

    async def ask(self, conversation: Conversation, request: AskRequest) -> Exchange:
        body = self.build_body(conversation, request)
        data = await self._post(body)

        try:
            message = data["message"]
            answer_id = message["id"]
            text = message["content"]["parts"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(FailureKind.UNKNOWN, f"Malformed answer: {e!r}") from e

        user = None
        if "messages" in body:
            user = Message(body["messages"][0]["id"], Role.USER, request.prompt, parent=request.parent)
        return Exchange(
            user=user,
            answer=Message(answer_id, Role.MODEL, text, parent=user.id if user else request.parent),
            conversation_id=data.get("conversation_id") or conversation.id,
        )

    async def _post(self, body: dict) -> dict:
        """Send a request, refreshing the access token once if it was rejected."""
        page, tokens = self._require_page()
        token = await tokens.access_token()
        try:
            return await self._send(page, body, token)
        except LLMError as e:
            if e.kind is not FailureKind.UNAUTHORIZED:
                raise
            logger.info("ChatGPT access token rejected, refreshing")

        await tokens.invalidate()
        token = await tokens.refresh()
        return await self._send(page, body, token)

    async def _send(self, page: BrowserPage, body: dict, token: str) -> dict:
        return await post_conversation(
            page,
            self.conversation_url,
            body,
            token,
            timeout=self.config.response_timeout,
            poll_interval=self.config.poll_interval,
        )

    async def clear(self, conversation_id: str) -> None:
        """Delete the stored conversation and hide it on the server."""
        await super().clear(conversation_id)
        if self.page is None or self.tokens is None:
            return
        try:
            token = await self.tokens.access_token()
        except LLMError as e:
            logger.warning(f"Cannot hide ChatGPT conversation {conversation_id}: {e}")
            return
        status = await patch_conversation(
            self.page,
            f"{self.conversation_url}/{conversation_id}",
            {"is_visible": False},
            token,
        )
        if status != 200:
            logger.warning(f"Failed to hide ChatGPT conversation {conversation_id}: HTTP {status}")
