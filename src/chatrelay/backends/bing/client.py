"""Chat hub protocol client.

One ask() is one socket session:

1. connect to the chat hub
2. send the protocol negotiation record and wait for its acknowledgement
3. send a keep-alive record now and every ``keepalive_interval`` seconds
4. send the request record
5. read records until the final one (type 2), ignoring the rest
6. classify its result code, then extract the prompt and answer

The keep-alive task is cancelled and the socket closed on every exit path.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
import websockets

from ...errors import FailureKind, LLMError
from .framing import RecordDecoder, serialize

logger = logging.getLogger(__name__)

HANDSHAKE = {"protocol": "json", "version": 1}
KEEPALIVE = {"type": 6}
REQUEST_RECORD = 4
FINAL_RECORD = 2

KEEPALIVE_INTERVAL = 20.0

RESULT_KINDS = {
    "Forbidden": FailureKind.FORBIDDEN,
    "UnauthorizedRequest": FailureKind.UNAUTHORIZED,
    "ProcessingMessage": FailureKind.BUSY,
}

BASE_OPTIONS = [
    "nlu_direct_response_filter",
    "deepleo",
    "disable_emoji_spoken_text",
    "responsible_ai_policy_235",
    "enablemm",
    "dv3sugg",
]

# Conversation tones and the option sets selecting them
TONE_OPTIONS = {
    "creative": ["h3imaginative", "clgalileo", "gencontentv3"],
    "balanced": ["galileo", "harmonyv3"],
    "precise": ["h3precise", "clgalileo"],
}

ALLOWED_MESSAGE_TYPES = [
    "Chat",
    "InternalSearchQuery",
    "InternalSearchResult",
    "Disengaged",
    "InternalLoaderMessage",
    "RenderCardRequest",
    "AdsQuery",
    "SemanticSerp",
    "GenerateContentQuery",
    "SearchQuery",
]


@dataclass(frozen=True)
class BingSession:
    """Credentials of one chat hub conversation.

    Captured when the conversation is created and kept beside the persisted
    conversation record, never inside it.
    """

    conversation_id: str
    client_id: str
    signature: str
    trace_id: str
    invocation_id: int = 0

    @property
    def is_start_of_session(self) -> bool:
        return self.invocation_id < 1

    def advanced(self) -> BingSession:
        """The session after one successful exchange."""
        return replace(self, invocation_id=self.invocation_id + 1)

    def to_dict(self) -> dict:
        return {
            "conversationId": self.conversation_id,
            "clientId": self.client_id,
            "signature": self.signature,
            "traceId": self.trace_id,
            "invocationId": self.invocation_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> BingSession:
        return cls(
            conversation_id=data["conversationId"],
            client_id=data["clientId"],
            signature=data["signature"],
            trace_id=data["traceId"],
            invocation_id=int(data.get("invocationId", 0)),
        )


@dataclass(frozen=True)
class BingReply:
    """Ids and answer text extracted from a final record."""

    user_id: str
    answer_id: str
    text: str


def check_result(result: dict | None) -> None:
    """Raise the failure matching a result code, unless it is Success.

    Raises:
        LLMError: For any result value other than 'Success'.
    """
    result = result or {}
    value = result.get("value")
    if value == "Success":
        return
    kind = RESULT_KINDS.get(value)
    if kind is None:
        raise LLMError(FailureKind.UNKNOWN, str(value))
    raise LLMError(kind, result.get("message"))


def build_request(session: BingSession, prompt: str, tone: str, timestamp: str | None = None) -> dict:
    """Build the request record for one prompt."""
    if timestamp is None:
        timestamp = datetime.now(timezone.utc).isoformat()
    return {
        "arguments": [
            {
                "source": "cib",
                "optionsSets": BASE_OPTIONS + TONE_OPTIONS.get(tone, TONE_OPTIONS["balanced"]),
                "allowedMessageTypes": ALLOWED_MESSAGE_TYPES,
                "sliceIds": [],
                "verbosity": "verbose",
                "traceId": session.trace_id,
                "isStartOfSession": session.is_start_of_session,
                "message": {
                    "locale": "en-US",
                    "market": "en-US",
                    "region": "US",
                    "timestamp": timestamp,
                    "author": "user",
                    "inputMethod": "Keyboard",
                    "text": prompt,
                    "messageType": "Chat",
                },
                "conversationSignature": session.signature,
                "participant": {"id": session.client_id},
                "conversationId": session.conversation_id,
            }
        ],
        "invocationId": str(session.invocation_id),
        "target": "chat",
        "type": REQUEST_RECORD,
    }


def extract_reply(item: dict) -> BingReply:
    """Find the prompt and the answer in the item of a final record.

    The answer is the message carrying suggested follow-ups; its text is the
    first text block of its first adaptive card.

    Raises:
        LLMError: If either message or the answer text is missing.
    """
    messages = item.get("messages") or []
    user = next((m for m in messages if m.get("author") == "user"), None)
    answer = next((m for m in messages if m.get("suggestedResponses") is not None), None)
    if user is None or answer is None:
        raise LLMError(FailureKind.UNKNOWN, "Final record has no answer")

    cards = answer.get("adaptiveCards") or [{}]
    text = next((block["text"] for block in cards[0].get("body", []) if "text" in block), None)
    if text is None:
        raise LLMError(FailureKind.UNKNOWN, "Answer has no text")

    return BingReply(user_id=user["messageId"], answer_id=answer["messageId"], text=text)


async def create_session(http: httpx.AsyncClient, url: str, cookies: str) -> BingSession:
    """Create a chat hub conversation.

    Args:
        http: HTTP client.
        url: Conversation creation endpoint.
        cookies: Cookie header of an authenticated browser session.

    Returns:
        Credentials of the new conversation.

    Raises:
        LLMError: If the request fails or the result code is not Success.
    """
    try:
        response = await http.get(url, headers={"cookie": cookies})
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as e:
        raise LLMError(FailureKind.UNKNOWN, f"HTTP {e.response.status_code}") from e
    except (httpx.HTTPError, json.JSONDecodeError) as e:
        raise LLMError(FailureKind.UNKNOWN, f"Cannot create conversation: {e}") from e

    check_result(data.get("result"))
    return BingSession(
        conversation_id=data["conversationId"],
        client_id=data["clientId"],
        signature=data["conversationSignature"],
        trace_id=uuid.uuid4().hex,
    )


class ChatHubClient:
    """Runs the chat hub socket exchange, one socket per ask."""

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
        connect: Callable[..., Any] | None = None,
    ):
        """Initialize the client.

        Args:
            url: Chat hub WebSocket URL.
            headers: Extra headers for the WebSocket handshake.
            keepalive_interval: Seconds between keep-alive records.
            connect: Replacement for websockets.connect (for tests).
        """
        self.url = url
        self.headers = headers or {}
        self.keepalive_interval = keepalive_interval
        self._connect = connect or websockets.connect

    async def ask(self, session: BingSession, prompt: str, tone: str) -> BingReply:
        """Send one prompt and wait for the final answer.

        Raises:
            LLMError: If the hub refuses the request or the exchange breaks off.
        """
        try:
            ws = await self._connect(self.url, additional_headers=self.headers)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise LLMError(FailureKind.UNKNOWN, f"Cannot connect to chat hub: {e}") from e

        keepalive: asyncio.Task | None = None
        try:
            await ws.send(serialize(HANDSHAKE))
            await ws.recv()

            await ws.send(serialize(KEEPALIVE))
            keepalive = asyncio.create_task(self._keep_alive(ws))

            await ws.send(serialize(build_request(session, prompt, tone)))
            logger.debug(
                f"Sent prompt to conversation {session.conversation_id} "
                f"(invocation {session.invocation_id})"
            )
            return await self._read_final(ws)
        except websockets.exceptions.ConnectionClosed as e:
            raise LLMError(FailureKind.UNKNOWN, f"Chat hub closed the connection: {e}") from e
        finally:
            if keepalive is not None:
                keepalive.cancel()
                with contextlib.suppress(
                    asyncio.CancelledError, websockets.exceptions.ConnectionClosed
                ):
                    await keepalive
            await ws.close()

    async def _keep_alive(self, ws) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            await ws.send(serialize(KEEPALIVE))

    async def _read_final(self, ws) -> BingReply:
        decoder = RecordDecoder()
        async for raw in ws:
            try:
                records = decoder.feed(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise LLMError(FailureKind.UNKNOWN, f"Malformed record: {e}") from e

            for record in records:
                if record.get("type") != FINAL_RECORD:
                    continue
                item = record.get("item") or {}
                check_result(item.get("result"))
                return extract_reply(item)

        raise LLMError(FailureKind.UNKNOWN, "Chat hub closed before answering")
