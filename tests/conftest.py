"""Shared fakes and fixtures: an in-memory backend, chat hub socket and browser page."""

import asyncio
import json

import pytest

from chatrelay.backends.base import BaseBackend
from chatrelay.backends.bing.framing import DELIMITER
from chatrelay.backends.chatgpt.stream import (
    ABORT_SCRIPT,
    DRAIN_SCRIPT,
    PATCH_SCRIPT,
    START_SCRIPT,
)
from chatrelay.backends.chatgpt.tokens import FETCH_SESSION_SCRIPT
from chatrelay.cache import MemoryCache
from chatrelay.conversation import (
    Action,
    Conversation,
    Exchange,
    Message,
    Role,
)


# ===== Backend =====


class FakeBackend(BaseBackend):
    """Backend answering every prompt locally.

    Answers are "answer to <prompt>". A continue answers with the id of the
    message it continues and appends " (continued)". Errors queued in
    ``failures`` are raised by the next asks, in order.
    """

    name = "fake"
    supported_actions = frozenset(Action)

    def __init__(self, conversations=None, conversation_config=None, *, assign_id=True):
        super().__init__(conversations or MemoryCache("fake"), conversation_config)
        self.assign_id = assign_id
        self.requests = []
        self.failures = []
        self.started = False
        self.stopped = False
        self._counter = 0

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def _open(self, options):
        self._counter += 1
        return Conversation(
            self,
            id=f"conv-{self._counter}" if self.assign_id else None,
            model=options.model or "fake-model",
            expire=options.expire or self.default_expiry(),
        )

    async def ask(self, conversation, request):
        self.requests.append(request)
        if self.failures:
            raise self.failures.pop(0)
        self._counter += 1
        n = self._counter

        if request.action is Action.CONTINUE:
            tip = conversation.messages[request.parent]
            return Exchange(answer=Message(tip.id, Role.MODEL, tip.text + " (continued)"))

        user_id = request.user_id or f"user-{n}"
        return Exchange(
            user=Message(user_id, Role.USER, request.prompt, parent=request.parent),
            answer=Message(f"answer-{n}", Role.MODEL, f"answer to {request.prompt}", parent=user_id),
            conversation_id=conversation.id or f"conv-{n}",
        )


class NextOnlyBackend(FakeBackend):
    name = "next-only"
    supported_actions = frozenset({Action.NEXT})


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def memory_cache():
    return MemoryCache("test")


# ===== Chat hub socket =====


def record(data: dict) -> str:
    """One framed chat hub record."""
    return json.dumps(data) + DELIMITER


def final_record(result="Success", text="Hello there", user_id="u-1", answer_id="a-1", message=None):
    """A type 2 record as sent at the end of an answer."""
    return record(
        {
            "type": 2,
            "invocationId": "0",
            "item": {
                "messages": [
                    {"author": "user", "messageId": user_id, "text": "prompt"},
                    {
                        "author": "bot",
                        "messageId": answer_id,
                        "suggestedResponses": [{"text": "Tell me more"}],
                        "adaptiveCards": [{"body": [{"type": "TextBlock", "text": text}]}],
                    },
                ],
                "result": {"value": result, "message": message},
            },
        }
    )


class FakeWebSocket:
    """Chat hub socket replaying scripted messages.

    The first scripted message answers the handshake (recv); the rest are
    delivered by iteration, ``delay`` seconds apart.
    """

    def __init__(self, messages, delay=0.0):
        self.incoming = list(messages)
        self.delay = delay
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    async def recv(self):
        return self.incoming.pop(0)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while self.incoming:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield self.incoming.pop(0)

    async def close(self):
        self.closed = True

    @property
    def sent_records(self):
        return [json.loads(s.rstrip(DELIMITER)) for s in self.sent]


class FakeConnect:
    """Replacement for websockets.connect handing out scripted sockets."""

    def __init__(self, *sockets):
        self.sockets = list(sockets)
        self.calls = []

    async def __call__(self, url, additional_headers=None):
        self.calls.append((url, additional_headers))
        return self.sockets.pop(0)


# ===== Browser page =====


def sse(data) -> str:
    """One event stream line."""
    if isinstance(data, str):
        return f"data: {data}\n\n"
    return f"data: {json.dumps(data)}\n\n"


def chatgpt_chunk(text="Hello", message_id="a-1", conversation_id="c-1") -> dict:
    return {
        "message": {
            "id": message_id,
            "author": {"role": "assistant"},
            "content": {"content_type": "text", "parts": [text]},
        },
        "conversation_id": conversation_id,
    }


class FakePage:
    """Browser page emulating the ChatGPT web client scripts.

    Queue responses with respond(); each in-page POST consumes one. Every
    drain delivers one chunk.
    """

    def __init__(self, session_cookie="session-1", access_token="token-1"):
        self.cookie_jar = []
        if session_cookie is not None:
            self.cookie_jar.append(
                {"name": "__Secure-next-auth.session-token", "value": session_cookie}
            )
        self.session = {"accessToken": access_token} if access_token else {}
        self.init_scripts = []
        self.visited = []
        self.waited = []
        self.set_cookies = []
        self.session_fetches = 0
        self.posts = []
        self.aborted = []
        self.patches = []
        self.patch_status = 200
        self.closed = False
        self._responses = []
        self._streams = {}

    def respond(self, status=200, chunks=(), done=True):
        self._responses.append({"status": status, "chunks": list(chunks), "done": done})

    async def goto(self, url):
        self.visited.append(url)

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def set_cookie(self, **cookie):
        self.set_cookies.append(cookie)

    async def cookies(self, *urls):
        return list(self.cookie_jar)

    async def wait_for_response(self, url, timeout=None):
        self.waited.append(url)

    async def close(self):
        self.closed = True

    async def evaluate(self, script, arg=None):
        if script == FETCH_SESSION_SCRIPT:
            self.session_fetches += 1
            return self.session
        if script == START_SCRIPT:
            response = self._responses.pop(0)
            self.posts.append({"body": json.loads(arg["body"]), "token": arg["token"], "url": arg["url"]})
            self._streams[arg["id"]] = response
            return response["status"]
        if script == DRAIN_SCRIPT:
            stream = self._streams.get(arg)
            if stream is None:
                return None
            chunks = stream["chunks"][:1]
            stream["chunks"] = stream["chunks"][1:]
            done = stream["done"] and not stream["chunks"]
            if done:
                del self._streams[arg]
            return {"chunks": chunks, "done": done, "error": None}
        if script == ABORT_SCRIPT:
            self.aborted.append(arg)
            self._streams.pop(arg, None)
            return None
        if script == PATCH_SCRIPT:
            self.patches.append({"url": arg["url"], "body": json.loads(arg["body"]), "token": arg["token"]})
            return self.patch_status
        raise AssertionError(f"Unexpected script: {script[:40]}")


@pytest.fixture
def page():
    return FakePage()
