"""Tests for event streams read through the browser page."""

import json

import pytest

from chatrelay.backends.chatgpt.stream import (
    StreamAccumulator,
    check_status,
    patch_conversation,
    post_conversation,
)
from chatrelay.errors import FailureKind, LLMError

from conftest import FakePage, chatgpt_chunk, sse

URL = "https://chat.test/backend-api/conversation"


class TestStreamAccumulator:
    """Tests for StreamAccumulator."""

    def test_keeps_latest_chunk(self):
        acc = StreamAccumulator()
        acc.feed(sse({"n": 1}) + sse({"n": 2}))
        assert acc.latest == {"n": 2}
        assert not acc.done

    def test_done_sentinel_stops(self):
        """Chunks after [DONE] should be ignored."""
        acc = StreamAccumulator()
        acc.feed(sse({"n": 1}) + sse("[DONE]") + sse({"n": 2}))
        assert acc.done
        assert acc.finish() == {"n": 1}

    def test_malformed_chunks_skipped(self):
        acc = StreamAccumulator()
        acc.feed(sse({"n": 1}))
        acc.feed("data: {broken\n\n")
        acc.feed(": keep-alive comment\n")
        assert acc.latest == {"n": 1}

    def test_line_split_across_feeds(self):
        acc = StreamAccumulator()
        line = sse({"text": "joined"})
        acc.feed(line[:12])
        assert acc.latest is None
        acc.feed(line[12:])
        assert acc.latest == {"text": "joined"}

    def test_finish_flushes_unterminated_line(self):
        acc = StreamAccumulator()
        acc.feed('data: {"n": 3}')
        assert acc.latest is None
        assert acc.finish() == {"n": 3}

    def test_non_object_chunks_ignored(self):
        acc = StreamAccumulator()
        acc.feed(sse({"n": 1}) + "data: 42\n")
        assert acc.latest == {"n": 1}


class TestCheckStatus:
    """Tests for HTTP status classification."""

    def test_success(self):
        check_status(200)

    @pytest.mark.parametrize(
        "status,kind",
        [
            (401, FailureKind.UNAUTHORIZED),
            (403, FailureKind.FORBIDDEN),
            (409, FailureKind.BUSY),
            (429, FailureKind.TOO_MANY_REQUESTS),
            (500, FailureKind.UNKNOWN),
            (0, FailureKind.UNKNOWN),
        ],
    )
    def test_failures(self, status, kind):
        with pytest.raises(LLMError) as exc_info:
            check_status(status)
        assert exc_info.value.kind is kind

    def test_unknown_status_in_detail(self):
        with pytest.raises(LLMError) as exc_info:
            check_status(502)
        assert exc_info.value.detail == "HTTP 502"


class TestPostConversation:
    """Tests for post_conversation."""

    @pytest.mark.asyncio
    async def test_returns_last_chunk_before_done(self):
        page = FakePage()
        page.respond(
            chunks=[
                sse(chatgpt_chunk("Hel")),
                sse(chatgpt_chunk("Hello")),
                sse("[DONE]"),
            ]
        )
        result = await post_conversation(page, URL, {"action": "next"}, "tok", poll_interval=0)

        assert result["message"]["content"]["parts"] == ["Hello"]
        assert page.posts == [{"body": {"action": "next"}, "token": "tok", "url": URL}]

    @pytest.mark.asyncio
    async def test_stream_end_without_sentinel(self):
        page = FakePage()
        page.respond(chunks=[sse(chatgpt_chunk("Partial"))])
        result = await post_conversation(page, URL, {}, "tok", poll_interval=0)
        assert result["message"]["content"]["parts"] == ["Partial"]

    @pytest.mark.asyncio
    async def test_error_status(self):
        page = FakePage()
        page.respond(status=429)
        with pytest.raises(LLMError) as exc_info:
            await post_conversation(page, URL, {}, "tok", poll_interval=0)
        assert exc_info.value.kind is FailureKind.TOO_MANY_REQUESTS
        assert len(page.aborted) == 1

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        page = FakePage()
        page.respond(chunks=[sse("[DONE]")])
        with pytest.raises(LLMError) as exc_info:
            await post_conversation(page, URL, {}, "tok", poll_interval=0)
        assert exc_info.value.kind is FailureKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_timeout_uses_last_chunk(self):
        """A stream that never ends should yield its last chunk and abort the in-page request."""
        page = FakePage()
        page.respond(chunks=[sse(chatgpt_chunk("Hel")), sse(chatgpt_chunk("Hello"))], done=False)
        result = await post_conversation(page, URL, {}, "tok", timeout=0.05, poll_interval=0.005)

        assert result["message"]["content"]["parts"] == ["Hello"]
        assert len(page.aborted) == 1

    @pytest.mark.asyncio
    async def test_timeout_without_chunks(self):
        page = FakePage()
        page.respond(chunks=[], done=False)
        with pytest.raises(LLMError) as exc_info:
            await post_conversation(page, URL, {}, "tok", timeout=0.02, poll_interval=0.005)
        assert exc_info.value.kind is FailureKind.UNKNOWN
        assert "No answer within" in exc_info.value.detail
        assert len(page.aborted) == 1


class TestPatchConversation:
    """Tests for patch_conversation."""

    @pytest.mark.asyncio
    async def test_sends_body_and_token(self):
        page = FakePage()
        status = await patch_conversation(page, f"{URL}/c-1", {"is_visible": False}, "tok")
        assert status == 200
        assert page.patches == [{"url": f"{URL}/c-1", "body": {"is_visible": False}, "token": "tok"}]
        assert json.dumps(page.patches[0]["body"]) == '{"is_visible": false}'
