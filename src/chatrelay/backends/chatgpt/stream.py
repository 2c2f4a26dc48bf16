"""Event-stream requests run inside the browser page.

The request must come from the page itself, so the response body is read by
page script into a per-request buffer and drained from Python by polling.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import TYPE_CHECKING

from ...errors import FailureKind, LLMError

if TYPE_CHECKING:
    from ...browser import BrowserPage

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE = "[DONE]"

RESPONSE_TIMEOUT = 120.0
POLL_INTERVAL = 0.1

STATUS_KINDS = {
    401: FailureKind.UNAUTHORIZED,
    403: FailureKind.FORBIDDEN,
    409: FailureKind.BUSY,
    429: FailureKind.TOO_MANY_REQUESTS,
}

START_SCRIPT = """
async ({ id, url, body, token }) => {
  const streams = (window.__relayStreams = window.__relayStreams || {});
  const state = (streams[id] = {
    chunks: [], done: false, error: null, controller: new AbortController(),
  });
  try {
    const resp = await fetch(url, {
      method: 'POST',
      body,
      signal: state.controller.signal,
      headers: {
        authorization: `Bearer ${token}`,
        accept: 'text/event-stream',
        'content-type': 'application/json',
      },
    });
    if (!resp.ok || !resp.body) {
      state.done = true;
      return resp.status;
    }
    const reader = resp.body.getReader();
    const decoder = new TextDecoder();
    (async () => {
      try {
        while (true) {
          const { value, done } = await reader.read();
          if (done) break;
          state.chunks.push(decoder.decode(value, { stream: true }));
        }
      } catch (e) {
        state.error = String(e);
      }
      state.done = true;
    })();
    return resp.status;
  } catch (e) {
    state.error = String(e);
    state.done = true;
    return 0;
  }
}
"""

DRAIN_SCRIPT = """
(id) => {
  const streams = window.__relayStreams || {};
  const state = streams[id];
  if (!state) return null;
  const chunks = state.chunks.splice(0);
  if (state.done) delete streams[id];
  return { chunks, done: state.done, error: state.error };
}
"""

ABORT_SCRIPT = """
(id) => {
  const streams = window.__relayStreams || {};
  const state = streams[id];
  if (state) {
    state.controller.abort();
    delete streams[id];
  }
}
"""

PATCH_SCRIPT = """
async ({ url, body, token }) => {
  const resp = await fetch(url, {
    method: 'PATCH',
    body,
    headers: {
      authorization: `Bearer ${token}`,
      'content-type': 'application/json',
    },
  });
  return resp.status;
}
"""


class StreamAccumulator:
    """Collects ``data:`` lines of an event stream, keeping the latest chunk.

    Every chunk of a conversation stream carries the whole answer so far, so
    only the most recent well-formed one matters. Malformed chunks are
    skipped and ``data: [DONE]`` ends the stream.
    """

    def __init__(self):
        self.buffer = ""
        self.latest: dict | None = None
        self.done = False

    def feed(self, text: str) -> None:
        if self.done or not text:
            return
        self.buffer += text
        lines = self.buffer.split("\n")
        self.buffer = lines[-1]
        for line in lines[:-1]:
            self._handle(line)
            if self.done:
                self.buffer = ""
                return

    def finish(self) -> dict | None:
        """Flush the unterminated last line and return the latest chunk."""
        if self.buffer and not self.done:
            self._handle(self.buffer)
        self.buffer = ""
        return self.latest

    def _handle(self, line: str) -> None:
        line = line.strip()
        if not line.startswith(DATA_PREFIX):
            return
        payload = line[len(DATA_PREFIX):].strip()
        if payload == DONE:
            self.done = True
            return
        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed stream chunk: {payload[:80]}")
            return
        if isinstance(chunk, dict):
            self.latest = chunk


def check_status(status: int) -> None:
    """Raise the failure matching an HTTP status, unless it is a success.

    Raises:
        LLMError: For any non-2xx status.
    """
    if 200 <= status < 300:
        return
    kind = STATUS_KINDS.get(status)
    if kind is None:
        raise LLMError(FailureKind.UNKNOWN, f"HTTP {status}")
    raise LLMError(kind, f"HTTP {status}")


async def post_conversation(
    page: BrowserPage,
    url: str,
    body: dict,
    token: str,
    *,
    timeout: float = RESPONSE_TIMEOUT,
    poll_interval: float = POLL_INTERVAL,
) -> dict:
    """POST a conversation request from the page and read its event stream.

    Args:
        page: Browser page logged in to the site.
        url: Conversation endpoint.
        body: Request body.
        token: Bearer access token.
        timeout: Seconds to wait for the end of the stream.
        poll_interval: Seconds between drains of the page buffer.

    Returns:
        The last complete chunk, read until the end of the stream or the
        timeout, whichever comes first.

    Raises:
        LLMError: On an error status, or when no chunk arrived before the
            end of the stream or the timeout.
    """
    request_id = uuid.uuid4().hex
    status = await page.evaluate(
        START_SCRIPT,
        {"id": request_id, "url": url, "body": json.dumps(body), "token": token},
    )
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    accumulator = StreamAccumulator()
    error = None

    try:
        check_status(status)
        while True:
            batch = await page.evaluate(DRAIN_SCRIPT, request_id)
            if batch is None:
                break
            for chunk in batch.get("chunks") or []:
                accumulator.feed(chunk)
            error = batch.get("error")
            if accumulator.done or batch.get("done"):
                break
            if loop.time() >= deadline:
                logger.warning(f"No end of stream within {timeout:g}s")
                error = error or f"No answer within {timeout:g}s"
                break
            await asyncio.sleep(poll_interval)
    finally:
        # Stops the in-page request if it is still running
        await page.evaluate(ABORT_SCRIPT, request_id)

    result = accumulator.finish()
    if result is None:
        raise LLMError(FailureKind.UNKNOWN, error or "Empty response stream")
    return result


async def patch_conversation(page: BrowserPage, url: str, body: dict, token: str) -> int:
    """PATCH a conversation from the page and return the HTTP status."""
    return await page.evaluate(PATCH_SCRIPT, {"url": url, "body": json.dumps(body), "token": token})
