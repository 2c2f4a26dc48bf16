"""Failure kinds shared by every backend.

Backends never raise transport-specific exceptions to their callers. Every
failure is reported as an LLMError carrying one of a small set of kinds, so
the command layer can show a localized message without knowing which backend
produced it.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Why an exchange with a backend failed."""

    FORBIDDEN = "forbidden"
    UNAUTHORIZED = "unauthorized"
    BUSY = "busy"
    TOO_MANY_REQUESTS = "too-many-requests"
    UNKNOWN = "unknown"


class LLMError(Exception):
    """An exchange with a backend failed."""

    def __init__(self, kind: FailureKind, detail: str | None = None):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)

    @property
    def message_key(self) -> str:
        """Catalog key for this failure (e.g. 'error.llm.busy')."""
        return f"error.llm.{self.kind.value}"


MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "error.llm.forbidden": "The backend refused this session.",
        "error.llm.unauthorized": "Authorization failed, the credentials are invalid or expired.",
        "error.llm.busy": "The backend is still answering a previous message, try again later.",
        "error.llm.too-many-requests": "Too many requests, slow down and try again later.",
        "error.llm.unknown": "Unexpected response from the backend: {detail}",
    },
    "zh": {
        "error.llm.forbidden": "会话被拒绝。",
        "error.llm.unauthorized": "认证失败，凭据无效或已过期。",
        "error.llm.busy": "上一条消息仍在处理中，请稍后再试。",
        "error.llm.too-many-requests": "请求过于频繁，请稍后再试。",
        "error.llm.unknown": "未知错误：{detail}",
    },
}

DEFAULT_LOCALE = "en"


def describe(error: LLMError, locale: str = DEFAULT_LOCALE) -> str:
    """Render a user-facing message for a failure.

    Falls back to the default locale for unknown locales.
    """
    catalog = MESSAGES.get(locale) or MESSAGES[DEFAULT_LOCALE]
    template = catalog.get(error.message_key) or MESSAGES[DEFAULT_LOCALE][error.message_key]
    return template.format(detail=error.detail or "no details")
