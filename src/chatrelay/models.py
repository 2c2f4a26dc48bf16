"""Pydantic models for API request schemas."""

from pydantic import BaseModel


class CreateConversationRequest(BaseModel):
    """Request body for creating a conversation."""

    provider: str | None = None  # Registry default when omitted
    model: str | None = None  # Backend default when omitted
    initial_prompts: list[str] | None = None  # Configured prompts when omitted
    expire: float | None = None  # Seconds to keep the conversation (optional)
    ephemeral: bool = False  # Never persist the conversation


class AskBody(BaseModel):
    """Request body for asking a prompt in a conversation."""

    prompt: str
    parent: str | None = None  # Message to answer under, defaults to the tip


class EditBody(BaseModel):
    """Request body for replacing the latest prompt."""

    prompt: str


class ChatBody(BaseModel):
    """Request body for the shared chat conversation."""

    prompt: str
    user_id: str | None = None  # Per-user branch; None asks from the base
