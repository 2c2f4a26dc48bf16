"""Branching conversation model.

A Conversation is a value. Every operation that changes it (ask, retry,
continue, edit) returns a fork and leaves the original untouched, so a caller
still holding the pre-ask conversation keeps observing its old state.

Forks are cheap: the message map of a fork is a ChainMap layer holding only
the messages the fork added or replaced, with lookups falling back to the
base conversation's layers.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import ChainMap
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .backends.protocol import LLMBackend

logger = logging.getLogger(__name__)

# A fork flattens its message layers once the chain gets this deep
MAX_OVERLAY_DEPTH = 32


def new_id() -> str:
    """Generate a message or parent id."""
    return str(uuid.uuid4())


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    MODEL = "model"
    SYSTEM = "system"


class Action(str, Enum):
    """What a backend is asked to produce."""

    NEXT = "next"
    VARIANT = "variant"
    CONTINUE = "continue"


@dataclass(frozen=True)
class Message:
    """An immutable node in a conversation's history."""

    id: str
    role: Role
    text: str
    parent: str | None = None
    children: tuple[str, ...] = ()

    def with_child(self, child_id: str) -> Message:
        """Return a copy with child_id appended to children (exactly once)."""
        if child_id in self.children:
            return self
        return replace(self, children=self.children + (child_id,))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "parent": self.parent,
            "children": list(self.children),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        return cls(
            id=data["id"],
            role=Role(data["role"]),
            text=data.get("text", ""),
            parent=data.get("parent"),
            children=tuple(data.get("children") or ()),
        )


class ExpiryKind(str, Enum):
    PERMANENT = "permanent"
    EPHEMERAL = "ephemeral"
    TIMED = "timed"


@dataclass(frozen=True)
class Expiry:
    """How long a conversation is kept.

    permanent: persisted without a TTL.
    ephemeral: never persisted.
    timed: persisted until ``deadline`` (epoch seconds).
    """

    kind: ExpiryKind = ExpiryKind.PERMANENT
    deadline: float | None = None

    def __post_init__(self):
        if self.kind is ExpiryKind.TIMED and self.deadline is None:
            raise ValueError("A timed expiry needs a deadline")

    @classmethod
    def permanent(cls) -> Expiry:
        return cls(ExpiryKind.PERMANENT)

    @classmethod
    def ephemeral(cls) -> Expiry:
        return cls(ExpiryKind.EPHEMERAL)

    @classmethod
    def timed(cls, deadline: float) -> Expiry:
        return cls(ExpiryKind.TIMED, float(deadline))

    @classmethod
    def after(cls, seconds: float, now: float | None = None) -> Expiry:
        """A timed expiry ``seconds`` from now."""
        if now is None:
            now = time.time()
        return cls.timed(now + seconds)

    @property
    def persistent(self) -> bool:
        return self.kind is not ExpiryKind.EPHEMERAL

    def ttl(self, now: float | None = None) -> float | None:
        """Seconds left before expiry, or None if it never expires."""
        if self.kind is not ExpiryKind.TIMED:
            return None
        if now is None:
            now = time.time()
        return max(0.0, self.deadline - now)

    def is_expired(self, now: float | None = None) -> bool:
        return self.kind is ExpiryKind.TIMED and self.ttl(now) == 0.0

    def to_json(self) -> float | str | None:
        if self.kind is ExpiryKind.TIMED:
            return self.deadline
        if self.kind is ExpiryKind.EPHEMERAL:
            return ExpiryKind.EPHEMERAL.value
        return None

    @classmethod
    def from_json(cls, value: Any) -> Expiry:
        if value is None:
            return cls.permanent()
        if value == ExpiryKind.EPHEMERAL.value:
            return cls.ephemeral()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return cls.timed(value)
        raise ValueError(f"Invalid expiry: {value!r}")


@dataclass
class ConversationOptions:
    """Options for creating a conversation."""

    model: str | None = None
    expire: Expiry | None = None  # None = the backend's configured default
    initial_prompts: list[str] = field(default_factory=list)
    provider: str | None = None


@dataclass(frozen=True)
class AskRequest:
    """A single request handed to a backend."""

    prompt: str
    parent: str
    action: Action = Action.NEXT
    user_id: str | None = None  # reuse this user message id (variant)


@dataclass(frozen=True)
class Exchange:
    """What a backend produced for one request."""

    answer: Message
    user: Message | None = None
    conversation_id: str | None = None
    state: Any = None  # updated backend session state, None = unchanged


@dataclass(frozen=True)
class ConversationRecord:
    """Raw persisted snapshot of a conversation.

    Holds no backend session secrets and no behaviour; the owning backend
    turns a record back into a live Conversation.
    """

    id: str | None
    model: str | None = None
    latest_id: str | None = None
    expire: Expiry = field(default_factory=Expiry.permanent)
    messages: Mapping[str, Message] = field(default_factory=dict)
    root_parent: str | None = None  # wire parent sent with the first prompt

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "expire": self.expire.to_json(),
            "latestId": self.latest_id,
            "model": self.model,
            "messages": {mid: m.to_dict() for mid, m in self.messages.items()},
            "rootParent": self.root_parent,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ConversationRecord:
        messages = {
            mid: Message.from_dict(m) for mid, m in (data.get("messages") or {}).items()
        }
        return cls(
            id=data.get("id"),
            model=data.get("model"),
            latest_id=data.get("latestId"),
            expire=Expiry.from_json(data.get("expire")),
            messages=messages,
            root_parent=data.get("rootParent"),
        )


class Conversation:
    """A live conversation bound to the backend that answers it."""

    def __init__(
        self,
        backend: LLMBackend,
        *,
        id: str | None = None,
        model: str | None = None,
        latest_id: str | None = None,
        expire: Expiry | None = None,
        messages: Mapping[str, Message] | None = None,
        state: Any = None,
        root_parent: str | None = None,
    ):
        self._backend = backend
        self._root_parent = root_parent
        self._id = id
        self._model = model
        self._latest_id = latest_id
        self._expire = expire or Expiry.permanent()
        self._state = state
        if isinstance(messages, ChainMap):
            self._messages = messages
        else:
            self._messages = ChainMap(dict(messages or {}))

    @classmethod
    def from_record(
        cls, backend: LLMBackend, record: ConversationRecord, state: Any = None
    ) -> Conversation:
        return cls(
            backend,
            id=record.id,
            model=record.model,
            latest_id=record.latest_id,
            expire=record.expire,
            messages=record.messages,
            state=state,
            root_parent=record.root_parent,
        )

    # ===== Fields =====

    @property
    def backend(self) -> LLMBackend:
        return self._backend

    @property
    def id(self) -> str | None:
        """Backend-assigned id, None until the backend allocates one."""
        return self._id

    @property
    def model(self) -> str | None:
        return self._model

    @property
    def latest_id(self) -> str | None:
        """The conversation tip: default parent for the next prompt."""
        return self._latest_id

    @property
    def expire(self) -> Expiry:
        return self._expire

    @property
    def root_parent(self) -> str | None:
        """Parent id sent on the wire for prompts at the root of the tree."""
        return self._root_parent

    @property
    def state(self) -> Any:
        """Backend-owned session state (never persisted with the record)."""
        return self._state

    @property
    def messages(self) -> Mapping[str, Message]:
        return MappingProxyType(self._messages)

    @property
    def latest(self) -> Message | None:
        if self._latest_id is None:
            return None
        return self._messages.get(self._latest_id)

    def __repr__(self) -> str:
        return (
            f"Conversation(id={self._id!r}, backend={self._backend.name!r}, "
            f"latest_id={self._latest_id!r}, messages={len(self._messages)})"
        )

    # ===== Forking =====

    def fork(
        self, *, messages: Mapping[str, Message] | None = None, **changes: Any
    ) -> Conversation:
        """Derive a conversation overlaying ``changes`` on this one.

        Args:
            messages: Messages to add or replace in the fork only.
            **changes: Field overrides (id, model, latest_id, expire, state,
                root_parent).

        Returns:
            The fork. This conversation is not modified.
        """
        fields = {
            "id": self._id,
            "model": self._model,
            "latest_id": self._latest_id,
            "expire": self._expire,
            "state": self._state,
            "root_parent": self._root_parent,
        }
        unknown = set(changes) - set(fields)
        if unknown:
            raise TypeError(f"Cannot fork with unknown fields: {', '.join(sorted(unknown))}")
        fields.update(changes)

        layers = self._messages
        if len(layers.maps) >= MAX_OVERLAY_DEPTH:
            layers = ChainMap(dict(layers))
        overlay = layers.new_child(dict(messages)) if messages else ChainMap(*layers.maps)
        return Conversation(self._backend, messages=overlay, **fields)

    def snapshot(self) -> ConversationRecord:
        """The persisted form of this conversation."""
        return ConversationRecord(
            id=self._id,
            model=self._model,
            latest_id=self._latest_id,
            expire=self._expire,
            messages=dict(self._messages),
            root_parent=self._root_parent,
        )

    def to_dict(self) -> dict:
        return self.snapshot().to_dict()

    # ===== Operations =====

    async def ask(self, prompt: str, parent: str | None = None) -> Conversation:
        """Send a prompt and return the conversation extended by the reply.

        Args:
            prompt: Prompt text.
            parent: Message to answer under. Defaults to the current tip.
        """
        parent = parent or self._latest_id or self._root_parent or new_id()
        return await self._exchange(AskRequest(prompt=prompt, parent=parent))

    async def retry(self) -> Conversation:
        """Ask for a variant of the latest answer (a sibling branch)."""
        prompt = self._prompt_of_tip()
        return await self._exchange(
            AskRequest(
                prompt=prompt.text,
                parent=prompt.parent or self._root_parent or new_id(),
                action=Action.VARIANT,
                user_id=prompt.id,
            )
        )

    async def continue_(self) -> Conversation:
        """Ask the backend to resume a truncated answer."""
        tip = self._tip()
        return await self._exchange(AskRequest(prompt="", parent=tip.id, action=Action.CONTINUE))

    async def edit(self, prompt: str) -> Conversation:
        """Replace the prompt of the latest answer, as a sibling branch."""
        original = self._prompt_of_tip()
        parent = original.parent or self._root_parent or new_id()
        return await self._exchange(AskRequest(prompt=prompt, parent=parent))

    async def clear(self) -> None:
        """Delete this conversation from storage and from the backend."""
        if self._id is None:
            return
        await self._backend.clear(self._id)

    def _tip(self) -> Message:
        tip = self.latest
        if tip is None:
            raise ValueError("Conversation has no messages yet")
        return tip

    def _prompt_of_tip(self) -> Message:
        tip = self._tip()
        prompt = self._messages.get(tip.parent) if tip.parent else None
        if prompt is None or prompt.role is not Role.USER:
            raise ValueError("The latest message was not produced by a prompt")
        return prompt

    async def _exchange(self, request: AskRequest) -> Conversation:
        if request.action not in self._backend.supported_actions:
            raise NotImplementedError(
                f"{self._backend.name} does not support '{request.action.value}'"
            )
        exchange = await self._backend.ask(self, request)
        updated = self._commit(exchange, request.parent)
        await self._backend.save(updated)
        return updated

    def _commit(self, exchange: Exchange, parent: str) -> Conversation:
        """Fork this conversation with the messages of an exchange."""
        patch: dict[str, Message] = {}

        def lookup(message_id: str | None) -> Message | None:
            if message_id is None:
                return None
            return patch.get(message_id) or self._messages.get(message_id)

        def attach(message: Message, parent_id: str | None) -> None:
            existing = lookup(message.id)
            if existing is not None:
                # Same id answered again (continue): keep its place in the tree
                patch[message.id] = replace(existing, text=message.text)
                return
            owner = lookup(parent_id)
            patch[message.id] = replace(
                message, parent=owner.id if owner else None, children=()
            )
            if owner is not None:
                patch[owner.id] = owner.with_child(message.id)

        answer_parent = parent
        if exchange.user is not None:
            if lookup(exchange.user.id) is None:
                attach(exchange.user, parent)
            answer_parent = exchange.user.id
        attach(exchange.answer, answer_parent)

        root_parent = self._root_parent
        if root_parent is None and parent not in self._messages:
            root_parent = parent

        return self.fork(
            messages=patch,
            id=exchange.conversation_id or self._id,
            latest_id=exchange.answer.id,
            state=self._state if exchange.state is None else exchange.state,
            root_parent=root_parent,
        )


async def seed(conversation: Conversation, prompts: Iterable[str]) -> Conversation:
    """Ask each initial prompt in order, threading the tip forward.

    Blank prompts are skipped. Prompts are asked strictly one after another
    since each answer is the parent of the next prompt.
    """
    for prompt in prompts:
        if not prompt or not prompt.strip():
            continue
        conversation = await conversation.ask(prompt)
    logger.debug(f"Seeded conversation {conversation.id}")
    return conversation
