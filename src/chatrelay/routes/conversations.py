"""Provider and conversation routes."""

import logging
from typing import Awaitable, Callable

from fastapi import APIRouter, HTTPException

from ..conversation import Conversation, ConversationOptions, Expiry
from ..errors import DEFAULT_LOCALE, FailureKind, LLMError, describe
from ..models import AskBody, CreateConversationRequest, EditBody

logger = logging.getLogger(__name__)

router = APIRouter()

# HTTP status for each failure kind
HTTP_STATUS = {
    FailureKind.FORBIDDEN: 403,
    FailureKind.UNAUTHORIZED: 401,
    FailureKind.BUSY: 409,
    FailureKind.TOO_MANY_REQUESTS: 429,
    FailureKind.UNKNOWN: 502,
}

# These will be set by server.py during startup
_server_state: dict = {}


def configure_conversation_routes(*, get_registry, get_config) -> None:
    """Configure the conversation routes with server state dependencies.

    This avoids circular imports by having server.py inject dependencies
    at startup.
    """
    _server_state["get_registry"] = get_registry
    _server_state["get_config"] = get_config


def _locale() -> str:
    get_config = _server_state.get("get_config")
    if get_config is None:
        return DEFAULT_LOCALE
    return get_config().conversation.locale


def http_error(error: LLMError) -> HTTPException:
    """Translate a backend failure into an HTTP error."""
    return HTTPException(
        status_code=HTTP_STATUS.get(error.kind, 502),
        detail={"kind": error.kind.value, "message": describe(error, _locale())},
    )


async def run_exchange(operation: Callable[[], Awaitable]):
    """Await a backend operation, mapping its failures to HTTP errors."""
    try:
        return await operation()
    except LLMError as e:
        logger.warning(f"Backend failure: {e}")
        raise http_error(e)
    except NotImplementedError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def conversation_response(conversation: Conversation) -> dict:
    data = conversation.to_dict()
    data["provider"] = conversation.backend.name
    return data


def exchange_response(conversation: Conversation) -> dict:
    answer = conversation.latest
    return {
        "conversation": conversation_response(conversation),
        "answer": answer.to_dict() if answer else None,
    }


def _get_backend(provider: str | None):
    backend = _server_state["get_registry"]().get(provider)
    if backend is None:
        raise HTTPException(status_code=404, detail=f"Provider not found: {provider or 'default'}")
    return backend


async def _load(conversation_id: str, provider: str | None) -> Conversation:
    backend = _get_backend(provider)
    conversation = await run_exchange(lambda: backend.query(conversation_id))
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.get("/providers")
async def list_providers() -> dict:
    """List registered providers, default first."""
    registry = _server_state["get_registry"]()
    return {"providers": registry.names(), "default": registry.default_name}


@router.post("/conversations")
async def create_conversation(request: CreateConversationRequest) -> dict:
    """Create a conversation, seeded with the initial prompts."""
    backend = _get_backend(request.provider)
    config = _server_state["get_config"]()

    expire = None
    if request.ephemeral:
        expire = Expiry.ephemeral()
    elif request.expire is not None:
        expire = Expiry.after(request.expire)

    initial_prompts = request.initial_prompts
    if initial_prompts is None:
        initial_prompts = list(config.conversation.initial_prompts)

    options = ConversationOptions(
        model=request.model,
        expire=expire,
        initial_prompts=initial_prompts,
        provider=request.provider,
    )
    conversation = await run_exchange(lambda: backend.create(options))
    return conversation_response(conversation)


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, provider: str | None = None) -> dict:
    conversation = await _load(conversation_id, provider)
    return conversation_response(conversation)


@router.delete("/conversations/{conversation_id}")
async def clear_conversation(conversation_id: str, provider: str | None = None) -> dict:
    """Delete a conversation from storage and, where supported, the backend."""
    backend = _get_backend(provider)
    await run_exchange(lambda: backend.clear(conversation_id))
    return {"status": "cleared", "conversation_id": conversation_id}


@router.post("/conversations/{conversation_id}/ask")
async def ask(conversation_id: str, request: AskBody, provider: str | None = None) -> dict:
    prompt = request.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Prompt cannot be empty")
    conversation = await _load(conversation_id, provider)
    updated = await run_exchange(lambda: conversation.ask(prompt, request.parent))
    return exchange_response(updated)


@router.post("/conversations/{conversation_id}/retry")
async def retry(conversation_id: str, provider: str | None = None) -> dict:
    """Ask for another answer to the latest prompt."""
    conversation = await _load(conversation_id, provider)
    updated = await run_exchange(conversation.retry)
    return exchange_response(updated)


@router.post("/conversations/{conversation_id}/continue")
async def continue_answer(conversation_id: str, provider: str | None = None) -> dict:
    conversation = await _load(conversation_id, provider)
    updated = await run_exchange(conversation.continue_)
    return exchange_response(updated)


@router.post("/conversations/{conversation_id}/edit")
async def edit(conversation_id: str, request: EditBody, provider: str | None = None) -> dict:
    """Replace the latest prompt and answer it on a new branch."""
    prompt = request.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Prompt cannot be empty")
    conversation = await _load(conversation_id, provider)
    updated = await run_exchange(lambda: conversation.edit(prompt))
    return exchange_response(updated)
