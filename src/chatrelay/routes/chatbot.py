"""Shared chat conversation routes."""

import logging

from fastapi import APIRouter, HTTPException

from ..chatbot import ProviderUnavailable
from ..models import ChatBody
from .conversations import run_exchange

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat")

# These will be set by server.py during startup
_server_state: dict = {}


def configure_chatbot_routes(*, get_chatbot) -> None:
    """Configure the chat routes with the server's chat bot."""
    _server_state["get_chatbot"] = get_chatbot


def _chatbot():
    chatbot = _server_state["get_chatbot"]()
    if chatbot is None:
        raise HTTPException(status_code=404, detail="No provider available")
    return chatbot


@router.post("")
async def chat(request: ChatBody) -> dict:
    """Send a prompt to the shared conversation.

    With a user_id, the prompt continues that user's branch. Without one it
    is asked under the seeded base.
    """
    prompt = request.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Prompt cannot be empty")
    chatbot = _chatbot()

    async def exchange():
        try:
            if request.user_id is None:
                return await chatbot.ask(prompt)
            return await chatbot.chat(request.user_id, prompt)
        except ProviderUnavailable as e:
            raise HTTPException(status_code=404, detail=str(e))

    answer = await run_exchange(exchange)
    return {"answer": answer.to_dict()}


@router.delete("/users/{user_id}")
async def forget(user_id: str) -> dict:
    """Forget a user's branch."""
    await _chatbot().forget(user_id)
    return {"status": "forgotten", "user_id": user_id}


@router.post("/reset")
async def reset() -> dict:
    """Start a new shared conversation."""
    chatbot = _chatbot()

    async def exchange():
        try:
            return await chatbot.reset()
        except ProviderUnavailable as e:
            raise HTTPException(status_code=404, detail=str(e))

    conversation = await run_exchange(exchange)
    logger.info(f"Shared conversation reset to {conversation.id}")
    return {"status": "reset", "conversation_id": conversation.id}
