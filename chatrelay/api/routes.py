"""Provider, agent and conversation routes. Sending a message answers with an SSE stream."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ValidationError

from ..core.agent import Agent
from ..core.errors import RelayError
from ..core.events import CanonicalEvent
from ..core.models import StreamOptions
from ..logging_config import StreamTrace
from .sse import EventStreamResponse

log = logging.getLogger("chatrelay.server")

router = APIRouter()


class CreateConversationBody(BaseModel):
    provider: str | None = None
    model: str | None = None
    title: str | None = None
    working_directory: str | None = None
    agent_id: str | None = None


class SendMessageBody(BaseModel):
    prompt: str
    options: dict[str, Any] = {}


async def _single(event: CanonicalEvent) -> AsyncIterator[CanonicalEvent]:
    yield event


def _load_conversation(request: Request, conversation_id: str):
    try:
        return request.app.state.store.load(conversation_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Conversation not found")


def _load_agent(request: Request, agent_id: str) -> Agent:
    try:
        return Agent.load(agent_id, request.app.state.config)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Agent not found: {agent_id}")


@router.get("/providers")
async def list_providers(request: Request):
    return request.app.state.providers.describe()


@router.get("/agents")
async def list_agents(request: Request):
    return [a.config.model_dump() for a in Agent.list(request.app.state.config)]


@router.get("/conversations")
async def list_conversations(request: Request):
    conversations = sorted(request.app.state.store.list(), key=lambda c: c.updated_at, reverse=True)
    return [
        {
            "id": c.id,
            "title": c.title,
            "provider_type": c.provider_type,
            "model": c.model,
            "updated_at": c.updated_at.isoformat(),
        }
        for c in conversations
    ]


@router.post("/conversations")
async def create_conversation(body: CreateConversationBody, request: Request):
    config = request.app.state.config
    providers = request.app.state.providers

    agent = _load_agent(request, body.agent_id) if body.agent_id else None
    provider_type = body.provider or (agent and agent.config.provider_type) or config.default_provider
    if not providers.supports(provider_type):
        raise HTTPException(status_code=400, detail=f"Unknown provider: {provider_type}")
    catalog = providers.make(provider_type).catalog
    model = body.model or (agent and agent.config.model) or catalog.default_model
    if model not in catalog:
        raise HTTPException(status_code=400, detail=f"Unknown model for {provider_type}: {model}")

    conversation = request.app.state.store.create(
        provider_type=provider_type,
        model=model,
        title=body.title,
        working_directory=body.working_directory,
        agent_id=body.agent_id,
    )
    return conversation.model_dump(mode="json")


@router.get("/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, request: Request):
    return _load_conversation(request, conversation_id).model_dump(mode="json")


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, request: Request):
    _load_conversation(request, conversation_id)
    request.app.state.store.delete(conversation_id)
    StreamTrace(request.app.state.config.trace_dir, conversation_id).delete()
    return {"ok": True}


@router.post("/conversations/{conversation_id}/messages")
async def send_message(conversation_id: str, body: SendMessageBody, request: Request):
    state = request.app.state
    conversation = _load_conversation(request, conversation_id)

    try:
        options = StreamOptions.coerce(body.options)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))
    if conversation.agent_id:
        options = _load_agent(request, conversation.agent_id).apply(options)

    debug = state.config.debug
    try:
        provider = state.providers.make(conversation.provider_type)
        turn = await state.stream_handler.stream(conversation, provider, body.prompt, options)
    except RelayError as e:
        # Contract failure: nothing streamed yet, answer with a single error frame
        log.warning("Message rejected  id=%s error_type=%s error=%s", conversation_id, e.error_type, e.message)
        return EventStreamResponse(_single(e.to_event()), debug=debug)

    return EventStreamResponse(turn, debug=debug)
