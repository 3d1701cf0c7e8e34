"""
FastAPI application exposing conversations and streamed turns over SSE.

    POST   /conversations                      create
    GET    /conversations                      list (optionally ?user_id=)
    GET    /conversations/{id}                 fetch
    DELETE /conversations/{id}                 delete (cascades to messages)
    GET    /conversations/{id}/messages        transcript
    POST   /conversations/{id}/messages        send a message, stream the turn
    POST   /conversations/{id}/stop            cancel the running turn
    DELETE /conversations/{id}/context         clear the working context
    GET    /health                             liveness + configured tools
    GET    /health/breakers                    circuit breaker statistics
    POST   /health/breakers/reset              force every breaker closed

The turn runs in its own task and feeds a StreamingResponder; the
response body drains the responder. If the client goes away before the
turn ends, the turn is cancelled at its next suspension point.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from agentloop import __version__
from agentloop.components import AgentComponents, AgentRuntime
from agentloop.config.logging import get_logger
from agentloop.config.settings import Settings, get_settings
from agentloop.errors import ConversationNotFoundError
from agentloop.server.schemas import CreateConversationRequest, SendMessageRequest

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable buffering in nginx
}


def create_app(settings: Settings | None = None, runtime: AgentRuntime | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to the global settings)
        runtime: A pre-built runtime, e.g. with a fake backend in tests. It is
            started and stopped with the application either way.
    """
    settings = settings or get_settings()
    runtime = runtime or AgentComponents(settings).create_runtime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        app.state.runtime = runtime
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(
        title="agentloop",
        description="LLM tool-calling orchestration engine with streamed turns",
        version=__version__,
        lifespan=lifespan,
    )

    def get_runtime(request: Request) -> AgentRuntime:
        """Dependency to get the agent runtime."""
        current = getattr(request.app.state, "runtime", None)
        if current is None:
            raise HTTPException(status_code=503, detail="Agent runtime not initialized")
        return current

    async def load_conversation(conversation_id: str, rt: AgentRuntime):
        try:
            return await rt.store.get_conversation(conversation_id)
        except ConversationNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health_check(rt: AgentRuntime = Depends(get_runtime)):
        return {
            "status": "healthy",
            "version": __version__,
            "model": settings.llm.model,
            "tools": rt.registry.names,
        }

    @app.get("/health/breakers")
    async def breaker_stats(rt: AgentRuntime = Depends(get_runtime)):
        return {"breakers": rt.breakers.stats()}

    @app.post("/health/breakers/reset")
    async def reset_breakers(rt: AgentRuntime = Depends(get_runtime)):
        rt.breakers.reset_all()
        logger.warning("All circuit breakers reset manually")
        return {"breakers": rt.breakers.stats()}

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    @app.post("/conversations", status_code=201)
    async def create_conversation(
        body: CreateConversationRequest, rt: AgentRuntime = Depends(get_runtime)
    ):
        conversation = await rt.store.create_conversation(body.user_id, title=body.title)
        return conversation.model_dump(mode="json")

    @app.get("/conversations")
    async def list_conversations(user_id: str | None = None, rt: AgentRuntime = Depends(get_runtime)):
        conversations = await rt.store.list_conversations(user_id)
        return {"conversations": [c.model_dump(mode="json") for c in conversations]}

    @app.get("/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str, rt: AgentRuntime = Depends(get_runtime)):
        conversation = await load_conversation(conversation_id, rt)
        return conversation.model_dump(mode="json")

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str, rt: AgentRuntime = Depends(get_runtime)):
        if rt.controller.is_busy(conversation_id):
            raise HTTPException(status_code=409, detail="A turn is in progress; stop it first")
        try:
            await rt.store.delete_conversation(conversation_id)
        except ConversationNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        rt.controller.locks.discard(conversation_id)
        return {"deleted": conversation_id}

    @app.delete("/conversations/{conversation_id}/context")
    async def clear_working_context(conversation_id: str, rt: AgentRuntime = Depends(get_runtime)):
        if rt.controller.is_busy(conversation_id):
            raise HTTPException(status_code=409, detail="A turn is in progress")
        conversation = await load_conversation(conversation_id, rt)
        conversation.clear_working_context()
        await rt.store.save_conversation(conversation)
        return conversation.model_dump(mode="json")

    @app.get("/conversations/{conversation_id}/messages")
    async def list_messages(conversation_id: str, rt: AgentRuntime = Depends(get_runtime)):
        try:
            messages = await rt.store.get_messages(conversation_id)
        except ConversationNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"messages": [m.model_dump(mode="json") for m in messages]}

    @app.post("/conversations/{conversation_id}/messages")
    async def send_message(
        conversation_id: str, body: SendMessageRequest, rt: AgentRuntime = Depends(get_runtime)
    ):
        """
        Send a message and stream the turn as Server-Sent Events.

        Returns:
            StreamingResponse with one SSE frame per StreamEvent
        """
        await load_conversation(conversation_id, rt)
        if rt.controller.is_busy(conversation_id):
            raise HTTPException(status_code=409, detail="A turn is already in progress")

        return StreamingResponse(
            stream_turn(rt, conversation_id, body),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/conversations/{conversation_id}/stop")
    async def stop_execution(conversation_id: str, rt: AgentRuntime = Depends(get_runtime)):
        stopped = rt.controller.cancel(conversation_id)
        return {"stopped": stopped}

    return app


async def stream_turn(
    runtime: AgentRuntime, conversation_id: str, body: SendMessageRequest
) -> AsyncIterator[str]:
    """Run a turn in the background and yield its events as SSE frames."""
    responder = runtime.components.create_responder()
    task = asyncio.create_task(
        runtime.controller.run_turn(
            conversation_id, body.content, responder, caller_id=body.caller_id, wait=False
        )
    )
    task.add_done_callback(_log_turn_failure)
    try:
        async for event in responder.events():
            yield event.to_sse()
    finally:
        if not task.done():
            # Client went away mid-turn
            runtime.controller.cancel(conversation_id)


def _log_turn_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Turn task failed: {error}")
