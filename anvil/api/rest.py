"""REST API for the agent runtime.

Endpoints:
  POST   /conversations                            - Create a conversation
  GET    /conversations                            - List recent conversations
  GET    /conversations/{id}                       - Conversation with its context
  DELETE /conversations/{id}                       - Delete (cancels a running turn)
  POST   /conversations/{id}/turns                 - Run a turn, SSE stream of progress events
  POST   /conversations/{id}/cancel                - Cancel the running turn
  POST   /conversations/{id}/decisions/{decision}  - Answer a pending Confirm
  GET    /health                                   - Health check (DB connectivity)
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from anvil.api.sessions import ConversationNotFoundError, SessionManager, TurnInProgressError
from anvil.events import ConfirmChoice
from anvil.storage.database import Database

logger = logging.getLogger(__name__)


async def _json_body(request: Request) -> dict[str, Any] | None:
    """Parsed object body; {} for an empty body, None when malformed."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    sessions: SessionManager,
    database: Database,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def create_conversation(request: Request) -> JSONResponse:
        """POST /conversations - Create a conversation."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        conversation = await sessions.create(title=body.get("title"))
        return JSONResponse({"id": conversation.id, "title": conversation.title}, status_code=201)

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /conversations - Most recently updated first."""
        try:
            limit = int(request.query_params.get("limit", "50"))
        except ValueError:
            return JSONResponse({"error": "limit must be an integer"}, status_code=400)
        return JSONResponse({"conversations": await sessions.list_conversations(limit)})

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /conversations/{id} - Full conversation."""
        conversation_id = request.path_params["conversation_id"]
        try:
            conversation = await sessions.get(conversation_id)
        except ConversationNotFoundError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        return JSONResponse(
            {
                "id": conversation.id,
                "title": conversation.title,
                "running": sessions.is_running(conversation.id),
                "metrics": conversation.metrics.to_dict(),
                "context": conversation.context.to_dict() if conversation.context else None,
            }
        )

    async def delete_conversation(request: Request) -> JSONResponse:
        """DELETE /conversations/{id}."""
        conversation_id = request.path_params["conversation_id"]
        try:
            await sessions.delete(conversation_id)
        except ConversationNotFoundError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        return JSONResponse({"status": "deleted", "id": conversation_id})

    async def run_turn(request: Request) -> StreamingResponse:
        """POST /conversations/{id}/turns - SSE stream of ChatEvents."""
        conversation_id = request.path_params["conversation_id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        message = body.get("message")
        if not message or not isinstance(message, str):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        try:
            stream = await sessions.start_turn(conversation_id, message)
        except ConversationNotFoundError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except TurnInProgressError as e:
            return JSONResponse({"error": str(e)}, status_code=409)

        async def event_generator():
            async for event in stream:
                yield f"data: {json.dumps(event.to_dict())}\n\n"
            yield "data: [DONE]\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def cancel_turn(request: Request) -> JSONResponse:
        """POST /conversations/{id}/cancel."""
        conversation_id = request.path_params["conversation_id"]
        if not sessions.cancel(conversation_id):
            return JSONResponse({"error": "No running turn"}, status_code=404)
        return JSONResponse({"status": "cancelling", "id": conversation_id})

    async def resolve_decision(request: Request) -> JSONResponse:
        """POST /conversations/{id}/decisions/{decision_id} - body {"choice": ...}."""
        conversation_id = request.path_params["conversation_id"]
        decision_id = request.path_params["decision_id"]
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            choice = ConfirmChoice(body.get("choice"))
        except ValueError:
            valid = ", ".join(c.value for c in ConfirmChoice)
            return JSONResponse({"error": f"choice must be one of: {valid}"}, status_code=400)

        if not sessions.resolve(conversation_id, decision_id, choice):
            return JSONResponse({"error": "No pending decision with that id"}, status_code=404)
        return JSONResponse({"status": "resolved", "decision_id": decision_id, "choice": choice.value})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/conversations", create_conversation, methods=["POST"]),
        Route("/conversations", list_conversations, methods=["GET"]),
        Route("/conversations/{conversation_id}", get_conversation, methods=["GET"]),
        Route("/conversations/{conversation_id}", delete_conversation, methods=["DELETE"]),
        Route("/conversations/{conversation_id}/turns", run_turn, methods=["POST"]),
        Route("/conversations/{conversation_id}/cancel", cancel_turn, methods=["POST"]),
        Route("/conversations/{conversation_id}/decisions/{decision_id}", resolve_decision, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
