"""FastAPI application for the chat backend."""

import json
import logging
from typing import Any

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatline.auth import get_principal, get_services
from chatline.config import settings
from chatline.errors import (
    ChatlineError,
    RateLimitedError,
    UpstreamError,
    ValidationError,
    field_errors,
    status_code_for,
)
from chatline.models import Attachment
from chatline.schemas import (
    ChatResponse,
    ConversationListResponse,
    ConversationResponse,
    HealthResponse,
    ImportRequest,
    ImportResponse,
    MessageListResponse,
    MessageResponse,
    MessageStatsResponse,
    MessageUpdateRequest,
    PreferencesResponse,
    ReplaceRequest,
    ReplaceResponse,
)
from chatline.services import Services, build_services
from chatline.services.completion import CompletionFinish, TextDelta
from chatline.sse import completion_stream, create_sse_response

logger = logging.getLogger(__name__)

RESPONSE_HEADERS = ["X-Conversation-ID", "X-Model-Used", "X-Is-New-Conversation", "X-Turn-ID"]


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def create_app(services: Services | None = None) -> FastAPI:
    """Build the application; ``services`` defaults to the configured ones at startup."""
    app = FastAPI(
        title="Chatline API",
        description="Streaming chat completions with persisted conversation history",
        version="0.1.0",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=RESPONSE_HEADERS,
    )

    @app.on_event("startup")
    async def startup_event():
        """Configure logging and connect storage."""
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        if app.state.services is None:
            app.state.services = build_services(settings)
        await app.state.services.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Finish pending persistence and release connections."""
        await app.state.services.stop()

    # ============= Errors =============

    @app.exception_handler(ChatlineError)
    async def chatline_error_handler(request: Request, exc: ChatlineError):
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "VALIDATION_ERROR",
                "message": "Invalid request.",
                "details": field_errors(exc.errors()),
            },
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"error": "INTERNAL_ERROR", "message": "An unexpected error occurred."},
        )

    # ============= Health =============

    @app.get("/health", response_model=HealthResponse)
    async def health(services: Services = Depends(get_services)):
        """Health check endpoint, including unrecoverable persistence failures."""
        return HealthResponse(
            status="healthy",
            persistence_failures=services.recorder.failure_count,
            pending_persistence=services.recorder.pending,
        )

    # ============= Chat =============

    @app.post("/chat")
    async def chat(
        request: Request,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        """Stream a completion, creating the conversation first when none is given."""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError("Malformed JSON body.", code="INVALID_JSON") from e

        orchestrator = services.orchestrator
        turn = await orchestrator.begin(principal, body)
        headers = {
            "X-Conversation-ID": turn.conversation_id,
            "X-Model-Used": turn.model,
            "X-Is-New-Conversation": "true" if turn.is_new_conversation else "false",
            "X-Turn-ID": turn.id,
        }

        events = orchestrator.stream(turn)
        # Failures before the first event are still reported as JSON errors
        try:
            first = await anext(events)
        except StopAsyncIteration as e:
            raise UpstreamError("Completion provider returned an empty stream.") from e
        except ChatlineError:
            await events.aclose()
            raise

        if turn.request.stream:
            return create_sse_response(
                completion_stream(first, events, turn.conversation_id), headers=headers
            )

        parts: list[str] = []
        finish: CompletionFinish | None = None
        event = first
        while True:
            if isinstance(event, TextDelta):
                parts.append(event.text)
            elif isinstance(event, CompletionFinish):
                finish = event
                break
            try:
                event = await anext(events)
            except StopAsyncIteration:
                break
        await events.aclose()

        if finish is None:
            raise UpstreamError("Completion stream ended before finishing.")
        response = ChatResponse(
            conversation_id=turn.conversation_id,
            turn_id=turn.id,
            model=turn.model,
            content=finish.text or "".join(parts),
            finish_reason=finish.finish_reason,
            is_new_conversation=turn.is_new_conversation,
        )
        return JSONResponse(content=response.model_dump(), headers=headers)

    # ============= Conversations =============

    @app.get("/conversations", response_model=ConversationListResponse)
    async def list_conversations(
        limit: int = 20,
        cursor: str | None = None,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        """List the caller's active conversations, most recent first."""
        page = await services.conversations.get_user_conversations(
            principal, limit=_clamp(limit, 1, 100), cursor=cursor
        )
        return ConversationListResponse(
            conversations=[ConversationResponse.from_conversation(c) for c in page.conversations],
            next_cursor=page.next_cursor,
            total=page.total,
        )

    @app.get("/conversations/{conversation_id}", response_model=ConversationResponse)
    async def get_conversation(
        conversation_id: str,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        conversation = await services.conversations.get_conversation(conversation_id, principal)
        return ConversationResponse.from_conversation(conversation)

    @app.post("/conversations/{conversation_id}/archive", response_model=ConversationResponse)
    async def archive_conversation(
        conversation_id: str,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        conversation = await services.conversations.archive_conversation(conversation_id, principal)
        return ConversationResponse.from_conversation(conversation)

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(
        conversation_id: str,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        await services.conversations.delete_conversation(conversation_id, principal)
        return {"status": "deleted", "id": conversation_id}

    @app.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
    async def get_conversation_messages(
        conversation_id: str,
        limit: int = 50,
        cursor: str | None = None,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        """Conversation metadata plus its live messages, oldest first."""
        conversation = await services.conversations.get_conversation(conversation_id, principal)
        page = await services.messages.get_messages(
            conversation_id, limit=_clamp(limit, 1, 100), cursor=cursor
        )
        return MessageListResponse(
            conversation=ConversationResponse.from_conversation(conversation),
            messages=[MessageResponse.from_message(m) for m in page.messages],
            next_cursor=page.next_cursor,
            total=page.total,
        )

    @app.put("/conversations/{conversation_id}/messages", response_model=ReplaceResponse)
    async def replace_conversation_messages(
        conversation_id: str,
        body: ReplaceRequest,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        """Replace the whole message list (after edits or regeneration)."""
        result = await services.replace.replace_messages(
            conversation_id,
            principal,
            [m.model_dump(exclude_none=True) for m in body.messages],
        )
        return ReplaceResponse(**result)

    @app.get("/conversations/{conversation_id}/stats", response_model=MessageStatsResponse)
    async def get_conversation_stats(
        conversation_id: str,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        await services.conversations.get_conversation(conversation_id, principal)
        stats = await services.messages.get_message_stats(conversation_id)
        return MessageStatsResponse(
            total_messages=stats.total_messages,
            total_tokens=stats.total_tokens,
            first_message_at=stats.first_message_at,
            last_message_at=stats.last_message_at,
        )

    # ============= Messages =============

    @app.patch("/messages/{message_id}", response_model=MessageResponse)
    async def update_message(
        message_id: str,
        body: MessageUpdateRequest,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        message = await services.messages.update_message(
            message_id,
            content=body.content,
            attachments=body.attachments,
            owner_external_id=principal,
        )
        return MessageResponse.from_message(message)

    @app.delete("/messages/{message_id}")
    async def delete_message(
        message_id: str,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        await services.messages.delete_message(message_id, owner_external_id=principal)
        return {"status": "deleted", "id": message_id}

    @app.post("/messages/{message_id}/attachments", response_model=MessageResponse)
    async def add_attachment(
        message_id: str,
        attachment: Attachment,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        message = await services.messages.add_attachment(
            message_id, attachment, owner_external_id=principal
        )
        return MessageResponse.from_message(message)

    @app.post("/messages/import", response_model=ImportResponse)
    async def import_messages(
        body: ImportRequest,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        """Bulk import into the caller's conversations; invalid items are skipped."""
        result = await services.messages.bulk_create_messages(
            body.messages, owner_external_id=principal
        )
        return ImportResponse(inserted=result.inserted, failed=result.failed)

    # ============= User =============

    @app.get("/user/preferences", response_model=PreferencesResponse)
    async def get_preferences(
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        preferences = await services.identity.get_preferences(principal)
        return PreferencesResponse(preferences=preferences)

    @app.patch("/user/preferences", response_model=PreferencesResponse)
    async def update_preferences(
        changes: dict[str, Any] = Body(...),
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ):
        preferences = await services.identity.update_preferences(principal, changes)
        return PreferencesResponse(preferences=preferences)

    return app


app = create_app()


# ============= Run =============


def run():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "chatline.api:app",
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    run()
