"""Server-Sent Events encoding for streamed completions."""

import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator

from fastapi.responses import StreamingResponse

from chatline.errors import ChatlineError
from chatline.services.completion import CompletionEvent, CompletionFinish, TextDelta

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """SSE event types."""

    DELTA = "delta"
    DONE = "done"
    ERROR = "error"


@dataclass
class SSEEvent:
    """An SSE event to send to clients."""

    event: str
    data: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def encode(self) -> str:
        """Encode as SSE format."""
        lines = [
            f"id: {self.id}",
            f"event: {self.event}",
            f"data: {json.dumps(self.data)}",
            "",  # Empty line to end the event
        ]
        return "\n".join(lines) + "\n"


def encode_completion_event(event: CompletionEvent, conversation_id: str) -> str:
    if isinstance(event, TextDelta):
        return SSEEvent(event=EventType.DELTA.value, data={"text": event.text}).encode()
    if isinstance(event, CompletionFinish):
        return SSEEvent(
            event=EventType.DONE.value,
            data={
                "conversation_id": conversation_id,
                "finish_reason": event.finish_reason,
                "usage": {
                    "prompt_tokens": event.usage.prompt_tokens,
                    "completion_tokens": event.usage.completion_tokens,
                    "total_tokens": event.usage.total_tokens,
                },
            },
        ).encode()
    raise TypeError(f"Unknown completion event: {event!r}")


async def completion_stream(
    first: CompletionEvent,
    events: AsyncGenerator[CompletionEvent, None],
    conversation_id: str,
) -> AsyncGenerator[str, None]:
    """Encode a completion as SSE, starting from an already received first event.

    A failure mid-stream ends the stream after a best-effort error event.
    """
    try:
        yield encode_completion_event(first, conversation_id)
        async for event in events:
            yield encode_completion_event(event, conversation_id)
    except ChatlineError as e:
        logger.error(f"Completion stream for conversation {conversation_id} ended early: {e.code}")
        yield SSEEvent(event=EventType.ERROR.value, data=e.to_dict()).encode()
    finally:
        await events.aclose()


def create_sse_response(
    generator: AsyncGenerator[str, None], headers: dict[str, str] | None = None
) -> StreamingResponse:
    """Create an SSE StreamingResponse."""
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
            **(headers or {}),
        },
    )
