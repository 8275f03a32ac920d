"""Mock completion provider for development and tests without API calls.

Produces canned replies that depend on the last user message and streams them
word by word, ending with a finish event carrying usage counts.
"""

import asyncio
import logging
import re
from typing import AsyncIterator

from chatline.services.completion import (
    CompletionEvent,
    CompletionFinish,
    CompletionRequest,
    TextDelta,
    Usage,
)
from chatline.tokens import TokenEstimator, default_estimator

logger = logging.getLogger(__name__)

GREETING_PATTERNS = [
    r"^(hi|hello|hey|greetings|good\s+(morning|afternoon|evening))[\s!.,]*$",
]


class MockCompletionProvider:
    """Provides predictable streamed completions."""

    def __init__(
        self,
        reply: str | None = None,
        delay: float = 0.0,
        estimator: TokenEstimator = default_estimator,
    ):
        self.reply = reply
        self.delay = delay
        self.estimator = estimator
        self.requests: list[CompletionRequest] = []

    @staticmethod
    def _last_user_message(request: CompletionRequest) -> str:
        for message in reversed(request.messages):
            if message.get("role") == "user":
                return message.get("content", "")
        return ""

    def _respond(self, prompt: str) -> str:
        if self.reply is not None:
            return self.reply
        for pattern in GREETING_PATTERNS:
            if re.search(pattern, prompt.strip(), re.IGNORECASE):
                return "Hello! How can I help you today?"
        truncated = prompt[:100] + "..." if len(prompt) > 100 else prompt
        return f"I understood your message. Here's my response to: {truncated}"

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionEvent]:
        self.requests.append(request)
        text = self._respond(self._last_user_message(request))
        logger.info(f"Mock completion for model {request.model}: {len(text)} characters")

        for word in re.findall(r"\S+\s*", text):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield TextDelta(text=word)

        prompt_tokens = sum(self.estimator.count(m.get("content", "")) for m in request.messages)
        completion_tokens = self.estimator.count(text)
        yield CompletionFinish(
            text=text,
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            finish_reason="stop",
        )
