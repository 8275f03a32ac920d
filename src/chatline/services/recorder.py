"""Post-stream persistence of completed turns.

Delivering a completion and recording it are separate tasks. Once a stream
finishes, the turn's messages are written by a background task keyed by the
turn ID. Failed writes are retried with exponential backoff, and turns that
still cannot be written are kept in a bounded failure log that the health
endpoint reports.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from chatline.errors import ChatlineError, DatabaseError

logger = logging.getLogger(__name__)

MAX_RECORDED_FAILURES = 100


@dataclass
class PersistenceFailure:
    """A turn whose messages could not be written."""

    turn_id: str
    conversation_id: str
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TurnRecorder:
    """Runs persistence jobs with retry and tracks the ones that never succeed."""

    def __init__(
        self,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.failures: deque[PersistenceFailure] = deque(maxlen=MAX_RECORDED_FAILURES)
        self.failure_count = 0
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def record(
        self,
        turn_id: str,
        conversation_id: str,
        persist: Callable[[], Awaitable[None]],
        on_success: Callable[[], None] | None = None,
    ) -> asyncio.Task:
        """Schedule ``persist`` for a finished turn and return its task."""
        task = asyncio.create_task(
            self._run(turn_id, conversation_id, persist, on_success),
            name=f"persist-turn-{turn_id}",
        )
        self._tasks[turn_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(turn_id, None))
        return task

    async def _run(
        self,
        turn_id: str,
        conversation_id: str,
        persist: Callable[[], Awaitable[None]],
        on_success: Callable[[], None] | None,
    ) -> bool:
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                await persist()
            except ChatlineError as e:
                last_error = e
                if not isinstance(e, DatabaseError):
                    # Not a storage fault; another attempt would fail the same way
                    logger.error(f"Turn {turn_id} cannot be persisted: {e.code}: {e.message}")
                    break
                logger.warning(
                    f"Persisting turn {turn_id} failed: {e.message} (attempt {attempt}/{self.max_attempts})"
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Persisting turn {turn_id} failed: {e} (attempt {attempt}/{self.max_attempts})"
                )
            else:
                logger.info(f"Persisted turn {turn_id} in conversation {conversation_id}")
                if on_success is not None:
                    on_success()
                return True

            if attempt < self.max_attempts:
                backoff = self.backoff_seconds * 2 ** (attempt - 1)
                logger.info(f"Retrying turn {turn_id} persistence in {backoff:g}s...")
                await self.sleep(backoff)

        self.failure_count += 1
        self.failures.append(
            PersistenceFailure(
                turn_id=turn_id,
                conversation_id=conversation_id,
                error=str(last_error),
                attempts=attempt,
            )
        )
        logger.error(
            f"Giving up on turn {turn_id} in conversation {conversation_id} "
            f"after {attempt} attempts: {last_error}"
        )
        return False

    async def drain(self) -> None:
        """Wait for every scheduled persistence job to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
