"""Unit tests for sliding-window rate limiting and persistence retries."""

import pytest
from chatline.errors import DatabaseError, NotFoundError, RateLimitedError
from chatline.services.rate_limit import MemoryCounterStore, RateLimiter, create_rate_limiter
from chatline.services.recorder import TurnRecorder


class TestRateLimiter:
    """Test RateLimiter functionality."""

    @pytest.mark.asyncio
    async def test_rejects_request_over_quota(self, fake_time):
        limiter = RateLimiter(MemoryCounterStore(time_fn=fake_time), limit=3, window_seconds=60)

        for _ in range(3):
            await limiter.check("user-1")
            fake_time.advance(1)

        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.check("user-1")
        assert exc_info.value.retry_after == 57

    @pytest.mark.asyncio
    async def test_recovers_after_window(self, fake_time):
        limiter = RateLimiter(MemoryCounterStore(time_fn=fake_time), limit=2, window_seconds=60)
        await limiter.check("user-1")
        await limiter.check("user-1")

        with pytest.raises(RateLimitedError):
            await limiter.check("user-1")

        fake_time.advance(61)
        await limiter.check("user-1")

    @pytest.mark.asyncio
    async def test_rejected_requests_are_not_counted(self, fake_time):
        limiter = RateLimiter(MemoryCounterStore(time_fn=fake_time), limit=1, window_seconds=60)
        await limiter.check("user-1")

        fake_time.advance(30)
        with pytest.raises(RateLimitedError):
            await limiter.check("user-1")

        fake_time.advance(31)
        await limiter.check("user-1")

    @pytest.mark.asyncio
    async def test_principals_are_independent(self, fake_time):
        limiter = RateLimiter(MemoryCounterStore(time_fn=fake_time), limit=1, window_seconds=60)

        await limiter.check("alice")
        await limiter.check("bob")

        with pytest.raises(RateLimitedError):
            await limiter.check("alice")

    @pytest.mark.asyncio
    async def test_idle_principals_are_forgotten(self, fake_time):
        store = MemoryCounterStore(time_fn=fake_time)
        limiter = RateLimiter(store, limit=1, window_seconds=60)
        await limiter.check("alice")
        assert "alice" in store._hits

        fake_time.advance(61)
        await limiter.check("bob")

        assert "alice" not in store._hits
        assert list(store._hits) == ["bob"]

    def test_memory_store_without_redis(self, config):
        limiter = create_rate_limiter(config)

        assert isinstance(limiter.store, MemoryCounterStore)
        assert limiter.limit == config.rate_limit_requests


class TestTurnRecorder:
    """Test TurnRecorder retry behaviour."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, sleep):
        recorder = TurnRecorder(max_attempts=3, backoff_seconds=0.5, sleep=sleep)
        calls = []

        async def persist():
            calls.append(1)

        succeeded = []
        recorder.record("turn-1", "conv-1", persist, on_success=lambda: succeeded.append(True))
        await recorder.drain()

        assert calls == [1]
        assert succeeded == [True]
        assert sleep.delays == []
        assert recorder.pending == 0

    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff(self, sleep):
        recorder = TurnRecorder(max_attempts=4, backoff_seconds=0.5, sleep=sleep)
        attempts = {"count": 0}

        async def persist():
            attempts["count"] += 1
            if attempts["count"] < 3:
                raise DatabaseError("connection reset")

        recorder.record("turn-1", "conv-1", persist)
        await recorder.drain()

        assert attempts["count"] == 3
        assert sleep.delays == [0.5, 1.0]
        assert recorder.failure_count == 0

    @pytest.mark.asyncio
    async def test_exhaustion_is_recorded(self, sleep):
        recorder = TurnRecorder(max_attempts=3, backoff_seconds=0.5, sleep=sleep)

        async def persist():
            raise DatabaseError("database unavailable")

        recorder.record("turn-9", "conv-9", persist)
        await recorder.drain()

        assert recorder.failure_count == 1
        failure = recorder.failures[0]
        assert failure.turn_id == "turn-9"
        assert failure.conversation_id == "conv-9"
        assert failure.attempts == 3
        assert "database unavailable" in failure.error
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_non_storage_errors_are_not_retried(self, sleep):
        recorder = TurnRecorder(max_attempts=5, backoff_seconds=0.5, sleep=sleep)

        async def persist():
            raise NotFoundError("Conversation not found.")

        recorder.record("turn-1", "conv-1", persist)
        await recorder.drain()

        assert recorder.failure_count == 1
        assert recorder.failures[0].attempts == 1
        assert sleep.delays == []
