"""
Reconnect Supervisor Tests
==========================

Tests for backoff, reconnect and resubmission.
"""

import asyncio
import random

import pytest

from conftest import FakeTransport, ScriptedSessions, slot_frame, wait_until
from geyser_stream.errors import AuthError, RetriesExhaustedError, TransportError
from geyser_stream.protocol.codec import encode_request
from geyser_stream.stream.builder import SubscriptionRequestBuilder
from geyser_stream.stream.supervisor import (
    BackoffPolicy,
    ReconnectSupervisor,
    SupervisorState,
)


NO_JITTER = BackoffPolicy(base_delay_ms=500, max_delay_ms=30_000, jitter_fraction=0.0)


async def _ignore(session, frame):
    return None


class TestBackoffPolicy:
    """Delay computation."""

    def test_exponential_sequence(self):
        assert [NO_JITTER.delay_ms(n) for n in range(5)] == [500, 1000, 2000, 4000, 8000]

    def test_delay_is_capped(self):
        policy = BackoffPolicy(base_delay_ms=500, max_delay_ms=3_000, jitter_fraction=0.0)

        assert policy.delay_ms(10) == 3_000

    def test_jitter_stays_within_fraction(self):
        policy = BackoffPolicy(base_delay_ms=1_000, jitter_fraction=0.1)
        rng = random.Random(7)

        for _ in range(50):
            assert 1_000 <= policy.delay_ms(0, rng) <= 1_100


class TestReconnect:
    """Session lifecycle across failures."""

    @pytest.mark.asyncio
    async def test_backoff_delays_double_until_cap(self, fake_sleep, slots_request):
        sessions = ScriptedSessions(fallback=TransportError("connection refused"))
        supervisor = ReconnectSupervisor(
            sessions,
            _ignore,
            backoff=BackoffPolicy(jitter_fraction=0.0, max_attempts=6),
            sleep=fake_sleep,
        )
        await supervisor.submit(slots_request)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await supervisor.run()

        assert fake_sleep.delays == [0.5, 1.0, 2.0, 4.0, 8.0]
        assert exc_info.value.attempts == 6
        assert sessions.calls == 6
        assert supervisor.state is SupervisorState.FAILED

    @pytest.mark.asyncio
    async def test_request_is_resent_unchanged_after_disconnect(self, fake_sleep, slots_request):
        first, second = FakeTransport([slot_frame(10)]), FakeTransport()
        sessions = ScriptedSessions(first, second)
        frames = []

        async def on_frame(session, frame):
            frames.append(frame)
            first.fail(TransportError("connection reset"))

        supervisor = ReconnectSupervisor(sessions, on_frame, backoff=NO_JITTER, sleep=fake_sleep)
        await supervisor.submit(slots_request)
        task = asyncio.create_task(supervisor.run())

        await wait_until(lambda: second.writes)
        await wait_until(lambda: supervisor.state is SupervisorState.CONNECTED)

        assert first.writes == second.writes == [encode_request(slots_request)]
        assert frames == [slot_frame(10)]
        assert first.closed
        assert fake_sleep.delays == [0.5]
        assert supervisor.reconnect_state().reconnect_count == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert supervisor.state is SupervisorState.CANCELLED
        assert second.closed

    @pytest.mark.asyncio
    async def test_failures_reset_after_successful_connect(self, fake_sleep, slots_request):
        third = FakeTransport()
        sessions = ScriptedSessions(
            TransportError("refused"),
            TransportError("refused"),
            third,
        )
        supervisor = ReconnectSupervisor(sessions, _ignore, backoff=NO_JITTER, sleep=fake_sleep)
        await supervisor.submit(slots_request)
        task = asyncio.create_task(supervisor.run())

        await wait_until(lambda: supervisor.state is SupervisorState.CONNECTED)
        assert fake_sleep.delays == [0.5, 1.0]

        third.fail(TransportError("reset"))
        await wait_until(lambda: len(fake_sleep.delays) == 3)
        assert fake_sleep.delays[-1] == 0.5

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_stream_timeout_triggers_reconnect(self, fake_sleep, slots_request):
        sessions = ScriptedSessions(keepalive_timeout=0.02)
        supervisor = ReconnectSupervisor(sessions, _ignore, backoff=NO_JITTER, sleep=fake_sleep)
        await supervisor.submit(slots_request)
        task = asyncio.create_task(supervisor.run())

        await wait_until(lambda: sessions.calls >= 2)

        assert "no frame received" in str(supervisor.last_error)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


class TestFatalErrors:
    """Errors that end the run."""

    @pytest.mark.asyncio
    async def test_auth_error_on_connect_is_not_retried(self, fake_sleep, slots_request):
        sessions = ScriptedSessions(AuthError("invalid x-token"))
        supervisor = ReconnectSupervisor(sessions, _ignore, backoff=NO_JITTER, sleep=fake_sleep)
        await supervisor.submit(slots_request)

        with pytest.raises(AuthError):
            await supervisor.run()

        assert sessions.calls == 1
        assert fake_sleep.delays == []
        assert supervisor.state is SupervisorState.FAILED

    @pytest.mark.asyncio
    async def test_auth_error_while_streaming(self, fake_sleep, slots_request):
        transport = FakeTransport()
        transport.fail(AuthError("token revoked"))
        supervisor = ReconnectSupervisor(
            ScriptedSessions(transport), _ignore, backoff=NO_JITTER, sleep=fake_sleep
        )
        await supervisor.submit(slots_request)

        with pytest.raises(AuthError):
            await supervisor.run()

        assert transport.closed
        assert supervisor.session is None

    @pytest.mark.asyncio
    async def test_retry_cap(self, fake_sleep, slots_request):
        supervisor = ReconnectSupervisor(
            ScriptedSessions(fallback=TransportError("refused")),
            _ignore,
            backoff=BackoffPolicy(jitter_fraction=0.0, max_attempts=3),
            sleep=fake_sleep,
        )
        await supervisor.submit(slots_request)

        with pytest.raises(RetriesExhaustedError):
            await supervisor.run()

        assert len(fake_sleep.delays) == 2
        assert isinstance(supervisor.last_error, RetriesExhaustedError)

    @pytest.mark.asyncio
    async def test_run_only_once(self, fake_sleep):
        supervisor = ReconnectSupervisor(
            ScriptedSessions(AuthError("no")), _ignore, sleep=fake_sleep
        )
        with pytest.raises(AuthError):
            await supervisor.run()

        with pytest.raises(RuntimeError):
            await supervisor.run()


class TestSubmit:
    """Subscription changes."""

    @pytest.mark.asyncio
    async def test_submit_while_connected_sends_immediately(self, fake_sleep, slots_request):
        transport = FakeTransport()
        supervisor = ReconnectSupervisor(
            ScriptedSessions(transport), _ignore, backoff=NO_JITTER, sleep=fake_sleep
        )
        await supervisor.submit(slots_request)
        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.connected)

        updated = (
            SubscriptionRequestBuilder.from_request(slots_request)
            .add_filter("blocks_meta", "meta", {})
            .build("confirmed")
        )
        await supervisor.submit(updated)

        assert transport.writes == [encode_request(slots_request), encode_request(updated)]
        assert supervisor.session.last_request == updated

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_transitions_are_reported(self, fake_sleep, slots_request):
        supervisor = ReconnectSupervisor(
            ScriptedSessions(TransportError("refused"), FakeTransport()),
            _ignore,
            backoff=NO_JITTER,
            sleep=fake_sleep,
        )
        seen = []
        supervisor.add_listener(lambda previous, current, error: seen.append(current))
        await supervisor.submit(slots_request)
        task = asyncio.create_task(supervisor.run())

        await wait_until(lambda: supervisor.connected)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert seen == [
            SupervisorState.RECONNECTING,
            SupervisorState.BACKOFF,
            SupervisorState.RECONNECTING,
            SupervisorState.CONNECTED,
            SupervisorState.CANCELLED,
        ]
