"""
Reconnect Supervisor
====================

Keeps a Subscribe stream alive across transport failures.

The supervisor opens a StreamSession, (re)sends the last subscription
request, and pumps frames to a handler until the session fails. Transport
failures lead to exponential backoff and a fresh session; credential
failures end the run.

State machine:
    IDLE -> RECONNECTING -> CONNECTED -> DISCONNECTED -> BACKOFF -> RECONNECTING ...
    RECONNECTING -> BACKOFF (open failed)
    any -> CANCELLED  (run task cancelled)
    any -> FAILED     (AuthError, retries exhausted, handler error)

Design Rules:
    - Delay = min(base * 2**n, cap) plus jitter in [0, jitter_fraction * delay];
      n counts consecutive failures and resets after a successful connect
    - max_attempts = 0 retries forever
    - The previous session is closed and detached before the next opens
    - The last submitted request is resent unchanged on every reconnect

Example:
    supervisor = ReconnectSupervisor(
        open_session=lambda: StreamSession.open(settings.endpoint),
        on_frame=handle_frame,
        backoff=BackoffPolicy(base_delay_ms=500, max_delay_ms=30_000),
    )
    await supervisor.submit(request)
    task = asyncio.create_task(supervisor.run())
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from geyser_stream.errors import (
    AuthError,
    GeyserStreamError,
    RetriesExhaustedError,
    TransportError,
)
from geyser_stream.models.subscription import SubscriptionRequest
from geyser_stream.stream.session import StreamSession


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Awaitable[StreamSession]]
FrameHandler = Callable[[StreamSession, bytes], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class SupervisorState(str, Enum):
    """Lifecycle states of a ReconnectSupervisor."""

    IDLE = "idle"
    RECONNECTING = "reconnecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    BACKOFF = "backoff"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SupervisorState.CANCELLED, SupervisorState.FAILED)


TransitionListener = Callable[
    [SupervisorState, SupervisorState, Optional[BaseException]], None
]


@dataclass
class BackoffPolicy:
    """
    Exponential reconnect backoff.

    Attributes:
        base_delay_ms: Delay after the first failure
        max_delay_ms: Cap on the exponential part
        jitter_fraction: Extra random delay, as a fraction of the delay
        max_attempts: Consecutive failures before giving up (0 = unlimited)
    """

    base_delay_ms: int = 500
    max_delay_ms: int = 30_000
    jitter_fraction: float = 0.1
    max_attempts: int = 0

    def delay_ms(self, failures: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay before the next attempt.

        Args:
            failures: Consecutive failures before this one (0 for the first)
            rng: Random source for jitter
        """
        delay = min(self.base_delay_ms * (2 ** failures), self.max_delay_ms)
        if self.jitter_fraction > 0:
            delay += (rng or random).uniform(0, self.jitter_fraction * delay)
        return delay


@dataclass
class ReconnectState:
    """Snapshot of the supervisor's reconnect bookkeeping."""

    state: SupervisorState
    attempt: int
    delay_ms: float
    last_error: Optional[str]
    reconnect_count: int

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "attempt": self.attempt,
            "delay_ms": self.delay_ms,
            "last_error": self.last_error,
            "reconnect_count": self.reconnect_count,
        }


class ReconnectSupervisor:
    """
    Owns the session lifecycle and the reader loop.

    Attributes:
        backoff: Backoff policy
        last_request: Subscription re-driven on every (re)connect
    """

    def __init__(
        self,
        open_session: SessionFactory,
        on_frame: FrameHandler,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Args:
            open_session: Coroutine factory returning a new StreamSession
            on_frame: Called with (session, frame) for every inbound frame
            backoff: Backoff policy (defaults if None)
            sleep: Coroutine used to wait out the backoff delay
            rng: Random source for jitter
        """
        self.backoff = backoff or BackoffPolicy()
        self.last_request: Optional[SubscriptionRequest] = None

        self._open_session = open_session
        self._on_frame = on_frame
        self._sleep = sleep
        self._rng = rng

        self._state = SupervisorState.IDLE
        self._session: Optional[StreamSession] = None
        self._listeners: List[TransitionListener] = []
        self._failures: int = 0
        self._delay_ms: float = 0.0
        self._last_error: Optional[BaseException] = None
        self._connects: int = 0

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def session(self) -> Optional[StreamSession]:
        """Currently attached session, if any."""
        return self._session

    @property
    def connected(self) -> bool:
        return self._state is SupervisorState.CONNECTED

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    def reconnect_state(self) -> ReconnectState:
        return ReconnectState(
            state=self._state,
            attempt=self._failures,
            delay_ms=self._delay_ms,
            last_error=str(self._last_error) if self._last_error else None,
            reconnect_count=max(0, self._connects - 1),
        )

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback for every state transition."""
        self._listeners.append(listener)

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    async def submit(self, request: SubscriptionRequest) -> None:
        """
        Make `request` the active subscription.

        Sent immediately when connected; otherwise it is sent as soon as the
        next session opens.

        Raises:
            AuthError: Credentials rejected while sending
        """
        self.last_request = request
        session = self._session
        if session is None or self._state is not SupervisorState.CONNECTED:
            logger.debug("Subscription stored, will be sent on connect")
            return
        try:
            await session.send(request)
        except AuthError:
            raise
        except TransportError as e:
            # The reader sees the same failure and reconnects with this request
            logger.warning(f"Subscription send failed, will resend on reconnect: {e}")

    # -------------------------------------------------------------------------
    # Run loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """
        Connect and pump frames until cancelled or a fatal error occurs.

        Raises:
            AuthError: Credentials rejected
            RetriesExhaustedError: max_attempts consecutive failures
            asyncio.CancelledError: Run task cancelled
        """
        if self._state is not SupervisorState.IDLE:
            raise RuntimeError(f"supervisor cannot run from state {self._state.value}")

        logger.info("ReconnectSupervisor starting")
        try:
            await self._run_loop()
        except asyncio.CancelledError:
            self._transition(SupervisorState.CANCELLED)
            raise
        except Exception as e:
            self._last_error = e
            if self._state is not SupervisorState.FAILED:
                self._transition(SupervisorState.FAILED, e)
            if isinstance(e, GeyserStreamError):
                logger.error(f"ReconnectSupervisor failed: {e}")
            else:
                logger.exception("ReconnectSupervisor failed with unexpected error")
            raise
        finally:
            await self._detach()
            logger.info(f"ReconnectSupervisor stopped ({self._state.value})")

    async def _run_loop(self) -> None:
        while True:
            self._transition(SupervisorState.RECONNECTING)
            try:
                session = await self._open_session()
                self._session = session
                await self._drive_request(session)
            except AuthError:
                raise
            except TransportError as e:
                logger.warning(f"Connect failed: {e}")
                await self._detach()
                await self._backoff(e)
                continue

            self._failures = 0
            self._connects += 1
            self._transition(SupervisorState.CONNECTED)

            try:
                async for frame in session.frames():
                    await self._on_frame(session, frame)
            except AuthError:
                raise
            except TransportError as e:
                self._transition(SupervisorState.DISCONNECTED, e)
                await self._detach()
                await self._backoff(e)

    async def _drive_request(self, session: StreamSession) -> None:
        # Loop in case submit() replaced the request while we were sending
        while True:
            request = self.last_request
            if request is None:
                return
            await session.send(request)
            if self.last_request is request:
                return

    async def _backoff(self, error: TransportError) -> None:
        self._failures += 1
        self._last_error = error

        cap = self.backoff.max_attempts
        if cap > 0 and self._failures >= cap:
            exhausted = RetriesExhaustedError(
                f"giving up after {self._failures} attempts: {error}",
                attempts=self._failures,
            )
            self._transition(SupervisorState.FAILED, exhausted)
            raise exhausted from error

        self._delay_ms = self.backoff.delay_ms(self._failures - 1, self._rng)
        self._transition(SupervisorState.BACKOFF, error)
        logger.info(
            f"Reconnecting in {self._delay_ms / 1000.0:.2f}s "
            f"(attempt {self._failures})"
        )
        await self._sleep(self._delay_ms / 1000.0)

    async def _detach(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    def _transition(
        self,
        new: SupervisorState,
        error: Optional[BaseException] = None,
    ) -> None:
        previous, self._state = self._state, new
        if error is not None:
            logger.info(f"Supervisor {previous.value} -> {new.value}: {error}")
        else:
            logger.info(f"Supervisor {previous.value} -> {new.value}")
        for listener in list(self._listeners):
            try:
                listener(previous, new, error)
            except Exception:
                logger.exception("Supervisor transition listener failed")
