"""
Geyser Stream Client
====================

Consumer-facing façade over the streaming core.

Pipeline per inbound frame:
    StreamSession -> UpdateDemultiplexer -> (ping reply) -> CommitmentGate
    -> UpdateChannel -> consumer

The client owns the active filter set; it changes only through
update_subscription() / modify_filters(), which rebuild the full request and
resend it on the live session.

Design Rules:
    - Updates reach the consumer in network order
    - The channel blocks when full; no update is dropped for backpressure
    - One cancellation path: close() cancels the run task, which closes the
      active session exactly once
    - Server pings are answered and, like pongs, kept from the consumer
      unless deliver_keepalive is set
    - A fatal error (AuthError, RetriesExhaustedError) ends iteration by
      raising it to the consumer after queued updates are drained

Example:
    client = GeyserStreamClient.from_settings(settings)
    await client.start(request)
    async for update in client:
        print(update.kind, update.slot)
"""

import asyncio
import logging
import random
from typing import Any, AsyncIterator, Callable, Optional

from geyser_stream.config import Settings
from geyser_stream.models.subscription import CommitmentLevel, SubscriptionRequest
from geyser_stream.models.update import Update, UpdateKind
from geyser_stream.stream.builder import SubscriptionRequestBuilder, builder_from_config
from geyser_stream.stream.channel import UpdateChannel
from geyser_stream.stream.demux import UpdateDemultiplexer
from geyser_stream.stream.gate import CommitmentGate
from geyser_stream.stream.session import Connector, StreamSession
from geyser_stream.stream.supervisor import (
    BackoffPolicy,
    ReconnectSupervisor,
    SessionFactory,
    Sleep,
    SupervisorState,
)
from geyser_stream.transport import GrpcSubscribeTransport


logger = logging.getLogger(__name__)

PING_REPLY_ID = 1
_KEEPALIVE_KINDS = (UpdateKind.PING, UpdateKind.PONG)


class ClientMetrics:
    """Counters for GeyserStreamClient observability."""

    __slots__ = (
        "updates_delivered",
        "pings_answered",
        "keepalives_seen",
        "unknown_discarded",
        "gate_dropped",
    )

    def __init__(self) -> None:
        self.updates_delivered: int = 0
        self.pings_answered: int = 0
        self.keepalives_seen: int = 0
        self.unknown_discarded: int = 0
        self.gate_dropped: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "updates_delivered": self.updates_delivered,
            "pings_answered": self.pings_answered,
            "keepalives_seen": self.keepalives_seen,
            "unknown_discarded": self.unknown_discarded,
            "gate_dropped": self.gate_dropped,
        }


def request_from_settings(settings: Settings) -> SubscriptionRequest:
    """Build the initial subscription from the ``subscription`` config section."""
    sub = settings.subscription
    builder = builder_from_config(sub.filters, sub.accounts_data_slice, sub.from_slot)
    return builder.build(sub.commitment)


class GeyserStreamClient:
    """
    Supervised Geyser subscription exposed as an async iterator of Updates.

    Attributes:
        demux: Frame classifier
        gate: Commitment gate
        channel: Bounded consumer channel
        supervisor: Session lifecycle owner
        metrics: Delivery counters
    """

    def __init__(
        self,
        open_session: SessionFactory,
        backoff: Optional[BackoffPolicy] = None,
        gate: Optional[CommitmentGate] = None,
        channel_maxsize: int = 1024,
        reply_to_ping: bool = True,
        deliver_unknown: bool = False,
        deliver_keepalive: bool = False,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Args:
            open_session: Coroutine factory returning a new StreamSession
            backoff: Reconnect backoff policy
            gate: Commitment gate (pass-through for every kind if None)
            channel_maxsize: Capacity of the consumer channel
            reply_to_ping: Answer server pings with a ping-only request
            deliver_unknown: Deliver UNKNOWN updates instead of only counting them
            deliver_keepalive: Deliver PING/PONG updates instead of only counting them
            sleep: Backoff sleep coroutine
            rng: Random source for backoff jitter
        """
        self.demux = UpdateDemultiplexer()
        self.gate = gate or CommitmentGate()
        self.channel = UpdateChannel(maxsize=channel_maxsize)
        self.reply_to_ping = reply_to_ping
        self.deliver_unknown = deliver_unknown
        self.deliver_keepalive = deliver_keepalive
        self.metrics = ClientMetrics()

        self.supervisor = ReconnectSupervisor(
            open_session=open_session,
            on_frame=self._handle_frame,
            backoff=backoff,
            sleep=sleep,
            rng=rng,
        )
        self.supervisor.add_listener(self._on_transition)
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        connect: Connector = GrpcSubscribeTransport.connect,
    ) -> "GeyserStreamClient":
        """Create a client wired from a Settings object."""
        endpoint = settings.endpoint
        stream = settings.stream

        async def open_session() -> StreamSession:
            return await StreamSession.open(
                endpoint,
                keepalive_timeout=stream.keepalive_timeout_seconds,
                outbound_maxsize=stream.outbound_maxsize,
                connect=connect,
            )

        return cls(
            open_session=open_session,
            backoff=BackoffPolicy(**settings.reconnect.model_dump()),
            gate=CommitmentGate(
                policies=settings.gate.policies,
                reset_on_reconnect=settings.gate.reset_on_reconnect,
            ),
            channel_maxsize=stream.channel_maxsize,
            reply_to_ping=stream.reply_to_ping,
            deliver_unknown=stream.deliver_unknown,
            deliver_keepalive=stream.deliver_keepalive,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self.supervisor.state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def subscription(self) -> Optional[SubscriptionRequest]:
        """Active subscription request."""
        return self.supervisor.last_request

    async def start(self, request: Optional[SubscriptionRequest] = None) -> None:
        """
        Start the supervised stream in a background task.

        Args:
            request: Initial subscription (may also be set later)
        """
        if self._task is not None:
            raise RuntimeError("client already started")
        if request is not None:
            await self.supervisor.submit(request)
        self._task = asyncio.create_task(self._run(), name="geyser-stream-supervisor")

    async def _run(self) -> None:
        try:
            await self.supervisor.run()
        except asyncio.CancelledError:
            self.channel.close()
            raise
        except Exception as e:
            # Surfaced to the consumer through the channel
            self.channel.close(e)
        else:
            self.channel.close()

    async def close(self) -> None:
        """Stop streaming and close the active session. Idempotent."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        self.channel.close()

    async def __aenter__(self) -> "GeyserStreamClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Subscription changes
    # -------------------------------------------------------------------------

    async def update_subscription(self, request: SubscriptionRequest) -> None:
        """Replace the whole subscription on the live session."""
        logger.info("Updating subscription")
        await self.supervisor.submit(request)

    async def modify_filters(
        self,
        change: Callable[[SubscriptionRequestBuilder], Any],
        commitment: Optional[CommitmentLevel] = None,
    ) -> SubscriptionRequest:
        """
        Rebuild the active request with `change` applied and resend it.

        Args:
            change: Mutates a builder seeded with the active filters
            commitment: New commitment (keeps the current one if None)

        Returns:
            The request that was submitted

        Raises:
            ValidationError: The change produced an invalid or empty request
        """
        current = self.supervisor.last_request
        if current is not None:
            builder = SubscriptionRequestBuilder.from_request(current)
            default_commitment = current.commitment
        else:
            builder = SubscriptionRequestBuilder()
            default_commitment = CommitmentLevel.PROCESSED

        change(builder)
        request = builder.build(commitment if commitment is not None else default_commitment)
        await self.update_subscription(request)
        return request

    # -------------------------------------------------------------------------
    # Consumption
    # -------------------------------------------------------------------------

    def __aiter__(self) -> AsyncIterator[Update]:
        return self.channel.__aiter__()

    async def updates(self) -> AsyncIterator[Update]:
        """Async generator over delivered updates."""
        async for update in self.channel:
            yield update

    async def _handle_frame(self, session: StreamSession, frame: bytes) -> None:
        update = self.demux.classify(frame)

        if update.kind in _KEEPALIVE_KINDS:
            self.metrics.keepalives_seen += 1
            if update.kind is UpdateKind.PING and self.reply_to_ping:
                await session.send_ping(PING_REPLY_ID)
                self.metrics.pings_answered += 1
            if not self.deliver_keepalive:
                return

        if update.kind is UpdateKind.UNKNOWN and not self.deliver_unknown:
            self.metrics.unknown_discarded += 1
            return

        if self.gate.admit(update) is None:
            self.metrics.gate_dropped += 1
            return

        await self.channel.put(update)
        self.metrics.updates_delivered += 1

    def _on_transition(
        self,
        previous: SupervisorState,
        current: SupervisorState,
        error: Optional[BaseException],
    ) -> None:
        if current is SupervisorState.CONNECTED:
            self.gate.on_new_session()

    def stats(self) -> dict:
        """Combined metrics of every pipeline stage."""
        session = self.supervisor.session
        return {
            "state": self.state.value,
            "reconnect": self.supervisor.reconnect_state().to_dict(),
            "session": session.metrics.to_dict() if session is not None else None,
            "demux": self.demux.metrics.to_dict(),
            "gate": self.gate.metrics.to_dict(),
            "channel": self.channel.metrics(),
            "client": self.metrics.to_dict(),
        }
