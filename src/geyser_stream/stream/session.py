"""
Stream Session
==============

One open bidirectional Subscribe call.

The session owns a writer task that drains a bounded outbound queue onto
the transport, and hands inbound frames to whoever calls next_frame().

Design Rules:
    - send() fully replaces the active subscription on the server;
      `last_request` is updated only once the request has been written
    - Ping-only requests never replace `last_request`
    - next_frame() raises StreamTimeout when nothing (not even a ping)
      arrives within the keepalive window
    - A server-side end of stream is a TransportError
    - close() is idempotent and releases the transport, the writer task and
      any queued requests exactly once
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

from geyser_stream.config import EndpointConfig
from geyser_stream.errors import GeyserStreamError, StreamTimeout, TransportError
from geyser_stream.models.subscription import SubscriptionRequest
from geyser_stream.protocol.codec import encode_ping, encode_request
from geyser_stream.transport import GrpcSubscribeTransport, SubscribeTransport


logger = logging.getLogger(__name__)

Connector = Callable[[EndpointConfig], Awaitable[SubscribeTransport]]
_Outbound = Tuple[bytes, Optional[SubscriptionRequest], "asyncio.Future[None]"]


class SessionMetrics:
    """Metrics for StreamSession observability."""

    __slots__ = (
        "frames_received",
        "requests_sent",
        "pings_sent",
        "opened_at",
        "last_frame_at",
    )

    def __init__(self) -> None:
        self.frames_received: int = 0
        self.requests_sent: int = 0
        self.pings_sent: int = 0
        self.opened_at: float = time.time()
        self.last_frame_at: Optional[float] = None

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "frames_received": self.frames_received,
            "requests_sent": self.requests_sent,
            "pings_sent": self.pings_sent,
            "opened_at": self.opened_at,
            "last_frame_at": self.last_frame_at,
        }


class StreamSession:
    """
    An open Subscribe stream.

    Attributes:
        keepalive_timeout: Seconds of silence tolerated by next_frame()
        last_request: Last subscription request written to the stream
        metrics: Operational metrics

    Example:
        session = await StreamSession.open(settings.endpoint)
        await session.send(request)
        try:
            async for frame in session.frames():
                handle(frame)
        finally:
            await session.close()
    """

    def __init__(
        self,
        transport: SubscribeTransport,
        keepalive_timeout: float = 30.0,
        outbound_maxsize: int = 16,
    ) -> None:
        """
        Wrap an already-open transport and start the writer task.

        Must be called from a running event loop; prefer open().
        """
        if keepalive_timeout <= 0:
            raise ValueError("keepalive_timeout must be > 0")

        self.keepalive_timeout = keepalive_timeout
        self.last_request: Optional[SubscriptionRequest] = None
        self.metrics = SessionMetrics()

        self._transport = transport
        self._outbound: asyncio.Queue[_Outbound] = asyncio.Queue(maxsize=outbound_maxsize)
        self._writer_error: Optional[GeyserStreamError] = None
        self._inflight: Optional[asyncio.Future] = None
        self._closing = False
        self._close_done = asyncio.Event()
        self._writer = asyncio.create_task(self._write_loop())

    @classmethod
    async def open(
        cls,
        endpoint: EndpointConfig,
        keepalive_timeout: float = 30.0,
        outbound_maxsize: int = 16,
        connect: Connector = GrpcSubscribeTransport.connect,
    ) -> "StreamSession":
        """
        Connect to the endpoint and open the Subscribe stream.

        Args:
            endpoint: URL, credentials and channel options
            keepalive_timeout: Seconds of silence before StreamTimeout
            outbound_maxsize: Capacity of the outbound request queue
            connect: Transport factory

        Raises:
            TransportError: Endpoint unreachable
            AuthError: Credentials rejected
        """
        transport = await connect(endpoint)
        logger.info(f"Stream session opened to {endpoint.url}")
        return cls(transport, keepalive_timeout=keepalive_timeout, outbound_maxsize=outbound_maxsize)

    @property
    def closed(self) -> bool:
        return self._closing

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def send(self, request: SubscriptionRequest) -> None:
        """
        Replace the server-side subscription with `request`.

        Returns once the request has been written to the stream.

        Raises:
            TransportError: Session closed or the write failed
        """
        await self._enqueue(encode_request(request), request)

    async def send_ping(self, ping_id: int = 1) -> None:
        """Write a ping-only request; the subscription is left unchanged."""
        await self._enqueue(encode_ping(ping_id), None)

    async def _enqueue(self, payload: bytes, request: Optional[SubscriptionRequest]) -> None:
        self._raise_if_unusable()
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        await self._outbound.put((payload, request, done))
        # A put that was blocked while close() or a write failure drained the
        # queue lands after the writer is gone
        if self._closing or self._writer_error is not None:
            self._fail_pending(self._writer_error or TransportError("stream session is closed"))
        await done

    async def _write_loop(self) -> None:
        while True:
            payload, request, done = await self._outbound.get()
            self._inflight = done
            try:
                await self._transport.write(payload)
            except Exception as e:
                error = e if isinstance(e, GeyserStreamError) else TransportError(
                    f"subscribe write failed: {e}"
                )
                self._writer_error = error
                logger.warning(f"Stream write failed, closing transport: {error}")
                if not done.done():
                    done.set_exception(error)
                self._fail_pending(error)
                await self._close_transport()
                return

            if request is not None:
                self.last_request = request
                self.metrics.requests_sent += 1
            else:
                self.metrics.pings_sent += 1
            if not done.done():
                done.set_result(None)
            self._inflight = None

    def _fail_pending(self, error: BaseException) -> None:
        while True:
            try:
                _, _, done = self._outbound.get_nowait()
            except asyncio.QueueEmpty:
                break
            if not done.done():
                done.set_exception(error)

    def _raise_if_unusable(self) -> None:
        if self._writer_error is not None:
            raise self._writer_error
        if self._closing:
            raise TransportError("stream session is closed")

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def next_frame(self) -> bytes:
        """
        Wait for the next frame from the server.

        Raises:
            StreamTimeout: Nothing received within keepalive_timeout
            TransportError: Session closed, write failure, or stream ended
            AuthError: Credentials rejected
        """
        self._raise_if_unusable()

        try:
            frame = await asyncio.wait_for(
                self._transport.read(),
                timeout=self.keepalive_timeout,
            )
        except asyncio.TimeoutError as e:
            raise StreamTimeout(
                f"no frame received in {self.keepalive_timeout:.1f}s"
            ) from e
        except GeyserStreamError:
            if self._writer_error is not None:
                raise self._writer_error
            raise

        if frame is None:
            if self._writer_error is not None:
                raise self._writer_error
            raise TransportError("stream closed by server")

        self.metrics.frames_received += 1
        self.metrics.last_frame_at = time.time()
        return frame

    async def frames(self) -> AsyncIterator[bytes]:
        """Frames in server order until an error ends the stream."""
        while True:
            yield await self.next_frame()

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close the session. Safe to call more than once or concurrently."""
        if self._closing:
            await self._close_done.wait()
            return
        self._closing = True

        try:
            self._writer.cancel()
            await asyncio.gather(self._writer, return_exceptions=True)
            if self._inflight is not None and not self._inflight.done():
                self._inflight.set_exception(TransportError("stream session is closed"))
            self._fail_pending(TransportError("stream session is closed"))
            await self._close_transport()
        finally:
            self._close_done.set()
            logger.info(
                f"Stream session closed after {self.metrics.frames_received} frames"
            )

    async def _close_transport(self) -> None:
        try:
            await self._transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport: {e}")
