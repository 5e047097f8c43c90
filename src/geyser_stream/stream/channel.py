"""
Update Channel
==============

Bounded async queue between the stream reader and the consumer.

Design Rules:
    - Fixed maximum size; put() blocks when full, nothing is ever dropped
    - Blocking applies to every kind (head-of-line), so a slow consumer
      slows the reader and, through gRPC flow control, the server
    - close(error) ends consumption once the queued updates are drained;
      consumers then see the error, or ChannelClosed for a clean close
    - Does NOT inspect or modify updates
"""

import asyncio
import logging
from typing import Optional

from geyser_stream.errors import ChannelClosed
from geyser_stream.models.update import Update


logger = logging.getLogger(__name__)


class UpdateChannel:
    """
    Async bounded queue of Updates with an end-of-stream signal.

    Attributes:
        maxsize: Maximum number of updates held
        blocked_puts: Number of puts that had to wait for space

    Example:
        channel = UpdateChannel(maxsize=1024)

        # Producer
        await channel.put(update)

        # Consumer
        async for update in channel:
            handle(update)
    """

    def __init__(self, maxsize: int = 1024) -> None:
        """
        Initialize update channel.

        Args:
            maxsize: Maximum updates to hold. Must be >= 1.
        """
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")

        self._maxsize = maxsize
        self._queue: asyncio.Queue[Update] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()
        self._error: Optional[BaseException] = None
        self._total_put: int = 0
        self._total_get: int = 0
        self._blocked_puts: int = 0

    @property
    def maxsize(self) -> int:
        """Maximum channel size."""
        return self._maxsize

    @property
    def size(self) -> int:
        """Current number of queued updates."""
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def blocked_puts(self) -> int:
        return self._blocked_puts

    async def put(self, update: Update) -> None:
        """
        Add an update, waiting for space if the channel is full.

        Raises:
            ChannelClosed: If the channel is closed before the update fits
        """
        if self._closed.is_set():
            raise ChannelClosed("update channel is closed")

        if not self._queue.full():
            self._queue.put_nowait(update)
            self._total_put += 1
            return

        self._blocked_puts += 1
        logger.debug(f"Update channel full ({self._maxsize}), waiting for consumer")

        putter = asyncio.ensure_future(self._queue.put(update))
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({putter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (putter, closer):
                if not task.done():
                    task.cancel()

        if not putter.done() or putter.cancelled():
            raise ChannelClosed("update channel closed while waiting for space")
        self._total_put += 1

    async def get(self, timeout: Optional[float] = None) -> Optional[Update]:
        """
        Get the next update.

        Args:
            timeout: Maximum seconds to wait. None = wait forever.

        Returns:
            Next update, or None if the timeout elapsed.

        Raises:
            The error passed to close(), or ChannelClosed, once the channel
            is closed and drained.
        """
        try:
            update = self._queue.get_nowait()
            self._total_get += 1
            return update
        except asyncio.QueueEmpty:
            pass

        if self._closed.is_set():
            raise self._terminal()

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {getter, closer},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (getter, closer):
                if not task.done():
                    task.cancel()

        if getter in done:
            self._total_get += 1
            return getter.result()
        if closer in done:
            raise self._terminal()
        return None

    def close(self, error: Optional[BaseException] = None) -> None:
        """
        Signal end of stream. Idempotent; the first error wins.

        Args:
            error: Terminal error to surface to consumers, if any
        """
        if self._closed.is_set():
            return
        self._error = error
        self._closed.set()
        if error is not None:
            logger.info(f"Update channel closed with error: {error!r}")
        else:
            logger.info("Update channel closed")

    def _terminal(self) -> BaseException:
        if self._error is not None:
            return self._error
        return ChannelClosed("update channel is closed")

    def __aiter__(self) -> "UpdateChannel":
        return self

    async def __anext__(self) -> Update:
        try:
            update = await self.get()
        except ChannelClosed:
            raise StopAsyncIteration
        # get() only returns None on timeout, which is not used here
        assert update is not None
        return update

    def metrics(self) -> dict:
        """
        Get channel metrics for observability.

        Returns:
            Dict with size, maxsize, total_put, total_get, blocked_puts, closed
        """
        return {
            "size": self.size,
            "maxsize": self._maxsize,
            "total_put": self._total_put,
            "total_get": self._total_get,
            "blocked_puts": self._blocked_puts,
            "closed": self.closed,
        }
