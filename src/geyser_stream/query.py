"""
Query Client
============

One-shot unary calls against the Geyser service.

Uses the same endpoint, TLS and x-token configuration as the stream, over
its own channel. Every call is bounded by
``endpoint.request_timeout_seconds`` and maps failures to AuthError or
TransportError.

Example:
    async with QueryClient(settings.endpoint) as query:
        latest = await query.get_latest_blockhash(CommitmentLevel.FINALIZED)
        print(latest.blockhash, latest.last_valid_block_height)
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

import grpc
from grpc_health.v1 import health_pb2, health_pb2_grpc
from solders.hash import Hash

from geyser_stream.config import EndpointConfig
from geyser_stream.errors import ValidationError
from geyser_stream.models.subscription import CommitmentLevel
from geyser_stream.protocol import schema
from geyser_stream.protocol.codec import optional_field
from geyser_stream.transport import call_metadata, create_channel, translate_rpc_error


logger = logging.getLogger(__name__)

Commitment = Union[CommitmentLevel, str, None]


@dataclass(frozen=True, slots=True)
class LatestBlockhash:
    """Result of GetLatestBlockhash."""

    blockhash: str
    last_valid_block_height: int
    slot: int


class QueryClient:
    """
    Unary Geyser RPCs.

    Attributes:
        endpoint: Endpoint configuration
        timeout: Per-call deadline in seconds
    """

    def __init__(
        self,
        endpoint: EndpointConfig,
        channel: Optional[grpc.aio.Channel] = None,
    ) -> None:
        """
        Args:
            endpoint: URL, credentials and timeouts
            channel: Existing channel to use (created lazily if None)
        """
        self.endpoint = endpoint
        self.timeout = endpoint.request_timeout_seconds
        self._channel = channel
        self._owns_channel = channel is None
        self._stub: Optional[schema.GeyserStub] = None

    def _get_channel(self) -> grpc.aio.Channel:
        if self._channel is None:
            self._channel = create_channel(self.endpoint)
        return self._channel

    def _get_stub(self) -> schema.GeyserStub:
        if self._stub is None:
            self._stub = schema.GeyserStub(self._get_channel())
        return self._stub

    async def close(self) -> None:
        """Close the channel if this client created it."""
        if self._channel is not None and self._owns_channel:
            await self._channel.close()
        self._channel = None
        self._stub = None

    async def __aenter__(self) -> "QueryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _unary(self, method: str, request):
        call = getattr(self._get_stub(), method)
        try:
            return await call(
                request,
                timeout=self.timeout,
                metadata=call_metadata(self.endpoint),
            )
        except grpc.aio.AioRpcError as e:
            raise translate_rpc_error(e, method) from e

    @staticmethod
    def _commitment_request(request_cls, commitment: Commitment):
        request = request_cls()
        if commitment is not None:
            try:
                request.commitment = CommitmentLevel(commitment).wire_value
            except ValueError as e:
                raise ValidationError(
                    f"unknown commitment level {commitment!r}", field="commitment"
                ) from e
        return request

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    async def get_latest_blockhash(self, commitment: Commitment = None) -> LatestBlockhash:
        """Latest blockhash with its last valid block height and slot."""
        response = await self._unary(
            "GetLatestBlockhash",
            self._commitment_request(schema.GetLatestBlockhashRequest, commitment),
        )
        return LatestBlockhash(
            blockhash=response.blockhash,
            last_valid_block_height=response.last_valid_block_height,
            slot=response.slot,
        )

    async def get_block_height(self, commitment: Commitment = None) -> int:
        response = await self._unary(
            "GetBlockHeight",
            self._commitment_request(schema.GetBlockHeightRequest, commitment),
        )
        return response.block_height

    async def get_slot(self, commitment: Commitment = None) -> int:
        response = await self._unary(
            "GetSlot",
            self._commitment_request(schema.GetSlotRequest, commitment),
        )
        return response.slot

    async def is_blockhash_valid(self, blockhash: str, commitment: Commitment = None) -> bool:
        """
        Whether `blockhash` can still be used in a transaction.

        Raises:
            ValidationError: `blockhash` is not a base58 32-byte hash
        """
        try:
            Hash.from_string(blockhash)
        except Exception as e:
            raise ValidationError(f"invalid blockhash {blockhash!r}: {e}", field="blockhash") from e

        request = self._commitment_request(schema.IsBlockhashValidRequest, commitment)
        request.blockhash = blockhash
        response = await self._unary("IsBlockhashValid", request)
        return response.valid

    async def ping(self, count: int = 1) -> int:
        """Round-trip a counter through the server; returns the echoed count."""
        response = await self._unary("Ping", schema.PingRequest(count=count))
        return response.count

    async def get_version(self) -> str:
        """Server version string (JSON document as sent by the server)."""
        response = await self._unary("GetVersion", schema.GetVersionRequest())
        return response.version

    async def get_health(self, service: str = "") -> str:
        """
        Standard gRPC health check.

        Returns:
            Serving status name, e.g. "SERVING" or "NOT_SERVING"

        Raises:
            TransportError: Endpoint unreachable or call timed out
            AuthError: Credentials rejected
        """
        stub = health_pb2_grpc.HealthStub(self._get_channel())
        try:
            response = await stub.Check(
                health_pb2.HealthCheckRequest(service=service),
                timeout=self.timeout,
                metadata=call_metadata(self.endpoint),
            )
        except grpc.aio.AioRpcError as e:
            raise translate_rpc_error(e, "health check") from e

        status = health_pb2.HealthCheckResponse.ServingStatus.Name(response.status)
        logger.debug(f"Health of {self.endpoint.url}: {status}")
        return status

    async def watch_health(self, service: str = "") -> AsyncIterator[str]:
        """
        Follow the serving status through the gRPC health Watch stream.

        Yields the status name each time the server reports one. The stream
        has no deadline; stop iterating (or close the generator) to cancel it.

        Raises:
            TransportError: Endpoint unreachable or the stream failed
            AuthError: Credentials rejected
        """
        stub = health_pb2_grpc.HealthStub(self._get_channel())
        call = stub.Watch(
            health_pb2.HealthCheckRequest(service=service),
            metadata=call_metadata(self.endpoint),
        )
        try:
            async for response in call:
                status = health_pb2.HealthCheckResponse.ServingStatus.Name(response.status)
                logger.info(f"Health of {self.endpoint.url} changed: {status}")
                yield status
        except grpc.aio.AioRpcError as e:
            raise translate_rpc_error(e, "health watch") from e
        finally:
            call.cancel()

    async def subscribe_replay_info(self) -> Optional[int]:
        """
        Oldest slot the server can replay a subscription from.

        Returns:
            The slot usable as ``from_slot``, or None when the server keeps
            no replay history
        """
        response = await self._unary(
            "SubscribeReplayInfo", schema.SubscribeReplayInfoRequest()
        )
        return optional_field(response, "first_available")
