"""
Test Configuration
==================

Pytest fixtures and fakes for geyser-stream.

The fakes stand in for the gRPC layer:
    - FakeTransport: scripted SubscribeTransport (frames, errors, EOF)
    - ScriptedSessions: session factory handing out transports or raising
    - FakeSleep: records backoff delays instead of waiting
    - FakeGeyserServer: in-process grpc.aio server for transport and query tests
"""

import asyncio
from typing import Any, Callable, List, Optional, Union

import grpc
import pytest
import pytest_asyncio
from grpc_health.v1 import health_pb2

from geyser_stream.models.update import (
    AccountInfo,
    AccountPayload,
    PongPayload,
    SlotPayload,
    SlotStatus,
    Update,
    UpdateKind,
)
from geyser_stream.protocol import schema
from geyser_stream.protocol.codec import encode_update
from geyser_stream.stream.session import StreamSession


TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SYSTEM_PROGRAM = "11111111111111111111111111111111"
BLOCKHASH = "4sGjMW1sUnHzSxGspuhpqLDx6wiyjNtZAMdL4VZHirAn"

_EOF = object()


# =============================================================================
# Frame helpers
# =============================================================================

def slot_frame(slot: int, status: SlotStatus = SlotStatus.PROCESSED, filters=("client",)) -> bytes:
    """Serialized slot update."""
    return encode_update(Update(
        kind=UpdateKind.SLOT,
        slot=slot,
        payload=SlotPayload(status=status, parent=slot - 1 if slot else None),
        filters=tuple(filters),
    ))


def account_frame(slot: int, lamports: int = 1_000, filters=("usdc",)) -> bytes:
    """Serialized account update."""
    return encode_update(Update(
        kind=UpdateKind.ACCOUNT,
        slot=slot,
        payload=AccountPayload(account=AccountInfo(
            pubkey=bytes(range(32)),
            lamports=lamports,
            owner=bytes(32),
            executable=False,
            rent_epoch=0,
            data=b"\x01\x02\x03",
            write_version=7,
        )),
        filters=tuple(filters),
    ))


def ping_frame() -> bytes:
    return encode_update(Update(kind=UpdateKind.PING, slot=0, filters=("client",)))


def pong_frame(ping_id: int = 1) -> bytes:
    return encode_update(Update(kind=UpdateKind.PONG, slot=0, payload=PongPayload(id=ping_id)))


# =============================================================================
# Fakes
# =============================================================================

class FakeTransport:
    """
    In-memory SubscribeTransport.

    Inbound items are queued with feed()/fail()/end(); writes are recorded.
    read() blocks while nothing is queued, like an idle stream.
    """

    def __init__(self, frames: Optional[List[bytes]] = None) -> None:
        self.writes: List[bytes] = []
        self.close_calls: int = 0
        self.write_error: Optional[BaseException] = None
        self._inbound: asyncio.Queue = asyncio.Queue()
        for frame in frames or []:
            self.feed(frame)

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def feed(self, frame: bytes) -> None:
        self._inbound.put_nowait(frame)

    def fail(self, error: BaseException) -> None:
        self._inbound.put_nowait(error)

    def end(self) -> None:
        self._inbound.put_nowait(_EOF)

    async def write(self, frame: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.writes.append(frame)

    async def read(self) -> Optional[bytes]:
        item = await self._inbound.get()
        if item is _EOF:
            return None
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.close_calls += 1


class ScriptedSessions:
    """
    Session factory for the supervisor and client.

    Each call consumes the next scripted outcome: a FakeTransport is wrapped
    in a StreamSession, an exception is raised. Once the script runs out the
    `fallback` outcome is repeated.
    """

    def __init__(
        self,
        *outcomes: Union[FakeTransport, BaseException],
        fallback: Union[FakeTransport, BaseException, None] = None,
        keepalive_timeout: float = 30.0,
    ) -> None:
        self.outcomes = list(outcomes)
        self.fallback = fallback
        self.keepalive_timeout = keepalive_timeout
        self.calls: int = 0
        self.transports: List[FakeTransport] = []

    async def __call__(self) -> StreamSession:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else self.fallback
        if outcome is None:
            outcome = FakeTransport()
        if isinstance(outcome, BaseException):
            raise outcome
        self.transports.append(outcome)
        return StreamSession(outcome, keepalive_timeout=self.keepalive_timeout)


class FakeSleep:
    """Records requested delays (seconds) and yields once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    """Poll `predicate` until it is truthy or fail after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def slots_request():
    """Slots-only subscription request."""
    from geyser_stream.stream.builder import SubscriptionRequestBuilder

    return (
        SubscriptionRequestBuilder()
        .add_filter("slots", "client", {"filter_by_commitment": True})
        .build("confirmed")
    )


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep GEYSER_* variables from the host out of config tests."""
    for name in (
        "GEYSER_CONFIG",
        "GEYSER_ENDPOINT",
        "GEYSER_X_TOKEN",
        "GEYSER_COMMITMENT",
        "GEYSER_KEEPALIVE_TIMEOUT",
        "GEYSER_CHANNEL_MAXSIZE",
        "GEYSER_RECONNECT_BASE_MS",
        "GEYSER_RECONNECT_MAX_MS",
        "GEYSER_MAX_RECONNECT_ATTEMPTS",
        "GEYSER_LOG_LEVEL",
        "GEYSER_PORT",
        "PORT",
    ):
        monkeypatch.delenv(name, raising=False)


# =============================================================================
# In-process gRPC server
# =============================================================================

class FakeGeyserServer:
    """
    Minimal Geyser service on 127.0.0.1 for transport and query tests.

    Subscribe answers every non-ping request with one slot frame and every
    ping with a pong. Calls without the expected x-token are rejected with
    UNAUTHENTICATED (Subscribe after its first request).
    The health Watch stream replays `health_history` and then ends.
    """

    def __init__(self, token: Optional[str] = None) -> None:
        self.token = token
        self.requests: list = []
        self.unary_requests: list = []
        self.health_history = [
            health_pb2.HealthCheckResponse.SERVING,
            health_pb2.HealthCheckResponse.NOT_SERVING,
        ]
        self.first_available: Optional[int] = 4000
        self.port: Optional[int] = None
        self._server = None

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    async def start(self) -> None:
        def unary(handler, request_cls):
            return grpc.unary_unary_rpc_method_handler(
                handler,
                request_deserializer=request_cls.FromString,
                response_serializer=lambda message: message.SerializeToString(),
            )

        geyser = grpc.method_handlers_generic_handler("geyser.Geyser", {
            "Subscribe": grpc.stream_stream_rpc_method_handler(self._subscribe),
            "GetSlot": unary(self._get_slot, schema.GetSlotRequest),
            "GetBlockHeight": unary(self._get_block_height, schema.GetBlockHeightRequest),
            "GetLatestBlockhash": unary(self._get_latest_blockhash, schema.GetLatestBlockhashRequest),
            "IsBlockhashValid": unary(self._is_blockhash_valid, schema.IsBlockhashValidRequest),
            "Ping": unary(self._ping, schema.PingRequest),
            "GetVersion": unary(self._get_version, schema.GetVersionRequest),
            "SubscribeReplayInfo": unary(
                self._subscribe_replay_info, schema.SubscribeReplayInfoRequest
            ),
        })
        health = grpc.method_handlers_generic_handler("grpc.health.v1.Health", {
            "Check": unary(self._check, health_pb2.HealthCheckRequest),
            "Watch": grpc.unary_stream_rpc_method_handler(
                self._watch,
                request_deserializer=health_pb2.HealthCheckRequest.FromString,
                response_serializer=lambda message: message.SerializeToString(),
            ),
        })

        self._server = grpc.aio.server()
        self._server.add_generic_rpc_handlers((geyser, health))
        self.port = self._server.add_insecure_port("127.0.0.1:0")
        await self._server.start()

    async def stop(self) -> None:
        if self._server is not None:
            await self._server.stop(None)

    def _authorized(self, context) -> bool:
        if self.token is None:
            return True
        metadata = {key: value for key, value in context.invocation_metadata()}
        return metadata.get("x-token") == self.token

    async def _reject_unauthorized(self, context) -> None:
        if not self._authorized(context):
            await context.abort(grpc.StatusCode.UNAUTHENTICATED, "invalid x-token")

    async def _subscribe(self, request_iterator, context):
        async for raw in request_iterator:
            await self._reject_unauthorized(context)
            request = schema.SubscribeRequest.FromString(raw)
            self.requests.append(request)
            if request.HasField("ping"):
                yield encode_update(Update(
                    kind=UpdateKind.PONG, slot=0, payload=PongPayload(id=request.ping.id)
                ))
            else:
                yield slot_frame(len(self.requests))

    async def _get_slot(self, request, context):
        await self._reject_unauthorized(context)
        self.unary_requests.append(request)
        return schema.GetSlotResponse(slot=4242)

    async def _get_block_height(self, request, context):
        await self._reject_unauthorized(context)
        self.unary_requests.append(request)
        return schema.GetBlockHeightResponse(block_height=4300)

    async def _get_latest_blockhash(self, request, context):
        await self._reject_unauthorized(context)
        self.unary_requests.append(request)
        return schema.GetLatestBlockhashResponse(
            slot=4242, blockhash=BLOCKHASH, last_valid_block_height=4392
        )

    async def _is_blockhash_valid(self, request, context):
        await self._reject_unauthorized(context)
        self.unary_requests.append(request)
        return schema.IsBlockhashValidResponse(slot=4242, valid=request.blockhash == BLOCKHASH)

    async def _ping(self, request, context):
        await self._reject_unauthorized(context)
        return schema.PongResponse(count=request.count)

    async def _get_version(self, request, context):
        await self._reject_unauthorized(context)
        return schema.GetVersionResponse(version='{"version": "test"}')

    async def _check(self, request, context):
        await self._reject_unauthorized(context)
        return health_pb2.HealthCheckResponse(status=health_pb2.HealthCheckResponse.SERVING)

    async def _watch(self, request, context):
        await self._reject_unauthorized(context)
        for status in self.health_history:
            yield health_pb2.HealthCheckResponse(status=status)

    async def _subscribe_replay_info(self, request, context):
        await self._reject_unauthorized(context)
        if self.first_available is None:
            return schema.SubscribeReplayInfoResponse()
        return schema.SubscribeReplayInfoResponse(first_available=self.first_available)


@pytest_asyncio.fixture
async def geyser_server():
    server = FakeGeyserServer(token="secret")
    await server.start()
    yield server
    await server.stop()
