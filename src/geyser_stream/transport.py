"""
gRPC Transport
==============

Channel factory and the bidirectional Subscribe call wrapper.

This module provides:
    - create_channel: grpc.aio channel for an EndpointConfig (TLS for
      https:// URLs, keepalive and message-size options, compression)
    - call_metadata: x-token auth metadata attached to every call
    - translate_rpc_error: grpc status -> AuthError / TransportError
    - SubscribeTransport: the minimal duplex interface a StreamSession needs
    - GrpcSubscribeTransport: SubscribeTransport over ``geyser.Geyser/Subscribe``

Frames cross this layer as raw bytes; encoding and decoding happen in the
codec and the demultiplexer.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple
from urllib.parse import urlparse

import grpc

from geyser_stream.config import EndpointConfig
from geyser_stream.errors import AuthError, GeyserStreamError, TransportError
from geyser_stream.protocol.schema import GeyserStub


logger = logging.getLogger(__name__)

_AUTH_CODES = frozenset({grpc.StatusCode.UNAUTHENTICATED, grpc.StatusCode.PERMISSION_DENIED})

Metadata = Tuple[Tuple[str, str], ...]


@dataclass(frozen=True, slots=True)
class ChannelTarget:
    """Parsed endpoint URL."""

    target: str
    secure: bool


def parse_endpoint(url: str) -> ChannelTarget:
    """
    Split an endpoint URL into a gRPC target and TLS flag.

    ``https://host`` -> ``host:443`` (TLS); ``http://host:10000`` ->
    ``host:10000``; a bare ``host:port`` is plaintext.
    """
    if "://" not in url:
        return ChannelTarget(target=url, secure=False)

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise TransportError(f"unsupported endpoint URL: {url!r}")

    secure = parsed.scheme == "https"
    port = parsed.port or (443 if secure else 80)
    host = parsed.hostname
    if ":" in host:
        host = f"[{host}]"
    return ChannelTarget(target=f"{host}:{port}", secure=secure)


def channel_options(endpoint: EndpointConfig) -> list:
    """grpc channel arguments derived from the endpoint config."""
    return [
        ("grpc.max_receive_message_length", endpoint.max_decoding_message_size),
        ("grpc.keepalive_time_ms", endpoint.keepalive_interval_ms),
        ("grpc.keepalive_timeout_ms", endpoint.keepalive_timeout_ms),
        ("grpc.keepalive_permit_without_calls", int(endpoint.keepalive_while_idle)),
        ("grpc.http2.max_pings_without_data", 0),
    ]


def call_metadata(endpoint: EndpointConfig) -> Optional[Metadata]:
    """x-token metadata for a call, or None without a token."""
    if endpoint.x_token:
        return (("x-token", endpoint.x_token),)
    return None


def create_channel(endpoint: EndpointConfig) -> grpc.aio.Channel:
    """
    Create a grpc.aio channel for the endpoint.

    Raises:
        TransportError: If the URL is unsupported or the CA file is unreadable
    """
    target = parse_endpoint(endpoint.url)
    options = channel_options(endpoint)
    compression = grpc.Compression.Gzip if endpoint.compression == "gzip" else None

    if not target.secure:
        return grpc.aio.insecure_channel(target.target, options=options, compression=compression)

    root_certificates = None
    if endpoint.ca_certificate:
        try:
            with open(endpoint.ca_certificate, "rb") as f:
                root_certificates = f.read()
        except OSError as e:
            raise TransportError(
                f"cannot read CA certificate {endpoint.ca_certificate}: {e}"
            ) from e

    credentials = grpc.ssl_channel_credentials(root_certificates=root_certificates)
    return grpc.aio.secure_channel(
        target.target, credentials, options=options, compression=compression
    )


def translate_rpc_error(error: grpc.RpcError, context: str) -> GeyserStreamError:
    """Map a failed RPC to AuthError (credentials) or TransportError (anything else)."""
    code = error.code() if hasattr(error, "code") else None
    details = error.details() if hasattr(error, "details") else str(error)
    name = code.name if code is not None else "UNKNOWN"
    message = f"{context} failed: {name}: {details}"
    if code in _AUTH_CODES:
        return AuthError(message)
    return TransportError(message)


# =============================================================================
# Subscribe transport
# =============================================================================

class SubscribeTransport(Protocol):
    """Duplex byte-frame channel used by StreamSession."""

    async def write(self, frame: bytes) -> None:
        """Send one serialized SubscribeRequest."""
        ...

    async def read(self) -> Optional[bytes]:
        """Next serialized SubscribeUpdate, or None once the server ends the stream."""
        ...

    async def close(self) -> None:
        """Cancel the call and release the connection."""
        ...


class GrpcSubscribeTransport:
    """
    SubscribeTransport over a grpc.aio stream-stream call.

    Example:
        transport = await GrpcSubscribeTransport.connect(settings.endpoint)
        await transport.write(encode_request(request))
        frame = await transport.read()
    """

    def __init__(self, channel: grpc.aio.Channel, call, target: str) -> None:
        self._channel = channel
        self._call = call
        self._target = target
        self._closed = False

    @classmethod
    async def connect(cls, endpoint: EndpointConfig) -> "GrpcSubscribeTransport":
        """
        Open a channel, wait for it to become ready, and start Subscribe.

        Raises:
            TransportError: Channel not ready within connect_timeout_seconds
        """
        channel = create_channel(endpoint)
        target = parse_endpoint(endpoint.url).target
        try:
            await asyncio.wait_for(
                channel.channel_ready(),
                timeout=endpoint.connect_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            await channel.close()
            raise TransportError(
                f"endpoint {target} not ready after {endpoint.connect_timeout_seconds}s"
            ) from e
        except BaseException:
            await channel.close()
            raise

        # No serializers: frames are passed through as bytes
        call = GeyserStub(channel).Subscribe(metadata=call_metadata(endpoint))
        logger.info(f"Subscribe stream opened on {target}")
        return cls(channel, call, target)

    async def write(self, frame: bytes) -> None:
        try:
            await self._call.write(frame)
        except grpc.aio.AioRpcError as e:
            raise translate_rpc_error(e, "subscribe write") from e
        except asyncio.InvalidStateError as e:
            raise TransportError(f"subscribe stream to {self._target} already finished") from e

    async def read(self) -> Optional[bytes]:
        try:
            frame = await self._call.read()
        except grpc.aio.AioRpcError as e:
            raise translate_rpc_error(e, "subscribe read") from e
        if frame is grpc.aio.EOF:
            return None
        return frame

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._call.cancel()
        await self._channel.close()
        logger.debug(f"Subscribe stream to {self._target} closed")
