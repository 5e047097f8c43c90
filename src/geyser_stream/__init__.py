"""
geyser-stream
=============

Client for Solana Geyser (Yellowstone gRPC) data streams.

This package keeps a persistent Subscribe stream open against a Geyser
endpoint, classifies the heterogeneous update stream into typed Updates,
and hands them to a consumer through a bounded channel. Connection loss is
recovered with exponential backoff and the last subscription is resent on
every reconnect.

Components:
    - models: Subscription filters/requests and typed updates
    - protocol: Geyser protobuf schema and codecs
    - stream: Builder, session, demultiplexer, gate, supervisor, client
    - query: Unary calls (blockhash, slot, block height, health, ...)
    - main: FastAPI relay exposing updates over WebSocket

Example:
    from geyser_stream.config import load_config
    from geyser_stream.stream import GeyserStreamClient, request_from_settings

    settings = load_config()
    client = GeyserStreamClient.from_settings(settings)
    await client.start(request_from_settings(settings))
    async for update in client:
        ...
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
