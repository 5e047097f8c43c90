"""
Protocol Module
===============

Wire-level pieces of the Geyser gRPC protocol:
    - schema: Protobuf message classes built from a descriptor at import
    - codec: SubscriptionRequest/Update <-> protobuf conversion

Example:
    from geyser_stream.protocol import encode_request

    payload = encode_request(request)
"""

from geyser_stream.protocol.codec import (
    encode_ping,
    encode_request,
    encode_update,
    request_to_message,
)
from geyser_stream.protocol.schema import GeyserStub, message_class, method_path


__all__ = [
    "encode_ping",
    "encode_request",
    "encode_update",
    "request_to_message",
    "GeyserStub",
    "message_class",
    "method_path",
]
