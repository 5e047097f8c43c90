"""
Stream Module
=============

Subscription streaming core.

This module provides:
    - SubscriptionRequestBuilder: Named-filter accumulator -> SubscriptionRequest
    - StreamSession: One open bidirectional Subscribe call
    - UpdateDemultiplexer: Raw frame -> typed Update
    - CommitmentGate: Optional per-kind monotonic slot filter
    - UpdateChannel: Bounded, blocking consumer queue
    - ReconnectSupervisor: Backoff, reconnect and request resubmission
    - GeyserStreamClient: Façade tying the pipeline together

Example:
    from geyser_stream.stream import GeyserStreamClient, SubscriptionRequestBuilder

    request = (
        SubscriptionRequestBuilder()
        .add_filter("slots", "client", {"filter_by_commitment": True})
        .build("confirmed")
    )

    client = GeyserStreamClient.from_settings(settings)
    await client.start(request)
    async for update in client:
        process(update)
"""

from geyser_stream.stream.builder import SubscriptionRequestBuilder, builder_from_config
from geyser_stream.stream.channel import UpdateChannel
from geyser_stream.stream.client import GeyserStreamClient, request_from_settings
from geyser_stream.stream.demux import UpdateDemultiplexer
from geyser_stream.stream.gate import CommitmentGate, GatePolicy
from geyser_stream.stream.session import StreamSession
from geyser_stream.stream.supervisor import (
    BackoffPolicy,
    ReconnectState,
    ReconnectSupervisor,
    SupervisorState,
)


__all__ = [
    "SubscriptionRequestBuilder",
    "builder_from_config",
    "UpdateChannel",
    "GeyserStreamClient",
    "request_from_settings",
    "UpdateDemultiplexer",
    "CommitmentGate",
    "GatePolicy",
    "StreamSession",
    "BackoffPolicy",
    "ReconnectState",
    "ReconnectSupervisor",
    "SupervisorState",
]
