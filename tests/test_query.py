"""
Query Client Tests
==================

Tests for the unary calls.
"""

import time

import pytest

from conftest import BLOCKHASH
from geyser_stream.config import EndpointConfig
from geyser_stream.errors import AuthError, TransportError, ValidationError
from geyser_stream.models.subscription import CommitmentLevel
from geyser_stream.protocol.schema import GeyserStub, GetSlotRequest
from geyser_stream.query import LatestBlockhash, QueryClient
from geyser_stream.transport import create_channel


class TestQueries:
    """Against an in-process Geyser server."""

    @pytest.mark.asyncio
    async def test_get_slot_sends_commitment(self, geyser_server):
        async with QueryClient(EndpointConfig(url=geyser_server.url, x_token="secret")) as query:
            slot = await query.get_slot(CommitmentLevel.FINALIZED)

        assert slot == 4242
        assert geyser_server.unary_requests[0].commitment == 2

    @pytest.mark.asyncio
    async def test_get_block_height(self, geyser_server):
        async with QueryClient(EndpointConfig(url=geyser_server.url, x_token="secret")) as query:
            height = await query.get_block_height("processed")

        assert height == 4300
        assert geyser_server.unary_requests[0].HasField("commitment")

    @pytest.mark.asyncio
    async def test_latest_blockhash(self, geyser_server):
        async with QueryClient(EndpointConfig(url=geyser_server.url, x_token="secret")) as query:
            latest = await query.get_latest_blockhash("confirmed")

        assert latest == LatestBlockhash(
            blockhash=BLOCKHASH, last_valid_block_height=4392, slot=4242
        )

    @pytest.mark.asyncio
    async def test_is_blockhash_valid(self, geyser_server):
        async with QueryClient(EndpointConfig(url=geyser_server.url, x_token="secret")) as query:
            assert await query.is_blockhash_valid(BLOCKHASH) is True
            assert await query.is_blockhash_valid("11111111111111111111111111111111") is False

    @pytest.mark.asyncio
    async def test_ping_version_and_health(self, geyser_server):
        async with QueryClient(EndpointConfig(url=geyser_server.url, x_token="secret")) as query:
            assert await query.ping(3) == 3
            assert "test" in await query.get_version()
            assert await query.get_health() == "SERVING"

    @pytest.mark.asyncio
    async def test_watch_health_follows_status_changes(self, geyser_server):
        async with QueryClient(EndpointConfig(url=geyser_server.url, x_token="secret")) as query:
            statuses = [status async for status in query.watch_health()]

        assert statuses == ["SERVING", "NOT_SERVING"]

    @pytest.mark.asyncio
    async def test_watch_health_wrong_token(self, geyser_server):
        async with QueryClient(EndpointConfig(url=geyser_server.url, x_token="nope")) as query:
            with pytest.raises(AuthError):
                async for _ in query.watch_health():
                    pass

    @pytest.mark.asyncio
    async def test_subscribe_replay_info(self, geyser_server):
        async with QueryClient(EndpointConfig(url=geyser_server.url, x_token="secret")) as query:
            assert await query.subscribe_replay_info() == 4000

            geyser_server.first_available = None
            assert await query.subscribe_replay_info() is None

    @pytest.mark.asyncio
    async def test_borrowed_channel_stays_open(self, geyser_server):
        endpoint = EndpointConfig(url=geyser_server.url, x_token="secret")
        channel = create_channel(endpoint)
        try:
            async with QueryClient(endpoint, channel=channel) as query:
                assert await query.get_slot() == 4242

            response = await GeyserStub(channel).GetSlot(
                GetSlotRequest(), metadata=(("x-token", "secret"),), timeout=5
            )
            assert response.slot == 4242
        finally:
            await channel.close()

    @pytest.mark.asyncio
    async def test_wrong_token(self, geyser_server):
        async with QueryClient(EndpointConfig(url=geyser_server.url, x_token="nope")) as query:
            with pytest.raises(AuthError):
                await query.get_slot()


class TestValidation:
    """Argument checks happen before any network call."""

    @pytest.mark.asyncio
    async def test_invalid_blockhash(self):
        async with QueryClient(EndpointConfig(url="http://127.0.0.1:1")) as query:
            with pytest.raises(ValidationError) as exc_info:
                await query.is_blockhash_valid("not a hash")

        assert exc_info.value.field == "blockhash"

    @pytest.mark.asyncio
    async def test_invalid_commitment(self):
        async with QueryClient(EndpointConfig(url="http://127.0.0.1:1")) as query:
            with pytest.raises(ValidationError):
                await query.get_slot("rooted")


class TestUnreachable:
    """Failures surface as TransportError within the request timeout."""

    @pytest.mark.asyncio
    async def test_health_check_unreachable(self):
        endpoint = EndpointConfig(url="http://127.0.0.1:1", request_timeout_seconds=2.0)
        started = time.monotonic()

        async with QueryClient(endpoint) as query:
            with pytest.raises(TransportError):
                await query.get_health()

        assert time.monotonic() - started < 5.0
