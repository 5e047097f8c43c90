"""
geyser-stream Relay Application
===============================

FastAPI service that runs one supervised Geyser subscription and relays
its updates to WebSocket clients.

Endpoints:
    GET    /                                  - Service information
    GET    /health                            - Liveness check (is process alive?)
    GET    /ready                             - Readiness check (stream connected?)
    GET    /metrics                           - Pipeline counters
    GET    /subscription                      - Active subscription request
    PUT    /subscription/filters/{kind}/{name} - Add or replace a filter
    DELETE /subscription/filters/{kind}/{name} - Remove a filter
    WS     /ws/updates                        - JSON-encoded update stream

Fan-out blocks on slow sockets instead of dropping updates, matching the
no-drop policy of the core channel.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set

from fastapi import Body, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from geyser_stream import __version__
from geyser_stream.config import Settings, load_config, setup_logging
from geyser_stream.errors import ChannelClosed, GeyserStreamError, ValidationError
from geyser_stream.models.subscription import FilterKind
from geyser_stream.stream import (
    GeyserStreamClient,
    SupervisorState,
    UpdateChannel,
    request_from_settings,
)


logger = logging.getLogger(__name__)

ClientFactory = Callable[[Settings], GeyserStreamClient]

SUBSCRIBER_QUEUE_SIZE = 256


# =============================================================================
# Relay
# =============================================================================

class Relay:
    """
    Runs the stream client and fans updates out to subscribers.

    Attributes:
        settings: Loaded settings
        client: Supervised stream client
        updates_relayed: Updates read from the client
        fatal_error: Error that ended the stream, if any
    """

    def __init__(self, settings: Settings, client: GeyserStreamClient) -> None:
        self.settings = settings
        self.client = client
        self.updates_relayed: int = 0
        self.fatal_error: Optional[Exception] = None
        self.started_at: float = time.time()

        self._subscribers: Set[UpdateChannel] = set()
        self._pump_task: Optional[asyncio.Task] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def start(self) -> None:
        await self.client.start(request_from_settings(self.settings))
        self._pump_task = asyncio.create_task(self._pump(), name="relay_pump")

    async def stop(self) -> None:
        await self.client.close()
        if self._pump_task is not None:
            self._pump_task.cancel()
            await asyncio.gather(self._pump_task, return_exceptions=True)
        for channel in list(self._subscribers):
            channel.close()
        self._subscribers.clear()

    def subscribe(self) -> UpdateChannel:
        channel = UpdateChannel(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.add(channel)
        return channel

    def unsubscribe(self, channel: UpdateChannel) -> None:
        self._subscribers.discard(channel)
        channel.close()

    async def _pump(self) -> None:
        try:
            async for update in self.client:
                self.updates_relayed += 1
                for channel in list(self._subscribers):
                    try:
                        await channel.put(update)
                    except ChannelClosed:
                        self._subscribers.discard(channel)
        except GeyserStreamError as e:
            self.fatal_error = e
            logger.error(f"Stream ended with error: {e}")
        except Exception as e:
            self.fatal_error = e
            logger.exception("Stream ended with unexpected error")
        finally:
            for channel in list(self._subscribers):
                channel.close(self.fatal_error)
        logger.info(f"Relay pump stopped after {self.updates_relayed} updates")


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    client_factory: ClientFactory = GeyserStreamClient.from_settings,
) -> FastAPI:
    """
    Build the relay application.

    Args:
        settings: Settings to use (loaded from config/env if None)
        client_factory: Builds the stream client from settings
    """
    settings = settings or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(f"Starting geyser-stream relay {__version__}")
        logger.info(f"Endpoint: {settings.endpoint.url}")

        relay = Relay(settings, client_factory(settings))
        app.state.relay = relay
        await relay.start()

        yield

        logger.info("Shutting down gracefully...")
        await relay.stop()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="geyser-stream",
        description="Solana Geyser subscription relay",
        version=__version__,
        lifespan=lifespan,
    )

    def get_relay() -> Relay:
        return app.state.relay

    # -------------------------------------------------------------------------
    # HTTP Endpoints
    # -------------------------------------------------------------------------

    @app.get("/")
    async def root() -> JSONResponse:
        """Service information endpoint."""
        relay = get_relay()
        return JSONResponse({
            "service": "geyser-stream",
            "version": __version__,
            "endpoint": settings.endpoint.url,
            "state": relay.client.state.value,
        })

    @app.get("/health")
    async def health() -> JSONResponse:
        """
        Liveness check - is the process alive?

        Always returns 200 if the service is running.
        """
        return JSONResponse({
            "status": "healthy",
            "uptime_seconds": round(time.time() - get_relay().started_at, 1),
        })

    @app.get("/ready")
    async def ready() -> JSONResponse:
        """
        Readiness check - is the subscription stream connected?

        Returns 503 unless the supervisor is CONNECTED.
        """
        relay = get_relay()
        state = relay.client.state
        body: Dict[str, Any] = {
            "state": state.value,
            "subscribers": relay.subscriber_count,
        }
        if state is SupervisorState.CONNECTED:
            return JSONResponse({"status": "ready", **body})
        if relay.fatal_error is not None:
            body["error"] = str(relay.fatal_error)
        return JSONResponse({"status": "not_ready", **body}, status_code=503)

    @app.get("/metrics")
    async def metrics() -> JSONResponse:
        """Detailed metrics for observability."""
        relay = get_relay()
        return JSONResponse({
            "uptime_seconds": round(time.time() - relay.started_at, 1),
            "updates_relayed": relay.updates_relayed,
            "subscribers": relay.subscriber_count,
            **relay.client.stats(),
        })

    @app.get("/subscription")
    async def subscription() -> JSONResponse:
        """Active subscription request."""
        request = get_relay().client.subscription
        if request is None:
            return JSONResponse({"error": "No subscription yet"}, status_code=404)
        return JSONResponse(request.model_dump(mode="json", by_alias=True))

    @app.put("/subscription/filters/{kind}/{name}")
    async def put_filter(
        kind: FilterKind,
        name: str,
        predicate: Optional[Dict[str, Any]] = Body(default=None),
    ) -> JSONResponse:
        """Add or replace a named filter and resend the subscription."""
        client = get_relay().client
        try:
            request = await client.modify_filters(
                lambda builder: builder.add_filter(kind, name, predicate or {})
            )
        except ValidationError as e:
            return JSONResponse({"error": str(e), "field": e.field}, status_code=422)
        return JSONResponse(request.model_dump(mode="json", by_alias=True))

    @app.delete("/subscription/filters/{kind}/{name}")
    async def delete_filter(kind: FilterKind, name: str) -> JSONResponse:
        """Remove a named filter and resend the subscription."""
        client = get_relay().client
        current = client.subscription
        if current is None or name not in current.filters(kind):
            return JSONResponse(
                {"error": f"No {kind.value} filter named {name!r}"},
                status_code=404,
            )
        try:
            request = await client.modify_filters(
                lambda builder: builder.remove_filter(kind, name)
            )
        except ValidationError as e:
            return JSONResponse({"error": str(e), "field": e.field}, status_code=422)
        return JSONResponse(request.model_dump(mode="json", by_alias=True))

    # -------------------------------------------------------------------------
    # WebSocket Endpoints
    # -------------------------------------------------------------------------

    @app.websocket("/ws/updates")
    async def update_stream(websocket: WebSocket) -> None:
        """WebSocket endpoint relaying every update as JSON."""
        relay = get_relay()
        # Register before accepting so no update after the handshake is missed
        channel = relay.subscribe()

        try:
            await websocket.accept()
            logger.info(f"Client connected to /ws/updates ({relay.subscriber_count} total)")
            async for update in channel:
                await websocket.send_json(update.to_dict())
        except WebSocketDisconnect:
            logger.debug("WebSocket closed by client")
        except Exception as e:
            # Only the error that ended the stream is reported to the socket
            if e is not relay.fatal_error and not isinstance(e, GeyserStreamError):
                raise
            await websocket.close(code=1011, reason=str(e)[:120])
        finally:
            relay.unsubscribe(channel)
            logger.info("Client disconnected from /ws/updates")

    return app


# =============================================================================
# Main Entry Point
# =============================================================================

def main() -> None:
    import uvicorn

    settings = load_config()
    setup_logging(settings)

    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
