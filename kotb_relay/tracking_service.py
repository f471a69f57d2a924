#!/usr/bin/env python3
"""
King Of the Bay Tracking Service
================================
WebSocket relay between participant devices and organizer screens, plus a
small HTTP API for participant management.

- Participants send position updates and SOS alerts
- Organizers authenticate and receive every update
- State is snapshotted to JSON every PERSIST_INTERVAL and on every SOS
"""

import asyncio
import logging
import signal
from typing import Optional

import websockets
from aiohttp import web
from websockets.exceptions import ConnectionClosed

from . import config
from .http_api import TrackingHttpApi
from .liveness import LivenessSupervisor
from .registry import ConnectionRegistry, Role
from .relay import Relay
from .state_store import StateStore

logger = logging.getLogger('TrackingService')


# ============================================================================
# WEBSOCKET SERVER
# ============================================================================

class TrackingWebSocketServer:
    """Adapts websockets connections to the relay."""

    def __init__(self, relay: Relay):
        self.relay = relay

    async def handler(self, websocket):
        """Handle one WebSocket connection until it closes."""
        connection_id = await self.relay.connect(websocket)
        reason = 'closed'
        try:
            async for message in websocket:
                await self.relay.handle_inbound(connection_id, message)
        except ConnectionClosed as e:
            reason = f"closed ({e.rcvd.code if e.rcvd else 'no close frame'})"
        finally:
            await self.relay.disconnect(connection_id, reason=reason)


# ============================================================================
# BACKGROUND LOOPS
# ============================================================================

async def persistence_loop(store: StateStore, interval: float = None):
    """Snapshot state to disk at a fixed interval."""
    interval = config.PERSIST_INTERVAL if interval is None else interval
    while True:
        await asyncio.sleep(interval)
        await store.persist_async()


async def stats_loop(relay: Relay, interval: float = None):
    """Log participant and client counts periodically."""
    interval = config.STATS_INTERVAL if interval is None else interval
    while True:
        await asyncio.sleep(interval)
        snapshot = relay.store.snapshot_all()
        counts = relay.registry.counts()
        logger.info(
            f"📊 Server stats - Active participants: {relay.store.active_count()}/{len(snapshot)}, "
            f"Connected clients: {len(relay.registry)} "
            f"(organizers: {counts[Role.ORGANIZER.value]}, participants: {counts[Role.PARTICIPANT.value]})"
        )


# ============================================================================
# MAIN
# ============================================================================

def build_relay(data_dir=None, organizer_password: Optional[str] = None) -> Relay:
    store = StateStore(data_dir)
    store.load()
    return Relay(ConnectionRegistry(), store, organizer_password=organizer_password)


async def main():
    """Main entry point."""
    logger.info("=" * 50)
    logger.info("King Of the Bay Tracking Service")
    logger.info("=" * 50)
    logger.info(f"WebSocket port: {config.WEBSOCKET_PORT}")
    logger.info(f"HTTP port: {config.HTTP_PORT}")
    logger.info(f"Data directory: {config.DATA_DIR}")
    logger.info(f"Heartbeat interval: {config.HEARTBEAT_INTERVAL}s")
    logger.info(f"Persist interval: {config.PERSIST_INTERVAL}s")
    logger.info("=" * 50)
    if not config.ORGANIZER_PASSWORD:
        logger.warning("⚠️ ORGANIZER_PASSWORD not set - organizer auth is open")

    relay = build_relay()
    server = TrackingWebSocketServer(relay)
    supervisor = LivenessSupervisor(relay)

    # Liveness is handled by the supervisor, not websockets' own keepalive
    ws_server = await websockets.serve(
        server.handler,
        config.HOST,
        config.WEBSOCKET_PORT,
        ping_interval=None,
    )
    logger.info(f"✅ WebSocket server started on ws://localhost:{config.WEBSOCKET_PORT}")

    runner = web.AppRunner(TrackingHttpApi(relay).create_app())
    await runner.setup()
    site = web.TCPSite(runner, config.HOST, config.HTTP_PORT)
    await site.start()
    logger.info(f"✅ HTTP API started on http://localhost:{config.HTTP_PORT}")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    tasks = [
        asyncio.ensure_future(supervisor.run()),
        asyncio.ensure_future(persistence_loop(relay.store)),
        asyncio.ensure_future(stats_loop(relay)),
    ]
    try:
        await stop.wait()
        logger.info("Shutting down...")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        supervisor.stop()
        ws_server.close()
        await ws_server.wait_closed()
        await runner.cleanup()
        await relay.drain()
        relay.store.persist()
        logger.info("💾 Final state saved")


def run():
    config.configure_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested")


if __name__ == "__main__":
    run()
