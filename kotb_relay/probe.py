#!/usr/bin/env python3
"""
Connection probe for the tracking relay.

Connects, sends a test frame, authenticates as organizer when
ORGANIZER_PASSWORD is set, pings every 5 seconds and prints every frame it
receives.

Usage:
    python -m kotb_relay.probe [ws://host:port]
"""

import asyncio
import json
import os
import sys

from . import config
from .client import ClientState, TrackingClient
from .state_store import utc_now_iso

PING_INTERVAL = 5.0


def print_frame(message: dict) -> None:
    print(f"📥 Received message: {json.dumps(message, indent=2)}")
    if message.get('type') == 'auth_response':
        if message.get('success'):
            print("✅ Authentication successful")
        else:
            print(f"❌ Authentication failed: {message.get('message')}")


async def probe(url: str, password: str = None) -> None:
    client = TrackingClient(
        url,
        role='organizer' if password else 'participant',
        password=password,
    )
    client.on('message', print_frame)

    async def on_state(state: ClientState):
        if state is ClientState.CONNECTED:
            print(f"✅ WebSocket connection established to {url}")
            await client.send('test', {'message': 'Hello from probe', 'timestamp': utc_now_iso()})

    client.on('state', on_state)

    async def pinger():
        while True:
            await asyncio.sleep(PING_INTERVAL)
            if client.state is ClientState.CONNECTED:
                await client.send('ping', {'timestamp': utc_now_iso()})

    ping_task = asyncio.ensure_future(pinger())
    try:
        final_state = await client.run()
        print(f"❌ Probe finished in state {final_state.value}")
    finally:
        ping_task.cancel()


def main():
    config.configure_logging()
    url = sys.argv[1] if len(sys.argv) > 1 else f"ws://localhost:{config.WEBSOCKET_PORT}"
    print(f"Testing WebSocket connection to {url}")
    print("Press Ctrl+C to exit")
    try:
        asyncio.run(probe(url, os.environ.get('ORGANIZER_PASSWORD') or None))
    except KeyboardInterrupt:
        print("\nProbe stopped")


if __name__ == "__main__":
    main()
