"""
Liveness supervisor: heartbeat every connection, evict the silent ones.

A sweep clears each connection's alive flag and sends a ping; a pong or any
inbound frame sets it again. A connection still flagged dead at the next
sweep is closed, so eviction takes two intervals and never happens on the
sweep that probed it.
"""

import asyncio
import logging
from typing import Optional, Set

from websockets.exceptions import ConnectionClosed

from . import config
from .registry import Connection
from .relay import Relay

logger = logging.getLogger('LivenessSupervisor')


class LivenessSupervisor:

    def __init__(self, relay: Relay, interval: float = None):
        self.relay = relay
        self.registry = relay.registry
        self.interval = config.HEARTBEAT_INTERVAL if interval is None else interval
        self._pong_tasks: Set[asyncio.Task] = set()

    async def sweep(self) -> int:
        """Run one heartbeat round. Returns the number of evicted connections."""
        evicted = 0
        for connection in self.registry.connections():
            if not connection.alive:
                await self._evict(connection)
                evicted += 1
                continue
            connection.alive = False
            await self._probe(connection)

        if evicted:
            logger.info(f"💔 Evicted {evicted} unresponsive connection(s). Total: {len(self.registry)}")
        return evicted

    async def _probe(self, connection: Connection) -> None:
        try:
            pong_waiter = await connection.transport.ping()
        except Exception as e:
            logger.debug(f"Ping to {connection.id} failed: {e}")
            return

        task = asyncio.ensure_future(self._await_pong(connection.id, pong_waiter))
        self._pong_tasks.add(task)
        task.add_done_callback(self._pong_tasks.discard)

    async def _await_pong(self, connection_id: str, pong_waiter) -> None:
        try:
            await pong_waiter
        except ConnectionClosed:
            # the next sweep evicts it
            return
        self.registry.mark_alive(connection_id)

    async def _evict(self, connection: Connection) -> None:
        logger.warning(f"💔 Connection {connection.id} ({connection.role.value}) missed heartbeat, closing")
        try:
            await connection.transport.close(code=1001, reason='heartbeat timeout')
        except Exception as e:
            logger.debug(f"Close of {connection.id} failed: {e}")
        await self.relay.disconnect(connection.id, reason='heartbeat timeout')

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        logger.info(f"💓 Liveness supervisor started (interval {self.interval}s)")
        while stop is None or not stop.is_set():
            await asyncio.sleep(self.interval)
            await self.sweep()

    def stop(self) -> None:
        for task in list(self._pong_tasks):
            task.cancel()
