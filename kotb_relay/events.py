"""
Observer registration with typed event payloads.

Components publish dataclass events; interested parties subscribe to the
event class (or to a string topic on the client side) instead of poking
callback attributes onto objects.
"""

import asyncio
import functools
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger('Events')

Callback = Callable[[Any], Any]


class EventBus:
    """Synchronous fan-out of events to registered callbacks.

    Keys are either event classes or plain string topics. Callbacks may be
    coroutine functions; their coroutines are scheduled on the running loop.
    A failing subscriber is logged and never affects the publisher.
    """

    def __init__(self):
        self._subscribers: Dict[Any, List[Callback]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, key: Any, callback: Callback) -> Callable[[], None]:
        """Register a callback. Returns a function that removes it again."""
        self._subscribers[key].append(callback)

        def unsubscribe():
            if callback in self._subscribers[key]:
                self._subscribers[key].remove(callback)

        return unsubscribe

    def publish(self, event: Any, key: Any = None) -> None:
        key = key if key is not None else type(event)
        for callback in list(self._subscribers.get(key, ())):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(functools.partial(self._task_done, callback, key))
            except Exception as e:
                logger.error(f"Subscriber {callback!r} failed for {key}: {e}")

    def _task_done(self, callback: Callback, key: Any, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Subscriber {callback!r} failed for {key}: {error}")

    async def drain(self) -> None:
        """Wait for scheduled coroutine subscribers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# ============================================================================
# RELAY EVENTS
# ============================================================================

@dataclass
class ConnectionOpened:
    connectionId: str
    remoteAddress: Optional[str] = None


@dataclass
class ConnectionClosed:
    connectionId: str
    reason: str = 'closed'


@dataclass
class ParticipantRegistered:
    profile: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SosRaised:
    """Emitted after an SOS has been stored and broadcast."""
    participantId: str
    state: Dict[str, Any] = field(default_factory=dict)
