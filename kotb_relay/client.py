"""
Reconnecting tracking client.

Explicit state machine around a WebSocket connection to the relay:

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED ... -> DEGRADED

Outbound messages are queued FIFO while not connected and flushed in order
once connected, right after re-authenticating. After the retry budget is
spent the client stays DEGRADED and writes messages to a local JSON
fallback file instead of dropping them.
"""

import asyncio
import json
import logging
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from . import config
from .events import EventBus

logger = logging.getLogger('TrackingClient')


class ClientState(str, Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    DEGRADED = 'degraded'


class JsonFileFallback:
    """Keeps the latest undeliverable message per participant in a JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"❌ Could not read fallback file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, message: Dict[str, Any]) -> None:
        data = self.load()
        payload = message.get('data') or {}
        key = str(payload.get('id') or message.get('type'))
        data[key] = message
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.path.with_suffix('.tmp')
            with open(tmp_file, 'w') as f:
                json.dump(data, f, indent=2)
            tmp_file.replace(self.path)
        except OSError as e:
            logger.error(f"❌ Could not write fallback file {self.path}: {e}")


class TrackingClient:
    """
    Client side of the relay protocol with reconnect-and-queue behaviour.

    ``connect`` and ``sleep`` are injectable so tests can drive the state
    machine without a network or real time.
    """

    def __init__(self, url: str, *,
                 role: str = 'participant',
                 participant_id: Optional[str] = None,
                 password: Optional[str] = None,
                 registration: Optional[Dict[str, Any]] = None,
                 max_attempts: int = config.MAX_RECONNECT_ATTEMPTS,
                 reconnect_delay: float = config.RECONNECT_DELAY,
                 backoff: str = 'fixed',
                 fallback: Optional[JsonFileFallback] = None,
                 connect: Callable[[str], Awaitable[Any]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if backoff not in ('fixed', 'linear'):
            raise ValueError("backoff must be 'fixed' or 'linear'")
        self.url = url
        self.role = role
        self.participant_id = participant_id
        self.password = password
        self.registration = registration
        self.max_attempts = max_attempts
        self.reconnect_delay = reconnect_delay
        self.backoff = backoff
        self.fallback = fallback or JsonFileFallback(Path('tracking_fallback.json'))
        self._connect = connect or websockets.connect
        self._sleep = sleep

        self.state = ClientState.DISCONNECTED
        self.attempts = 0
        self.queue: Deque[Dict[str, Any]] = deque()
        self.events = EventBus()
        self._websocket = None
        self._closing = False
        self._flushing = False

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def on(self, topic: str, callback: Callable[[Any], Any]) -> Callable[[], None]:
        """Subscribe to 'state', 'message' or a specific message type."""
        return self.events.subscribe(topic, callback)

    def _set_state(self, state: ClientState) -> None:
        if state is self.state:
            return
        logger.info(f"🔌 {self.state.value} -> {state.value}")
        self.state = state
        self.events.publish(state, key='state')

    # =========================================================================
    # CONNECTION LOOP
    # =========================================================================

    def reconnect_delay_for(self, attempt: int) -> float:
        if self.backoff == 'linear':
            return self.reconnect_delay * attempt
        return self.reconnect_delay

    async def run(self) -> ClientState:
        """Connect and keep reconnecting until closed or degraded."""
        while not self._closing:
            self._set_state(ClientState.CONNECTING)
            try:
                websocket = await self._connect(self.url)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logger.warning(f"⚠️ Connection to {self.url} failed: {e}")
            else:
                self.attempts = 0
                await self._session(websocket)

            self._websocket = None
            if self._closing:
                break
            self._set_state(ClientState.DISCONNECTED)

            if self.attempts >= self.max_attempts:
                logger.error("❌ Maximum reconnect attempts reached. Using local fallback.")
                self._degrade()
                break
            self.attempts += 1
            delay = self.reconnect_delay_for(self.attempts)
            logger.info(f"Scheduling reconnect attempt {self.attempts}/{self.max_attempts} in {delay}s")
            await self._sleep(delay)

        if self._closing and self.state is not ClientState.DEGRADED:
            self._set_state(ClientState.DISCONNECTED)
        return self.state

    async def _session(self, websocket) -> None:
        self._websocket = websocket
        self._set_state(ClientState.CONNECTED)
        try:
            await self._authenticate(websocket)
            await self._flush()
            async for raw in websocket:
                self._dispatch(raw)
        except ConnectionClosed as e:
            logger.info(f"Connection closed: {e}")

    async def _authenticate(self, websocket) -> None:
        """Re-issued on every fresh connection; the server keeps no session."""
        hello = self.auth_message()
        if hello is not None:
            await websocket.send(json.dumps(hello))

    def auth_message(self) -> Optional[Dict[str, Any]]:
        if self.role == 'organizer':
            return {'type': 'auth', 'data': {'role': 'organizer', 'password': self.password or ''}}
        if self.participant_id:
            return {'type': 'auth', 'data': {'role': 'participant', 'participantId': self.participant_id}}
        if self.registration:
            return {'type': 'register_participant', 'data': dict(self.registration)}
        return None

    async def _flush(self) -> None:
        self._flushing = True
        try:
            while self.queue and self.state is ClientState.CONNECTED:
                # pop only after a successful send so nothing is lost or doubled
                await self._websocket.send(json.dumps(self.queue[0]))
                self.queue.popleft()
        finally:
            self._flushing = False

    def _dispatch(self, raw) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON from server: {e}")
            return
        if not isinstance(message, dict):
            return

        msg_type = message.get('type')
        if msg_type == 'registration_response' and message.get('success'):
            profile = message.get('profile') or {}
            if profile.get('id'):
                self.participant_id = profile['id']
                logger.info(f"📝 Registered as {self.participant_id}")
        elif msg_type == 'auth_response' and not message.get('success'):
            logger.warning(f"🔒 Authentication failed: {message.get('message')}")

        self.events.publish(message, key='message')
        if msg_type:
            self.events.publish(message, key=msg_type)

    def _degrade(self) -> None:
        self._set_state(ClientState.DEGRADED)
        while self.queue:
            self.fallback.save(self.queue.popleft())

    # =========================================================================
    # OUTBOUND
    # =========================================================================

    async def send(self, msg_type: str, data: Dict[str, Any]) -> None:
        message = {'type': msg_type, 'data': data}
        if self.state is ClientState.DEGRADED:
            self.fallback.save(message)
            return
        if self.state is not ClientState.CONNECTED or self._flushing or self.queue:
            self.queue.append(message)
            return
        try:
            await self._websocket.send(json.dumps(message))
        except ConnectionClosed:
            self.queue.append(message)

    async def send_position(self, data: Dict[str, Any]) -> None:
        await self.send('position_update', {'id': self.participant_id, **data})

    async def send_sos(self, position: Optional[Dict[str, Any]] = None, message: Optional[str] = None) -> None:
        data: Dict[str, Any] = {'id': self.participant_id, 'status': 'sos'}
        if position is not None:
            data['position'] = position
        if message is not None:
            data['message'] = message
        await self.send('sos', data)

    async def close(self) -> None:
        self._closing = True
        if self._websocket is not None:
            await self._websocket.close()
