import asyncio
import itertools
import json

import pytest
from websockets.exceptions import ConnectionClosed

from kotb_relay.registry import ConnectionRegistry
from kotb_relay.relay import Relay
from kotb_relay.state_store import StateStore

PASSWORD = 'regatta'


class FakeTransport:
    """Stands in for a websockets connection."""

    def __init__(self, address=('127.0.0.1', 50000)):
        self.remote_address = address
        self.sent = []
        self.pings = []
        self.closed = False
        self.close_code = None

    async def send(self, frame):
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(frame))

    async def ping(self):
        if self.closed:
            raise ConnectionClosed(None, None)
        waiter = asyncio.get_running_loop().create_future()
        self.pings.append(waiter)
        return waiter

    async def close(self, code=1000, reason=''):
        self.closed = True
        self.close_code = code

    def types(self):
        return [m['type'] for m in self.sent]

    def of_type(self, msg_type):
        return [m for m in self.sent if m['type'] == msg_type]


def frame(msg_type, data=None, key='data'):
    message = {'type': msg_type}
    if data is not None:
        message[key] = data
    return json.dumps(message)


def make_clock():
    counter = itertools.count(1)
    return lambda: f"2025-06-01T12:00:{next(counter):02d}.000Z"


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / 'data', clock=make_clock())


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def relay(registry, store):
    return Relay(registry, store, organizer_password=PASSWORD)


@pytest.fixture
def connect(relay):
    async def _connect(role=None, participant_id=None):
        transport = FakeTransport()
        connection_id = await relay.connect(transport)
        if role == 'organizer':
            await relay.handle_inbound(connection_id, frame('auth', {'role': 'organizer', 'password': PASSWORD}))
        elif role == 'participant':
            await relay.handle_inbound(connection_id, frame('auth', {'role': 'participant', 'participantId': participant_id}))
        transport.sent.clear()
        return connection_id, transport
    return _connect
