import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosed

from kotb_relay.client import ClientState, JsonFileFallback, TrackingClient

CLOSE = object()


class FakeClientWebSocket:
    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False

    async def send(self, frame):
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(frame))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is CLOSE:
            raise ConnectionClosed(None, None)
        return item

    def push(self, message):
        self.incoming.put_nowait(json.dumps(message))

    def drop(self):
        self.closed = True
        self.incoming.put_nowait(CLOSE)

    async def close(self):
        self.drop()

    def types(self):
        return [m['type'] for m in self.sent]


class Dialer:
    """Connect factory returning scripted websockets or errors."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, url):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else OSError('connection refused')
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class GatedSleep:
    def __init__(self, gated=False):
        self.delays = []
        self.gate = asyncio.Event()
        if not gated:
            self.gate.set()

    async def __call__(self, delay):
        self.delays.append(delay)
        await self.gate.wait()


async def wait_until(predicate):
    for _ in range(500):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError('condition not reached')


def make_client(tmp_path, dialer, sleep, **kwargs):
    kwargs.setdefault('participant_id', 'p1')
    return TrackingClient(
        'ws://relay.test',
        fallback=JsonFileFallback(tmp_path / 'fallback.json'),
        connect=dialer,
        sleep=sleep,
        **kwargs,
    )


async def test_queued_messages_flush_in_order_after_auth(tmp_path):
    websocket = FakeClientWebSocket()
    client = make_client(tmp_path, Dialer(websocket), GatedSleep())

    for speed in (1, 2, 3):
        await client.send_position({'speed': speed})
    assert len(client.queue) == 3

    task = asyncio.ensure_future(client.run())
    await wait_until(lambda: len(websocket.sent) == 4)

    assert websocket.sent[0] == {'type': 'auth', 'data': {'role': 'participant', 'participantId': 'p1'}}
    assert [m['data']['speed'] for m in websocket.sent[1:]] == [1, 2, 3]
    assert not client.queue

    await client.close()
    assert await task is ClientState.DISCONNECTED


async def test_reconnect_reauthenticates_and_delivers_queue_exactly_once(tmp_path):
    first, second = FakeClientWebSocket(), FakeClientWebSocket()
    sleep = GatedSleep(gated=True)
    client = make_client(tmp_path, Dialer(first, second), sleep)

    task = asyncio.ensure_future(client.run())
    await wait_until(lambda: first.sent)
    await client.send_position({'speed': 1})
    first.drop()
    await wait_until(lambda: sleep.delays)

    assert client.state is ClientState.DISCONNECTED
    await client.send_position({'speed': 2})
    await client.send_sos(position={'lat': 54.68, 'lng': 18.40})
    sleep.gate.set()
    await wait_until(lambda: len(second.sent) == 3)

    assert first.types() == ['auth', 'position_update']
    assert second.types() == ['auth', 'position_update', 'sos']
    assert second.sent[1]['data']['speed'] == 2
    assert second.sent[2]['data'] == {'id': 'p1', 'status': 'sos', 'position': {'lat': 54.68, 'lng': 18.40}}

    await client.close()
    await task


async def test_degrades_after_retry_budget_and_uses_fallback(tmp_path):
    sleep = GatedSleep()
    client = make_client(tmp_path, Dialer(), sleep, max_attempts=2)
    await client.send_position({'speed': 5})

    assert await client.run() is ClientState.DEGRADED
    assert sleep.delays == [3.0, 3.0]
    assert not client.queue

    await client.send_sos(position={'lat': 54.68, 'lng': 18.40})
    with open(tmp_path / 'fallback.json') as f:
        saved = json.load(f)
    assert saved['p1']['type'] == 'sos'


async def test_linear_backoff(tmp_path):
    sleep = GatedSleep()
    client = make_client(tmp_path, Dialer(), sleep, max_attempts=3, reconnect_delay=1.0, backoff='linear')

    await client.run()
    assert sleep.delays == [1.0, 2.0, 3.0]


def test_unknown_backoff_rejected(tmp_path):
    with pytest.raises(ValueError):
        make_client(tmp_path, Dialer(), GatedSleep(), backoff='exponential-ish')


async def test_successful_connection_resets_attempts(tmp_path):
    websocket = FakeClientWebSocket()
    client = make_client(tmp_path, Dialer(OSError('down'), websocket), GatedSleep(), max_attempts=1)

    task = asyncio.ensure_future(client.run())
    await wait_until(lambda: client.state is ClientState.CONNECTED)
    assert client.attempts == 0

    await client.close()
    await task


async def test_registration_then_auth_with_assigned_id(tmp_path):
    first, second = FakeClientWebSocket(), FakeClientWebSocket()
    client = make_client(tmp_path, Dialer(first, second), GatedSleep(), participant_id=None,
                         registration={'name': 'Ola', 'sailNumber': 'POL-12'})

    task = asyncio.ensure_future(client.run())
    await wait_until(lambda: first.sent)
    assert first.sent[0] == {'type': 'register_participant', 'data': {'name': 'Ola', 'sailNumber': 'POL-12'}}

    first.push({'type': 'registration_response', 'success': True, 'profile': {'id': 'p_1_ab'}})
    await wait_until(lambda: client.participant_id == 'p_1_ab')
    first.drop()
    await wait_until(lambda: second.sent)

    assert second.sent[0] == {'type': 'auth', 'data': {'role': 'participant', 'participantId': 'p_1_ab'}}
    await client.close()
    await task


async def test_organizer_auth_and_subscriptions(tmp_path):
    websocket = FakeClientWebSocket()
    client = make_client(tmp_path, Dialer(websocket), GatedSleep(), role='organizer', password='regatta')
    states, sos_alerts, everything = [], [], []
    client.on('state', states.append)
    client.on('sos', sos_alerts.append)
    client.on('message', everything.append)

    task = asyncio.ensure_future(client.run())
    await wait_until(lambda: websocket.sent)
    assert websocket.sent[0] == {'type': 'auth', 'data': {'role': 'organizer', 'password': 'regatta'}}

    websocket.push({'type': 'sos', 'data': {'id': 'p1'}})
    websocket.push({'type': 'position_update', 'data': {'id': 'p2'}})
    await wait_until(lambda: len(everything) == 2)

    assert [m['data']['id'] for m in sos_alerts] == ['p1']
    await client.close()
    await task
    assert states == [ClientState.CONNECTING, ClientState.CONNECTED, ClientState.DISCONNECTED]
