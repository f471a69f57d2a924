import asyncio
import logging

from kotb_relay.events import EventBus, SosRaised


def test_subscribe_publish_unsubscribe():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(SosRaised, received.append)

    bus.publish(SosRaised(participantId='p1'))
    unsubscribe()
    bus.publish(SosRaised(participantId='p2'))

    assert [e.participantId for e in received] == ['p1']


def test_failing_subscriber_does_not_break_others():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError('boom')

    bus.subscribe('message', broken)
    bus.subscribe('message', received.append)
    bus.publish({'type': 'sos'}, key='message')

    assert received == [{'type': 'sos'}]


async def test_coroutine_subscribers_are_scheduled():
    bus = EventBus()
    received = []

    async def handler(event):
        received.append(event)

    bus.subscribe('state', handler)
    bus.publish('connected', key='state')
    await asyncio.sleep(0)

    assert received == ['connected']


async def test_failing_coroutine_subscriber_is_logged(caplog):
    bus = EventBus()

    async def broken(event):
        raise RuntimeError('boom')

    bus.subscribe('state', broken)
    with caplog.at_level(logging.ERROR, logger='Events'):
        bus.publish('connected', key='state')
        await bus.drain()

    assert any('boom' in record.getMessage() for record in caplog.records)
    assert not bus._pending
