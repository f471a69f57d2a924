import json

import pytest

from kotb_relay.messages import (
    AuthMessage,
    MessageValidationError,
    OrganizerBroadcastMessage,
    PingMessage,
    PositionUpdateMessage,
    ProfileUpdateMessage,
    RaceResultsMessage,
    RegisterParticipantMessage,
    SosMessage,
    UnknownMessageType,
    encode_broadcast,
    message_type,
    parse_message,
)
from kotb_relay.state_store import Position
from tests.conftest import frame


@pytest.mark.parametrize('raw', [
    'not json',
    '[1, 2, 3]',
    '{"data": {}}',
    '{"type": 5}',
    '{"type": "position_update", "data": [1]}',
    '{"type": "position_update", "data": {"id": "p1", "speed": 1' + '0' * 400 + '}}',
    '{"type": "position_update", "data": {"id": "p1", "speed": 1' + '0' * 5000 + '}}',
    '[' * 100000,
    '{"type": "raceResults", "data": {"races": {"r1": [{"participantId": "p1", "position": 1.7}]}}}',
])
def test_malformed_frames_are_rejected(raw):
    with pytest.raises(MessageValidationError):
        parse_message(raw)


def test_unknown_type():
    with pytest.raises(UnknownMessageType) as excinfo:
        parse_message(frame('test', {'message': 'hello'}))
    assert excinfo.value.msg_type == 'test'


def test_position_update_keeps_only_present_fields():
    message = parse_message(frame('position_update', {
        'id': 'p1',
        'position': {'lat': 54.69, 'lng': 18.43},
        'speed': 10,
    }))

    assert isinstance(message, PositionUpdateMessage)
    assert message.id == 'p1'
    assert message.values == {'position': Position(54.69, 18.43), 'speed': 10.0}


def test_position_update_full_payload():
    message = parse_message(frame('position_update', {
        'id': 'p_1717_42',
        'name': 'Ola',
        'sailNumber': 'POL-12',
        'color': '#1a73e8',
        'position': {'latitude': 54.69, 'longitude': 18.43, 'accuracy': 4},
        'speed': 9.5,
        'distance': 1500,
        'lastUpdate': '2025-06-01T12:00:00Z',
        'status': 'active',
    }))
    assert message.values['position'].accuracy == 4.0
    assert message.values['status'] == 'active'
    assert 'lastUpdate' not in message.values


@pytest.mark.parametrize('data', [
    {'id': 'p1', 'position': {'lat': 95, 'lng': 18}},
    {'id': 'p1', 'position': {'lat': 54}},
    {'id': 'p1', 'position': 'here'},
    {'id': 'p1', 'speed': 'fast'},
    {'id': 'p1', 'speed': -1},
    {'id': 'p1', 'status': 'sailing'},
    {'id': {'nested': True}},
])
def test_position_update_schema_violations(data):
    with pytest.raises(MessageValidationError):
        parse_message(frame('position_update', data))


def test_numeric_id_is_normalized_to_string():
    message = parse_message(frame('position_update', {'id': 17, 'speed': 1}))
    assert message.id == '17'


def test_legacy_participant_update_is_normalized():
    message = parse_message(frame('participantUpdate', {
        'participantNumber': 42,
        'active': True,
        'position': {'lat': 54.5, 'lng': 18.5},
        'accuracy': 8,
        'timestamp': '2025-06-01T12:00:00Z',
    }, key='payload'))

    assert isinstance(message, PositionUpdateMessage)
    assert message.id == '42'
    assert message.values['position'] == Position(54.5, 18.5, 8.0)
    assert message.values['status'] == 'active'
    assert message.values['active'] is True


@pytest.mark.parametrize('number', [0, 201, 'abc', None, True])
def test_legacy_participant_number_out_of_range(number):
    with pytest.raises(MessageValidationError):
        parse_message(frame('participantUpdate', {'participantNumber': number}, key='payload'))


def test_payload_alias_for_data():
    message = parse_message(frame('sos', {'id': 'p1', 'position': {'lat': 54.68, 'lng': 18.40}}, key='payload'))
    assert isinstance(message, SosMessage)
    assert message.position == Position(54.68, 18.40)


def test_auth_variants():
    organizer = parse_message(frame('auth', {'role': 'organizer', 'password': 'x'}))
    participant = parse_message(frame('auth', {'role': 'participant', 'participantId': 'p1'}))

    assert organizer == AuthMessage(role='organizer', password='x')
    assert participant == AuthMessage(role='participant', participantId='p1')
    with pytest.raises(MessageValidationError):
        parse_message(frame('auth', {'role': 'admin'}))


def test_register_participant_requires_name_and_sail_number():
    message = parse_message(frame('register_participant', {'name': 'Ola', 'sailNumber': 'POL-12', 'email': 'o@x.pl'}))
    assert isinstance(message, RegisterParticipantMessage)
    assert message.profile_fields()['email'] == 'o@x.pl'

    with pytest.raises(MessageValidationError):
        parse_message(frame('register_participant', {'name': 'Ola'}))


def test_profile_update_collects_known_fields():
    message = parse_message(frame('profile_update', {'id': 'p1', 'phone': '123', 'admin': True}))
    assert message == ProfileUpdateMessage(id='p1', values={'phone': '123'})


def test_organizer_message_and_race_results():
    note = parse_message(frame('organizerMessage', {'message': 'Race starts in 5 min'}))
    assert note == OrganizerBroadcastMessage(message='Race starts in 5 min')

    results = parse_message(frame('raceResults', {'races': {'r1': [{'participantId': 'p1', 'position': 1}]}}))
    assert isinstance(results, RaceResultsMessage)
    assert results.races == {'r1': [{'participantId': 'p1', 'position': 1, 'time': None}]}

    with pytest.raises(MessageValidationError):
        parse_message(frame('raceResults', {'races': {'r1': [{'position': 1}]}}))
    with pytest.raises(MessageValidationError):
        parse_message(frame('organizerMessage', {}))


def test_ping_and_message_type():
    message = parse_message(frame('ping'))
    assert isinstance(message, PingMessage)
    assert message_type(message) == 'ping'


def test_encode_broadcast():
    assert json.loads(encode_broadcast('sos', {'id': 'p1'})) == {'type': 'sos', 'data': {'id': 'p1'}}
