"""
Wire messages.

Every inbound frame is a JSON object with a ``type`` string and a ``data``
object (``payload`` is accepted as an alias). Each type maps to one of the
dataclasses below, validated by its own ``from_data``. Anything that does
not fit raises MessageValidationError; the relay logs and drops it.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from . import config
from .state_store import Position, STATUSES


class MessageValidationError(ValueError):
    """Frame is unparseable or does not match the schema of its type."""


class UnknownMessageType(MessageValidationError):
    def __init__(self, msg_type: str):
        super().__init__(f"Unknown message type: {msg_type}")
        self.msg_type = msg_type


# ============================================================================
# FIELD VALIDATORS
# ============================================================================

def _string(data: Dict, key: str, max_length: int = 128, required: bool = False) -> Optional[str]:
    value = data.get(key)
    if value is None or value == '':
        if required:
            raise MessageValidationError(f"'{key}' is required")
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise MessageValidationError(f"'{key}' must be a string")
    return str(value).strip()[:max_length]


def _number(data: Dict, key: str, min_val: float = None, max_val: float = None) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise MessageValidationError(f"'{key}' must be a number")
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        raise MessageValidationError(f"'{key}' must be a number")
    if math.isnan(result) or math.isinf(result):
        raise MessageValidationError(f"'{key}' must be finite")
    if min_val is not None and result < min_val:
        raise MessageValidationError(f"'{key}' must be >= {min_val}")
    if max_val is not None and result > max_val:
        raise MessageValidationError(f"'{key}' must be <= {max_val}")
    return result


def _participant_id(data: Dict, key: str = 'id') -> Optional[str]:
    return _string(data, key, max_length=64)


def _position(value: Any) -> Optional[Position]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise MessageValidationError("'position' must be an object")
    latitude = _number(value, 'latitude', -90.0, 90.0)
    if latitude is None:
        latitude = _number(value, 'lat', -90.0, 90.0)
    longitude = _number(value, 'longitude', -180.0, 180.0)
    if longitude is None:
        longitude = _number(value, 'lng', -180.0, 180.0)
    if longitude is None:
        longitude = _number(value, 'lon', -180.0, 180.0)
    if latitude is None or longitude is None:
        raise MessageValidationError("'position' needs latitude and longitude")
    return Position(latitude=latitude, longitude=longitude, accuracy=_number(value, 'accuracy', 0.0))


def _status(data: Dict) -> Optional[str]:
    status = _string(data, 'status', max_length=16)
    if status is not None and status not in STATUSES:
        raise MessageValidationError(f"'status' must be one of {', '.join(STATUSES)}")
    return status


# ============================================================================
# MESSAGE VARIANTS
# ============================================================================

@dataclass
class AuthMessage:
    role: str
    password: Optional[str] = None
    participantId: Optional[str] = None

    @classmethod
    def from_data(cls, data: Dict) -> 'AuthMessage':
        role = _string(data, 'role', max_length=16, required=True)
        if role not in ('organizer', 'participant'):
            raise MessageValidationError("'role' must be organizer or participant")
        return cls(
            role=role,
            password=_string(data, 'password', max_length=256),
            participantId=_participant_id(data, 'participantId'),
        )


@dataclass
class RegisterParticipantMessage:
    name: str
    sailNumber: str
    id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    emergencyContact: Optional[str] = None
    trackingColor: Optional[str] = None

    @classmethod
    def from_data(cls, data: Dict) -> 'RegisterParticipantMessage':
        return cls(
            name=_string(data, 'name', max_length=64, required=True),
            sailNumber=_string(data, 'sailNumber', max_length=32, required=True),
            id=_participant_id(data),
            email=_string(data, 'email'),
            phone=_string(data, 'phone', max_length=32),
            emergencyContact=_string(data, 'emergencyContact'),
            trackingColor=_string(data, 'trackingColor', max_length=16),
        )

    def profile_fields(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'sailNumber': self.sailNumber,
            'email': self.email,
            'phone': self.phone,
            'emergencyContact': self.emergencyContact,
            'trackingColor': self.trackingColor,
        }


PROFILE_UPDATE_FIELDS = {
    'name': 64, 'sailNumber': 32, 'email': 128, 'phone': 32,
    'emergencyContact': 128, 'trackingColor': 16,
}


@dataclass
class ProfileUpdateMessage:
    id: Optional[str]
    values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_data(cls, data: Dict) -> 'ProfileUpdateMessage':
        values = {}
        for key, max_length in PROFILE_UPDATE_FIELDS.items():
            if key in data:
                values[key] = _string(data, key, max_length=max_length)
        return cls(id=_participant_id(data), values=values)


@dataclass
class PositionUpdateMessage:
    """Only the fields present in the frame end up in ``values``."""
    id: Optional[str]
    values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_data(cls, data: Dict) -> 'PositionUpdateMessage':
        values: Dict[str, Any] = {}
        for key, max_length in (('name', 64), ('sailNumber', 32), ('color', 16)):
            value = _string(data, key, max_length=max_length)
            if value is not None:
                values[key] = value
        position = _position(data.get('position'))
        if position is not None:
            values['position'] = position
        speed = _number(data, 'speed', 0.0)
        if speed is not None:
            values['speed'] = speed
        distance = _number(data, 'distance', 0.0)
        if distance is not None:
            values['distance'] = distance
        status = _status(data)
        if status is not None:
            values['status'] = status
        if isinstance(data.get('active'), bool):
            values['active'] = data['active']
        return cls(id=_participant_id(data), values=values)

    @classmethod
    def from_legacy(cls, data: Dict) -> 'PositionUpdateMessage':
        """Normalize a ``participantUpdate`` frame keyed by participant number."""
        number = data.get('participantNumber')
        if isinstance(number, bool):
            raise MessageValidationError('Invalid participant number')
        try:
            number = int(number)
        except (TypeError, ValueError):
            raise MessageValidationError(f"Invalid participant number: {number!r}")
        if not config.MIN_PARTICIPANT_NUMBER <= number <= config.MAX_PARTICIPANT_NUMBER:
            raise MessageValidationError(f"Invalid participant number: {number}")

        values: Dict[str, Any] = {}
        position = _position(data.get('position'))
        if position is not None:
            accuracy = _number(data, 'accuracy', 0.0)
            if accuracy is not None:
                position.accuracy = accuracy
            values['position'] = position
        active = bool(data.get('active'))
        values['active'] = active
        values['status'] = 'active' if active else 'inactive'
        return cls(id=str(number), values=values)


@dataclass
class SosMessage:
    id: Optional[str]
    position: Optional[Position] = None
    message: Optional[str] = None
    values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_data(cls, data: Dict) -> 'SosMessage':
        values = {}
        for key, max_length in (('name', 64), ('sailNumber', 32), ('color', 16)):
            value = _string(data, key, max_length=max_length)
            if value is not None:
                values[key] = value
        return cls(
            id=_participant_id(data),
            position=_position(data.get('position')),
            message=_string(data, 'message', max_length=512),
            values=values,
        )


@dataclass
class OrganizerBroadcastMessage:
    message: str
    sender: Optional[str] = None

    @classmethod
    def from_data(cls, data: Dict) -> 'OrganizerBroadcastMessage':
        return cls(
            message=_string(data, 'message', max_length=2000, required=True),
            sender=_string(data, 'sender', max_length=64),
        )


@dataclass
class RaceResultsMessage:
    races: Dict[str, List[Dict[str, Any]]]

    @classmethod
    def from_data(cls, data: Dict) -> 'RaceResultsMessage':
        races = data.get('races')
        if not isinstance(races, dict):
            raise MessageValidationError("'races' must be an object keyed by race id")
        cleaned: Dict[str, List[Dict[str, Any]]] = {}
        for race_id, entries in races.items():
            if not isinstance(entries, list):
                raise MessageValidationError(f"race {race_id} results must be a list")
            cleaned_entries = []
            for entry in entries:
                if not isinstance(entry, dict):
                    raise MessageValidationError(f"race {race_id} has a malformed result")
                participant_id = _participant_id(entry, 'participantId')
                position = _number(entry, 'position', 1)
                if participant_id is None or position is None:
                    raise MessageValidationError(f"race {race_id} result needs participantId and position")
                if not position.is_integer():
                    raise MessageValidationError(f"race {race_id} position must be a whole number")
                cleaned_entries.append({
                    'participantId': participant_id,
                    'position': int(position),
                    'time': _string(entry, 'time', max_length=32),
                })
            cleaned[str(race_id)] = cleaned_entries
        return cls(races=cleaned)


@dataclass
class PingMessage:
    @classmethod
    def from_data(cls, data: Dict) -> 'PingMessage':
        return cls()


InboundMessage = Union[
    AuthMessage, RegisterParticipantMessage, ProfileUpdateMessage, PositionUpdateMessage,
    SosMessage, OrganizerBroadcastMessage, RaceResultsMessage, PingMessage,
]

MESSAGE_TYPES = {
    'auth': AuthMessage,
    'register_participant': RegisterParticipantMessage,
    'profile_update': ProfileUpdateMessage,
    'position_update': PositionUpdateMessage,
    'sos': SosMessage,
    'organizerMessage': OrganizerBroadcastMessage,
    'raceResults': RaceResultsMessage,
    'ping': PingMessage,
}

LEGACY_PARTICIPANT_UPDATE = 'participantUpdate'


def parse_message(raw: Union[str, bytes]) -> InboundMessage:
    """Decode one frame into its message variant."""
    try:
        frame = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError, UnicodeDecodeError and oversized integers are all ValueErrors
        raise MessageValidationError(f"Invalid JSON: {e}")
    if not isinstance(frame, dict):
        raise MessageValidationError('Frame must be a JSON object')

    msg_type = frame.get('type')
    if not isinstance(msg_type, str) or not msg_type:
        raise MessageValidationError("Frame has no 'type'")

    data = frame.get('data', frame.get('payload'))
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MessageValidationError(f"'{msg_type}' data must be an object")

    if msg_type == LEGACY_PARTICIPANT_UPDATE:
        return PositionUpdateMessage.from_legacy(data)

    message_class = MESSAGE_TYPES.get(msg_type)
    if message_class is None:
        raise UnknownMessageType(msg_type)
    return message_class.from_data(data)


def message_type(message: InboundMessage) -> str:
    for name, message_class in MESSAGE_TYPES.items():
        if isinstance(message, message_class):
            return name
    raise TypeError(f"Not a message variant: {message!r}")


# ============================================================================
# OUTBOUND FRAMES
# ============================================================================

def encode_broadcast(msg_type: str, data: Any) -> str:
    return json.dumps({'type': msg_type, 'data': data})


def encode_reply(msg_type: str, **fields: Any) -> str:
    return json.dumps({'type': msg_type, **fields})
