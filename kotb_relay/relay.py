"""
Relay / message router.

Single entry point for inbound frames: parse, update the state store and fan
the result out to organizers, participants or just the sender.
"""

import asyncio
import hmac
import logging
from typing import Any, Optional, Set

from websockets.exceptions import ConnectionClosed

from . import config
from .events import ConnectionClosed as ConnectionClosedEvent
from .events import ConnectionOpened, EventBus, ParticipantRegistered, SosRaised
from .messages import (
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
    encode_reply,
    parse_message,
)
from .registry import Connection, ConnectionRegistry, Role
from .state_store import StateStore, utc_now_iso

logger = logging.getLogger('Relay')


class Relay:
    """Routes messages between participant and organizer connections.

    Frames from one connection are handled one at a time in arrival order,
    and every accepted update is broadcast as it is applied (no coalescing).
    """

    def __init__(self, registry: ConnectionRegistry, store: StateStore,
                 organizer_password: Optional[str] = None, events: Optional[EventBus] = None):
        self.registry = registry
        self.store = store
        self.organizer_password = config.ORGANIZER_PASSWORD if organizer_password is None else organizer_password
        self.events = events or EventBus()
        self._background: Set[asyncio.Task] = set()

        self._handlers = {
            AuthMessage: self._handle_auth,
            RegisterParticipantMessage: self._handle_register,
            ProfileUpdateMessage: self._handle_profile_update,
            PositionUpdateMessage: self._handle_position_update,
            SosMessage: self._handle_sos,
            OrganizerBroadcastMessage: self._handle_organizer_message,
            RaceResultsMessage: self._handle_race_results,
            PingMessage: self._handle_ping,
        }

    # =========================================================================
    # CONNECTION LIFECYCLE
    # =========================================================================

    async def connect(self, transport: Any) -> str:
        """Register a transport and bring it up to date with an init frame."""
        connection_id = self.registry.register(transport)
        connection = self.registry.get(connection_id)
        logger.info(f"📡 Client {connection_id} connected from {connection.remote_address or '?'}. Total: {len(self.registry)}")

        init = encode_reply('init', data=self.store.snapshot_all(), participants=self.store.all_profiles())
        await self._send(connection, init)
        self.events.publish(ConnectionOpened(connectionId=connection_id, remoteAddress=connection.remote_address))
        return connection_id

    async def disconnect(self, connection_id: str, reason: str = 'closed') -> None:
        connection = self.registry.unregister(connection_id)
        if connection is None:
            return
        logger.info(f"📡 Client {connection_id} ({connection.role.value}) disconnected: {reason}. Total: {len(self.registry)}")
        self.events.publish(ConnectionClosedEvent(connectionId=connection_id, reason=reason))

    # =========================================================================
    # INBOUND
    # =========================================================================

    async def handle_inbound(self, connection_id: str, raw) -> None:
        connection = self.registry.get(connection_id)
        if connection is None:
            logger.debug(f"Frame from unknown connection {connection_id} ignored")
            return
        connection.alive = True

        try:
            message = parse_message(raw)
        except UnknownMessageType as e:
            logger.info(f"Unknown message type from {connection_id}: {e.msg_type}")
            return
        except MessageValidationError as e:
            logger.warning(f"⚠️ Dropped malformed frame from {connection_id}: {e}")
            return

        await self._handlers[type(message)](connection, message)

    async def _handle_auth(self, connection: Connection, message: AuthMessage) -> None:
        if message.role == Role.ORGANIZER.value:
            if self.organizer_password and not hmac.compare_digest(
                    (message.password or '').encode(), self.organizer_password.encode()):
                logger.warning(f"🔒 Organizer auth failed for {connection.id}")
                await self._send(connection, encode_reply(
                    'auth_response', success=False, role='organizer', message='Invalid organizer password'))
                return
            self.registry.mark_role(connection.id, Role.ORGANIZER)
            logger.info(f"🔑 {connection.id} authenticated as organizer")
            await self._send(connection, encode_reply('auth_response', success=True, role='organizer'))
            return

        if not message.participantId:
            await self._send(connection, encode_reply(
                'auth_response', success=False, role='participant', message='participantId is required'))
            return

        self.registry.mark_role(connection.id, Role.PARTICIPANT, message.participantId)
        profile = self.store.find_profile(message.participantId)
        if profile is None:
            logger.info(f"🔑 {connection.id} authenticated as unregistered participant {message.participantId}")
        else:
            logger.info(f"🔑 {connection.id} authenticated as participant {message.participantId}")
        await self._send(connection, encode_reply(
            'auth_response', success=True, role='participant',
            profile=profile.to_dict() if profile else None))

    async def _handle_register(self, connection: Connection, message: RegisterParticipantMessage) -> None:
        profile = self.store.upsert_profile(message.profile_fields()).to_dict()
        self.registry.mark_role(connection.id, Role.PARTICIPANT, profile['id'])

        await self._send(connection, encode_reply('registration_response', success=True, profile=profile))
        await self.broadcast(Role.ORGANIZER, encode_broadcast('participant_registered', profile))
        self.events.publish(ParticipantRegistered(profile=profile))

    async def _handle_profile_update(self, connection: Connection, message: ProfileUpdateMessage) -> None:
        participant_id = message.id or connection.participant_id
        if not participant_id:
            logger.warning(f"⚠️ profile_update from {connection.id} without participant id dropped")
            await self._send(connection, encode_reply('error', message='profile_update needs a participant id'))
            return

        profile = self.store.update_profile(participant_id, message.values).to_dict()
        logger.info(f"✏️ Profile updated for {participant_id}")
        await self.broadcast(Role.ORGANIZER, encode_broadcast('profile_updated', profile))

    async def _handle_position_update(self, connection: Connection, message: PositionUpdateMessage) -> None:
        participant_id = self._resolve_participant(connection, message.id)
        if participant_id is None:
            logger.warning(f"⚠️ position_update from {connection.id} without participant id dropped")
            return

        state = self.store.upsert_tracking(participant_id, message.values)
        position = state.position
        logger.debug(
            f"📍 {participant_id}: "
            f"{f'{position.latitude:.6f}, {position.longitude:.6f}' if position else 'no position'} "
            f"({state.status})"
        )
        await self.broadcast(Role.ORGANIZER, encode_broadcast('position_update', state.to_dict()))

    async def _handle_sos(self, connection: Connection, message: SosMessage) -> None:
        participant_id = self._resolve_participant(connection, message.id)
        if participant_id is None:
            logger.warning(f"⚠️ SOS from {connection.id} without participant id dropped")
            return

        if message.values:
            self.store.upsert_tracking(participant_id, message.values)
        state = self.store.mark_sos(participant_id, position=message.position, message=message.message)
        data = state.to_dict()

        # sos goes out before the derived position_update
        await self.broadcast(Role.ORGANIZER, encode_broadcast('sos', data))
        await self.broadcast(Role.ORGANIZER, encode_broadcast('position_update', data))
        self._spawn(self.store.persist_async())

        logger.warning(f"🆘 SOS from {participant_id} relayed to {len(self.registry.list_by_role(Role.ORGANIZER))} organizer(s)")
        self.events.publish(SosRaised(participantId=participant_id, state=data))

    async def _handle_organizer_message(self, connection: Connection, message: OrganizerBroadcastMessage) -> None:
        if not await self._require_organizer(connection, 'organizerMessage'):
            return
        data = {
            'message': message.message,
            'sender': message.sender or 'Organizer',
            'timestamp': utc_now_iso(),
        }
        logger.info(f"📢 Organizer message: {message.message[:80]}")
        await self.broadcast(Role.PARTICIPANT, encode_broadcast('organizerMessage', data))

    async def _handle_race_results(self, connection: Connection, message: RaceResultsMessage) -> None:
        if not await self._require_organizer(connection, 'raceResults'):
            return
        self.store.store_race_results(message.races)
        await self.broadcast(Role.PARTICIPANT, encode_broadcast('raceResults', {'races': message.races}))

    async def _handle_ping(self, connection: Connection, message: PingMessage) -> None:
        await self._send(connection, encode_reply('pong', timestamp=utc_now_iso()))

    def _resolve_participant(self, connection: Connection, participant_id: Optional[str]) -> Optional[str]:
        participant_id = participant_id or connection.participant_id
        if participant_id and connection.role is Role.ANONYMOUS:
            # a device that reports positions is a participant from now on
            self.registry.mark_role(connection.id, Role.PARTICIPANT, participant_id)
        return participant_id

    async def _require_organizer(self, connection: Connection, msg_type: str) -> bool:
        if connection.role is Role.ORGANIZER:
            return True
        logger.warning(f"🔒 {msg_type} from non-organizer {connection.id} rejected")
        await self._send(connection, encode_reply('error', message=f"{msg_type} requires organizer role"))
        return False

    # =========================================================================
    # OUTBOUND
    # =========================================================================

    async def broadcast(self, role: Role, frame: str) -> int:
        """Send a frame to every connection with the given role."""
        targets = self.registry.list_by_role(role)
        if not targets:
            return 0

        dead_connections = []
        sent = 0
        for connection in targets:
            if await self._send(connection, frame):
                sent += 1
            else:
                dead_connections.append(connection)

        for connection in dead_connections:
            await self.disconnect(connection.id, reason='send failed')
        return sent

    async def broadcast_to_organizers(self, msg_type: str, data: Any) -> int:
        return await self.broadcast(Role.ORGANIZER, encode_broadcast(msg_type, data))

    async def _send(self, connection: Connection, frame: str) -> bool:
        try:
            await connection.transport.send(frame)
            return True
        except ConnectionClosed:
            return False
        except Exception as e:
            logger.error(f"Send error to {connection.id}: {e}")
            return False

    # =========================================================================
    # BACKGROUND WORK
    # =========================================================================

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for fire-and-forget work (SOS persists) to finish."""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
